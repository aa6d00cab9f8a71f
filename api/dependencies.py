from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from fastapi import Depends, Header

from epub_reader.auth import IdentityResolver
from epub_reader.importing import (
    BlobPaths,
    BlobStore,
    HttpParserClient,
    ImportWorker,
    InlineJobQueue,
    JobQueue,
    LibraryRepository,
    LocalBlobStore,
    RQJobQueue,
    SqlAlchemyLibraryRepository,
    ThreadedJobQueue,
    WorkerConfig,
)
from epub_reader.importing.service import ImportService
from epub_reader.reading import LibraryService, ProgressService


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@lru_cache(maxsize=1)
def get_worker_config() -> WorkerConfig:
    return WorkerConfig.from_env()


@lru_cache(maxsize=1)
def get_repo() -> LibraryRepository:
    return SqlAlchemyLibraryRepository(get_worker_config().database_url)


@lru_cache(maxsize=1)
def get_blob_store() -> BlobStore:
    config = get_worker_config()
    store = LocalBlobStore(BlobPaths(Path(config.blob_storage_root)), public_base_url=config.public_base_url)
    store.ensure_base_dirs()
    return store


@lru_cache(maxsize=1)
def get_job_queue() -> JobQueue:
    config = get_worker_config()
    mode = os.getenv("IMPORT_QUEUE", "thread").strip().lower()
    if mode == "rq":
        return RQJobQueue(
            config,
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            queue_name=os.getenv("RQ_QUEUE_NAME", "import-jobs"),
        )
    worker = ImportWorker(
        repository=get_repo(),
        blob_store=get_blob_store(),
        parser=HttpParserClient(parser_url=config.parser_url, timeout=config.parser_timeout_seconds),
    )
    if mode == "inline":
        return InlineJobQueue(worker)
    return ThreadedJobQueue(worker)


def get_identity(repo: LibraryRepository = Depends(get_repo)) -> IdentityResolver:
    return IdentityResolver(repo, allow_local_auth=_env_flag("ALLOW_LOCAL_AUTH"))


def get_viewer_id(
    x_user_id: Optional[str] = Header(None),
    identity: IdentityResolver = Depends(get_identity),
) -> Optional[str]:
    """
    The identity provider sits in front of the API and forwards the signed-in
    subject as ``X-User-Id``. Anonymous requests resolve to None unless local
    auth is allowed.
    """
    return identity.resolve(x_user_id)


def get_import_service(
    repo: LibraryRepository = Depends(get_repo),
    blob_store: BlobStore = Depends(get_blob_store),
    job_queue: JobQueue = Depends(get_job_queue),
) -> ImportService:
    return ImportService(repo, blob_store, job_queue)


def get_library_service(
    repo: LibraryRepository = Depends(get_repo),
    blob_store: BlobStore = Depends(get_blob_store),
) -> LibraryService:
    return LibraryService(repo, blob_store)


def get_progress_service(repo: LibraryRepository = Depends(get_repo)) -> ProgressService:
    return ProgressService(repo)
