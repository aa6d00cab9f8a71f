from __future__ import annotations

import logging
import os
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from redis import Redis
from rq import Queue, Worker

from .ingestion import ContentIngestor
from .models import ImportJobRecord
from .parser_client import HttpParserClient
from .repository import SqlAlchemyLibraryRepository
from .storage import BlobPaths, LocalBlobStore
from .worker import ImportWorker

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    database_url: str
    blob_storage_root: str
    parser_url: str = "http://localhost:8081/parse"
    parser_timeout_seconds: float = 120.0
    public_base_url: str = "http://localhost:8000"

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite+pysqlite:///./data/epub_reader.db"),
            blob_storage_root=os.getenv("BLOB_STORAGE_ROOT", "./data/blobs"),
            parser_url=os.getenv("PARSER_URL", "http://localhost:8081/parse"),
            parser_timeout_seconds=float(os.getenv("PARSER_TIMEOUT_SECONDS", "120")),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
        )


def build_worker(config: WorkerConfig) -> ImportWorker:
    repo = SqlAlchemyLibraryRepository(config.database_url)
    blob_store = LocalBlobStore(BlobPaths(Path(config.blob_storage_root)), public_base_url=config.public_base_url)
    parser = HttpParserClient(parser_url=config.parser_url, timeout=config.parser_timeout_seconds)
    return ImportWorker(
        repository=repo,
        blob_store=blob_store,
        parser=parser,
        ingestor=ContentIngestor(repo, blob_store),
    )


def run_import_job(job_id: str, config: WorkerConfig) -> None:
    """
    RQ task entrypoint. Creates all required components and advances one import job.
    """
    build_worker(config).advance(job_id)


class JobQueue:
    """Hands import jobs to whatever runs ``ImportWorker.advance``."""

    def enqueue(self, job: ImportJobRecord) -> None:
        raise NotImplementedError


class InlineJobQueue(JobQueue):
    """Runs the job in the caller's thread. Used by tests and scripts."""

    def __init__(self, worker: ImportWorker):
        self.worker = worker

    def enqueue(self, job: ImportJobRecord) -> None:
        self.worker.advance(job.id)


class ThreadedJobQueue(JobQueue):
    """
    One FIFO consumed by a single daemon thread, so uploads return as soon
    as the job row exists and jobs run in submission order.
    """

    def __init__(self, worker: ImportWorker):
        self.worker = worker
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()

    def enqueue(self, job: ImportJobRecord) -> None:
        self._ensure_started()
        self._queue.put(job.id)

    def join(self) -> None:
        self._queue.join()

    def stop(self) -> None:
        if self._thread and self._thread.is_alive():
            self._queue.put(None)
            self._thread.join()
        self._thread = None

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._consume, name="import-jobs", daemon=True)
            self._thread.start()

    def _consume(self) -> None:
        while True:
            job_id = self._queue.get()
            try:
                if job_id is None:
                    return
                self.worker.advance(job_id)
            except Exception:  # noqa: BLE001
                logger.exception("Import job %s could not be advanced", job_id)
            finally:
                self._queue.task_done()


class RQJobQueue(JobQueue):
    """
    Redis-backed job queue using RQ. The queue pushes jobs to Redis and workers
    can be started by calling `work()` in a dedicated process.
    """

    def __init__(
        self,
        config: WorkerConfig,
        redis_url: str = "redis://localhost:6379/0",
        queue_name: str = "import-jobs",
    ):
        self.config = config
        self.redis = Redis.from_url(redis_url)
        self.queue = Queue(queue_name, connection=self.redis)

    def enqueue(self, job: ImportJobRecord) -> None:
        # RQ deduplicates on job_id; the attempt number keeps a retry from
        # colliding with the failed run.
        self.queue.enqueue(run_import_job, job.id, self.config, job_id=f"{job.id}-{job.attempts}", retry=None)

    def work(self):
        worker = Worker([self.queue], connection=self.redis)
        worker.work(with_scheduler=True)
