from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Set

from ..errors import InvalidTransitionError, MissingStoredFileError, NotFoundError, ParserError
from .ingestion import ContentIngestor
from .models import ImportJobRecord, ImportJobStatus
from .parser_client import ParserClient
from .repository import LibraryRepository
from .storage import BlobStore, StoredBlob

logger = logging.getLogger(__name__)


class JobLocks:
    """
    Per-job, non-reentrant processing guard shared by every worker in a
    process. A second pass over a job that is already running is refused
    rather than queued behind the first.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._held: Set[str] = set()

    @contextmanager
    def hold(self, job_id: str) -> Iterator[bool]:
        with self._guard:
            acquired = job_id not in self._held
            if acquired:
                self._held.add(job_id)
        try:
            yield acquired
        finally:
            if acquired:
                with self._guard:
                    self._held.discard(job_id)

    def is_held(self, job_id: str) -> bool:
        with self._guard:
            return job_id in self._held


class ImportWorker:
    """
    Drives one import job through parsing -> ingesting -> completed.
    The worker is stateless apart from the lock registry; job state lives in
    the repository and the source file in the blob store.

    Pipeline failures never escape ``advance``: they are written to the job
    as ``failed`` with a message, and the caller learns about them by
    polling the job.
    """

    def __init__(
        self,
        repository: LibraryRepository,
        blob_store: BlobStore,
        parser: ParserClient,
        ingestor: Optional[ContentIngestor] = None,
        locks: Optional[JobLocks] = None,
    ):
        self.repo = repository
        self.blobs = blob_store
        self.parser = parser
        self.ingestor = ingestor or ContentIngestor(repository, blob_store)
        self.locks = locks or JobLocks()

    def advance(self, job_id: str) -> ImportJobRecord:
        with self.locks.hold(job_id) as acquired:
            if not acquired:
                logger.warning("Import job %s is already being processed; skipping this pass", job_id)
                return self._get_job(job_id)
            return self._advance(job_id)

    def _get_job(self, job_id: str) -> ImportJobRecord:
        job = self.repo.get_job(job_id)
        if not job:
            raise NotFoundError(f"Import job {job_id} not found")
        return job

    def _advance(self, job_id: str) -> ImportJobRecord:
        job = self._get_job(job_id)
        if job.book_id:
            # A book was already committed for this job; ingesting again would duplicate it.
            logger.warning("Import job %s already produced book %s; not re-ingesting", job.id, job.book_id)
            if job.status == ImportJobStatus.INGESTING:
                self._transition(job, ImportJobStatus.COMPLETED, book_id=job.book_id)
                return self._get_job(job.id)
            return job
        if not job.status.can_transition_to(ImportJobStatus.PARSING):
            logger.warning("Import job %s is %s; nothing to do", job.id, job.status.value)
            return job

        self._transition(job, ImportJobStatus.PARSING)
        try:
            source = self._load_source(job)
            parsed = self.parser.parse(source.data, job.file_name, job.content_type)
        except (ParserError, MissingStoredFileError) as exc:
            logger.warning("Import job %s failed while parsing: %s", job.id, exc)
            return self._fail(job, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Import job %s crashed while parsing", job.id)
            return self._fail(job, str(exc) or "Parser error")

        for warning in parsed.warnings:
            logger.info("Parser warning for job %s: [%s] %s", job.id, warning.code, warning.message)

        self._transition(job, ImportJobStatus.INGESTING)
        try:
            book = self.ingestor.ingest(job, parsed)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Import job %s failed while ingesting", job.id)
            return self._fail(job, f"Ingestion failed: {exc}" if str(exc) else "Import failed")

        self._transition(job, ImportJobStatus.COMPLETED, book_id=book.id)
        logger.info("Import job %s completed with book %s", job.id, book.id)
        return self._get_job(job.id)

    def _load_source(self, job: ImportJobRecord) -> StoredBlob:
        if not job.storage_id:
            raise MissingStoredFileError(None)
        try:
            blob = self.blobs.get(job.storage_id)
        except OSError as exc:
            raise MissingStoredFileError(job.storage_id) from exc
        if blob is None:
            raise MissingStoredFileError(job.storage_id)
        return blob

    def _transition(
        self,
        job: ImportJobRecord,
        target: ImportJobStatus,
        book_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        if not job.status.can_transition_to(target):
            raise InvalidTransitionError(f"Import job {job.id} cannot move from {job.status.value} to {target.value}")
        self.repo.update_job_status(job.id, target, error_message=error_message, book_id=book_id)
        logger.info("Import job %s: %s -> %s", job.id, job.status.value, target.value)
        job.status = target

    def _fail(self, job: ImportJobRecord, message: str) -> ImportJobRecord:
        self._transition(job, ImportJobStatus.FAILED, error_message=message or "Import failed")
        return self._get_job(job.id)
