from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from ..auth import require_job_owner, require_viewer
from ..errors import InvalidTransitionError
from .models import ImportJobRecord, ImportJobStatus
from .job_queue import JobQueue
from .repository import LibraryRepository
from .storage import BlobStore

logger = logging.getLogger(__name__)

DEFAULT_EPUB_CONTENT_TYPE = "application/epub+zip"


class ImportService:
    """
    Accepts uploads and retries and hands the resulting jobs to the queue.
    Nothing here waits on the parser: a submitted job is always ``queued``
    when it is returned, and every later failure is recorded on the job.
    """

    def __init__(self, repository: LibraryRepository, blob_store: BlobStore, job_queue: JobQueue):
        self.repo = repository
        self.blobs = blob_store
        self.queue = job_queue

    def submit(
        self,
        viewer_id: Optional[str],
        file_name: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> ImportJobRecord:
        viewer_id = require_viewer(viewer_id)
        if not data:
            raise ValueError("Uploaded file is empty.")
        content_type = content_type or DEFAULT_EPUB_CONTENT_TYPE
        storage_id = self.blobs.put(data, content_type)
        return self._create_and_enqueue(viewer_id, storage_id, file_name, len(data), content_type)

    def submit_stored(
        self,
        viewer_id: Optional[str],
        storage_id: str,
        file_name: str,
        file_size: int,
        content_type: Optional[str] = None,
    ) -> ImportJobRecord:
        """Queue a file that was already uploaded through an issued upload URL."""
        viewer_id = require_viewer(viewer_id)
        if not storage_id:
            raise ValueError("storageId is required.")
        if file_size < 0:
            raise ValueError("fileSize must not be negative.")
        return self._create_and_enqueue(
            viewer_id, storage_id, file_name, file_size, content_type or DEFAULT_EPUB_CONTENT_TYPE
        )

    def retry(self, viewer_id: Optional[str], job_id: str) -> ImportJobRecord:
        job = require_job_owner(self.repo, viewer_id, job_id)
        if job.status != ImportJobStatus.FAILED:
            raise InvalidTransitionError(f"Only failed imports can be retried (job is {job.status.value}).")
        job.attempts += 1
        self.repo.save_job(job)
        logger.info("Retrying import job %s (attempt %d)", job.id, job.attempts)
        self.queue.enqueue(job)
        return job

    def get_job(self, viewer_id: Optional[str], job_id: str) -> ImportJobRecord:
        return require_job_owner(self.repo, viewer_id, job_id)

    def list_jobs(self, viewer_id: Optional[str], limit: int = 50) -> List[ImportJobRecord]:
        viewer_id = require_viewer(viewer_id)
        return self.repo.list_jobs_for_user(viewer_id, limit=limit)

    def clear_jobs(self, viewer_id: Optional[str]) -> int:
        viewer_id = require_viewer(viewer_id)
        removed = self.repo.delete_jobs_for_user(viewer_id)
        logger.info("Cleared %d import jobs for user %s", removed, viewer_id)
        return removed

    def _create_and_enqueue(
        self,
        viewer_id: str,
        storage_id: str,
        file_name: str,
        file_size: int,
        content_type: str,
    ) -> ImportJobRecord:
        job = ImportJobRecord(
            id=uuid.uuid4().hex,
            user_id=viewer_id,
            file_name=file_name or "book.epub",
            file_size=file_size,
            content_type=content_type,
            storage_id=storage_id,
        )
        self.repo.save_job(job)
        logger.info("Queued import job %s for %s (%d bytes)", job.id, job.file_name, job.file_size)
        self.queue.enqueue(job)
        return job
