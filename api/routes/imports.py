from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Header, UploadFile

from api.dependencies import get_identity, get_import_service, get_viewer_id
from api.schemas import ImportFromStorageRequest, RetryImportRequest
from epub_reader.auth import IdentityResolver
from epub_reader.importing import ImportJobRecord
from epub_reader.importing.service import ImportService

router = APIRouter(prefix="/imports", tags=["imports"])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def job_payload(job: ImportJobRecord) -> dict:
    return {
        "jobId": job.id,
        "status": job.status.value,
        "errorMessage": job.error_message,
        "bookId": job.book_id,
        "fileName": job.file_name,
        "fileSize": job.file_size,
        "attempts": job.attempts,
        "createdAt": _iso(job.created_at),
        "startedAt": _iso(job.started_at),
        "finishedAt": _iso(job.finished_at),
    }


@router.post("", status_code=202)
async def upload_import(
    file: UploadFile = File(...),
    user_id: Optional[str] = Form(None, alias="userId"),
    x_user_id: Optional[str] = Header(None),
    identity: IdentityResolver = Depends(get_identity),
    service: ImportService = Depends(get_import_service),
):
    viewer_id = identity.resolve(x_user_id or user_id)
    payload = await file.read()
    job = service.submit(viewer_id, file.filename or "book.epub", payload, file.content_type)
    return {"jobId": job.id, "status": "queued", "fileName": job.file_name}


@router.post("/from-storage", status_code=202)
def import_from_storage(
    body: ImportFromStorageRequest,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    service: ImportService = Depends(get_import_service),
):
    job = service.submit_stored(viewer_id, body.storage_id, body.file_name, body.file_size, body.content_type)
    return {"jobId": job.id, "status": "queued", "fileName": job.file_name}


@router.post("/retry", status_code=202)
def retry_import(
    body: RetryImportRequest,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    service: ImportService = Depends(get_import_service),
):
    job = service.retry(viewer_id, body.job_id)
    return {"jobId": job.id, "status": "queued"}


@router.get("")
def list_imports(
    limit: int = 50,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    service: ImportService = Depends(get_import_service),
):
    return [job_payload(job) for job in service.list_jobs(viewer_id, limit=max(1, min(limit, 200)))]


@router.delete("")
def clear_imports(
    viewer_id: Optional[str] = Depends(get_viewer_id),
    service: ImportService = Depends(get_import_service),
):
    return {"deleted": service.clear_jobs(viewer_id)}


@router.get("/{job_id}")
def get_import(
    job_id: str,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    service: ImportService = Depends(get_import_service),
):
    return job_payload(service.get_job(viewer_id, job_id))
