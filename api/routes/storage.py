from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.dependencies import get_blob_store, get_viewer_id
from epub_reader.auth import require_viewer
from epub_reader.importing import BlobStore

router = APIRouter(prefix="/storage", tags=["storage"])


@router.post("/upload-url")
def issue_upload_url(
    viewer_id: Optional[str] = Depends(get_viewer_id),
    blob_store: BlobStore = Depends(get_blob_store),
):
    require_viewer(viewer_id)
    ticket = blob_store.issue_upload_url()
    return {"uploadUrl": ticket.upload_url, "token": ticket.token}


@router.post("/uploads/{token}")
async def complete_upload(token: str, request: Request, blob_store: BlobStore = Depends(get_blob_store)):
    payload = await request.body()
    if not payload:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    storage_id = blob_store.complete_upload(token, payload, request.headers.get("content-type"))
    return {"storageId": storage_id}


@router.get("/blobs/{storage_id}")
def get_blob(storage_id: str, blob_store: BlobStore = Depends(get_blob_store)):
    blob = blob_store.get(storage_id)
    if not blob:
        raise HTTPException(status_code=404, detail=f"Blob not found: {storage_id}")
    return Response(content=blob.data, media_type=blob.content_type or "application/octet-stream")
