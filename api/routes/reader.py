from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from api.dependencies import get_progress_service, get_viewer_id
from api.schemas import BookmarkRequest, ProgressRequest
from epub_reader.importing import BookmarkRecord, UserBookRecord
from epub_reader.reading import Checkpoint, ProgressService

router = APIRouter(tags=["reader"])


def progress_payload(user_book: UserBookRecord) -> dict:
    return {
        "bookId": user_book.book_id,
        "lastSectionId": user_book.last_section_id,
        "lastSectionIndex": user_book.last_section_index,
        "lastChunkIndex": user_book.last_chunk_index,
        "lastChunkOffset": user_book.last_chunk_offset,
        "lastScrollRatio": user_book.last_scroll_ratio,
        "lastScrollTop": user_book.last_scroll_top,
        "lastScrollHeight": user_book.last_scroll_height,
        "lastClientHeight": user_book.last_client_height,
        "updatedAt": user_book.updated_at.isoformat(),
    }


def bookmark_payload(bookmark: BookmarkRecord) -> dict:
    return {
        "id": bookmark.id,
        "bookId": bookmark.book_id,
        "sectionId": bookmark.section_id,
        "chunkIndex": bookmark.chunk_index,
        "offset": bookmark.offset,
        "label": bookmark.label,
        "createdAt": bookmark.created_at.isoformat(),
    }


@router.get("/books/{book_id}/progress")
def get_progress(
    book_id: str,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    progress: ProgressService = Depends(get_progress_service),
):
    user_book = progress.get_progress(viewer_id, book_id)
    return progress_payload(user_book) if user_book else None


@router.put("/books/{book_id}/progress")
def save_progress(
    book_id: str,
    body: ProgressRequest,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    progress: ProgressService = Depends(get_progress_service),
):
    checkpoint = Checkpoint(
        section_id=body.last_section_id,
        section_index=body.last_section_index,
        chunk_index=body.last_chunk_index,
        chunk_offset=body.last_chunk_offset,
        scroll_ratio=body.last_scroll_ratio,
        scroll_top=body.last_scroll_top,
        scroll_height=body.last_scroll_height,
        client_height=body.last_client_height,
    )
    return progress_payload(progress.save_checkpoint(viewer_id, book_id, checkpoint))


@router.get("/books/{book_id}/bookmarks")
def list_bookmarks(
    book_id: str,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    progress: ProgressService = Depends(get_progress_service),
):
    return [bookmark_payload(b) for b in progress.list_bookmarks(viewer_id, book_id)]


@router.post("/books/{book_id}/bookmarks", status_code=201)
def create_bookmark(
    book_id: str,
    body: BookmarkRequest,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    progress: ProgressService = Depends(get_progress_service),
):
    bookmark = progress.create_bookmark(
        viewer_id, book_id, body.section_id, body.chunk_index, body.offset, label=body.label
    )
    return bookmark_payload(bookmark)


@router.delete("/bookmarks/{bookmark_id}")
def delete_bookmark(
    bookmark_id: str,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    progress: ProgressService = Depends(get_progress_service),
):
    progress.delete_bookmark(viewer_id, bookmark_id)
    return {"status": "deleted", "bookmarkId": bookmark_id}
