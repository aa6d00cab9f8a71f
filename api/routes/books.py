from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from api.dependencies import get_library_service, get_viewer_id
from epub_reader.importing import BookRecord, ContentChunkRecord, SectionRecord
from epub_reader.reading import LibraryService

router = APIRouter(prefix="/books", tags=["books"])
sections_router = APIRouter(prefix="/sections", tags=["sections"])


def book_payload(book: BookRecord, cover_url: Optional[str] = None) -> dict:
    return {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "language": book.language,
        "publisher": book.publisher,
        "publishedAt": book.published_at,
        "series": book.series,
        "seriesIndex": book.series_index,
        "subjects": list(book.subjects),
        "identifiers": [vars(i) for i in book.identifiers],
        "coverUrl": cover_url,
        "sectionCount": book.section_count,
        "createdAt": book.created_at.isoformat(),
        "updatedAt": book.updated_at.isoformat(),
    }


def section_payload(section: SectionRecord) -> dict:
    return {
        "id": section.id,
        "bookId": section.book_id,
        "parentId": section.parent_id,
        "title": section.title,
        "orderIndex": section.order_index,
        "depth": section.depth,
        "href": section.href,
        "anchor": section.anchor,
    }


def chunk_payload(chunk: ContentChunkRecord) -> dict:
    return {
        "id": chunk.id,
        "chunkIndex": chunk.chunk_index,
        "startOffset": chunk.start_offset,
        "endOffset": chunk.end_offset,
        "wordCount": chunk.word_count,
        "content": chunk.content,
    }


@router.get("")
def list_books(
    viewer_id: Optional[str] = Depends(get_viewer_id),
    library: LibraryService = Depends(get_library_service),
):
    return [book_payload(b, library.cover_url(b)) for b in library.list_books(viewer_id)]


@router.get("/{book_id}")
def get_book(
    book_id: str,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    library: LibraryService = Depends(get_library_service),
):
    book = library.get_book(viewer_id, book_id)
    return book_payload(book, library.cover_url(book))


@router.delete("/{book_id}")
def delete_book(
    book_id: str,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    library: LibraryService = Depends(get_library_service),
):
    library.delete_book(viewer_id, book_id)
    return {"status": "deleted", "bookId": book_id}


@router.get("/{book_id}/sections")
def list_sections(
    book_id: str,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    library: LibraryService = Depends(get_library_service),
):
    return [section_payload(s) for s in library.list_sections(viewer_id, book_id)]


@router.get("/{book_id}/assets")
def list_assets(
    book_id: str,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    library: LibraryService = Depends(get_library_service),
):
    return [
        {
            "href": asset.href,
            "url": url,
            "contentType": asset.content_type,
            "width": asset.width,
            "height": asset.height,
        }
        for asset, url in library.list_assets(viewer_id, book_id)
    ]


@sections_router.get("/{section_id}/chunks")
def list_chunks(
    section_id: str,
    startIndex: int = 0,
    limit: int = 50,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    library: LibraryService = Depends(get_library_service),
):
    page = library.list_chunks(viewer_id, section_id, start_index=startIndex, limit=limit)
    return {
        "sectionId": page.section_id,
        "startIndex": page.start_index,
        "limit": page.limit,
        "nextIndex": page.next_index,
        "chunks": [chunk_payload(c) for c in page.chunks],
    }


@sections_router.get("/{section_id}/content")
def get_section_content(
    section_id: str,
    viewer_id: Optional[str] = Depends(get_viewer_id),
    library: LibraryService = Depends(get_library_service),
):
    content = library.get_section_content(viewer_id, section_id)
    return {"text": content.text, "blocks": content.blocks}
