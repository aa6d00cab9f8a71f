from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..auth import require_book_owner, require_section_owner, require_viewer
from ..importing.models import BookAssetRecord, BookRecord, ContentChunkRecord, SectionRecord
from ..importing.repository import LibraryRepository
from ..importing.storage import BlobStore

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_PAGE = 50
MAX_CHUNK_PAGE = 500


@dataclass
class ChunkPage:
    section_id: str
    start_index: int
    limit: int
    chunks: List[ContentChunkRecord] = field(default_factory=list)
    # None once the last chunk of the section has been returned.
    next_index: Optional[int] = None


@dataclass
class SectionContent:
    text: str = ""
    blocks: Optional[List[Dict[str, Any]]] = None


class LibraryService:
    """Read side of the library: books, sections, chunks and assets, all owner-checked."""

    def __init__(self, repository: LibraryRepository, blob_store: BlobStore):
        self.repo = repository
        self.blobs = blob_store

    def list_books(self, viewer_id: Optional[str]) -> List[BookRecord]:
        viewer_id = require_viewer(viewer_id)
        return self.repo.list_books_for_owner(viewer_id)

    def get_book(self, viewer_id: Optional[str], book_id: str) -> BookRecord:
        return require_book_owner(self.repo, viewer_id, book_id)

    def cover_url(self, book: BookRecord) -> Optional[str]:
        if not book.cover_storage_id:
            return None
        return self.blobs.url_for(book.cover_storage_id)

    def delete_book(self, viewer_id: Optional[str], book_id: str) -> None:
        book = require_book_owner(self.repo, viewer_id, book_id)
        storage_ids = self.repo.delete_book(book.id)
        for storage_id in storage_ids:
            try:
                self.blobs.delete(storage_id)
            except OSError:
                logger.warning("Could not delete blob %s of book %s", storage_id, book.id, exc_info=True)
        logger.info("Deleted book %s and %d blobs", book.id, len(storage_ids))

    def list_sections(self, viewer_id: Optional[str], book_id: str) -> List[SectionRecord]:
        book = require_book_owner(self.repo, viewer_id, book_id)
        return self.repo.list_sections(book.id)

    def list_chunks(
        self,
        viewer_id: Optional[str],
        section_id: str,
        start_index: int = 0,
        limit: int = DEFAULT_CHUNK_PAGE,
    ) -> ChunkPage:
        _, section = require_section_owner(self.repo, viewer_id, section_id)
        if start_index < 0:
            raise ValueError("startIndex must not be negative.")
        if limit < 1:
            raise ValueError("limit must be positive.")
        limit = min(limit, MAX_CHUNK_PAGE)
        chunks = self.repo.list_chunks(section.id, start_index=start_index, limit=limit)
        next_index = chunks[-1].chunk_index + 1 if len(chunks) == limit else None
        return ChunkPage(
            section_id=section.id,
            start_index=start_index,
            limit=limit,
            chunks=chunks,
            next_index=next_index,
        )

    def get_section_content(self, viewer_id: Optional[str], section_id: str) -> SectionContent:
        _, section = require_section_owner(self.repo, viewer_id, section_id)
        content = SectionContent()
        if section.text_storage_id:
            blob = self.blobs.get(section.text_storage_id)
            if blob:
                content.text = blob.data.decode("utf-8")
        if section.content_storage_id:
            blob = self.blobs.get(section.content_storage_id)
            if blob:
                try:
                    content.blocks = json.loads(blob.data.decode("utf-8"))
                except ValueError:
                    # Readers fall back to the plain chunks.
                    logger.warning("Section %s has unreadable block content", section.id)
        return content

    def list_assets(self, viewer_id: Optional[str], book_id: str) -> List[Tuple[BookAssetRecord, Optional[str]]]:
        book = require_book_owner(self.repo, viewer_id, book_id)
        return [(asset, self.blobs.url_for(asset.storage_id)) for asset in self.repo.list_assets(book.id)]
