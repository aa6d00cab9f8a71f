from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from ..auth import require_book_owner, require_viewer
from ..errors import NotAuthorizedError, NotFoundError
from ..importing.models import BookmarkRecord, UserBookRecord
from ..importing.repository import LibraryRepository
from .reconciler import Checkpoint

logger = logging.getLogger(__name__)


class ProgressService:
    """
    Reading position (one row per viewer and book) and bookmarks. Saves are
    plain upserts: whichever checkpoint arrives last wins.
    """

    def __init__(self, repository: LibraryRepository):
        self.repo = repository

    def ensure_user_book(self, viewer_id: Optional[str], book_id: str) -> UserBookRecord:
        book = require_book_owner(self.repo, viewer_id, book_id)
        existing = self.repo.get_user_book(book.owner_id, book.id)
        if existing:
            existing.updated_at = datetime.now(timezone.utc)
            self.repo.save_user_book(existing)
            return existing
        user_book = UserBookRecord(id=uuid.uuid4().hex, user_id=book.owner_id, book_id=book.id)
        self.repo.save_user_book(user_book)
        return user_book

    def get_progress(self, viewer_id: Optional[str], book_id: str) -> Optional[UserBookRecord]:
        book = require_book_owner(self.repo, viewer_id, book_id)
        return self.repo.get_user_book(book.owner_id, book.id)

    def save_checkpoint(self, viewer_id: Optional[str], book_id: str, checkpoint: Checkpoint) -> UserBookRecord:
        book = require_book_owner(self.repo, viewer_id, book_id)
        self._require_section_in_book(checkpoint.section_id, book.id)

        user_book = self.repo.get_user_book(book.owner_id, book.id) or UserBookRecord(
            id=uuid.uuid4().hex, user_id=book.owner_id, book_id=book.id
        )
        user_book.last_section_id = checkpoint.section_id
        user_book.last_section_index = checkpoint.section_index
        user_book.last_chunk_index = checkpoint.chunk_index
        user_book.last_chunk_offset = checkpoint.chunk_offset
        user_book.last_scroll_ratio = checkpoint.scroll_ratio
        user_book.last_scroll_top = checkpoint.scroll_top
        user_book.last_scroll_height = checkpoint.scroll_height
        user_book.last_client_height = checkpoint.client_height
        user_book.updated_at = datetime.now(timezone.utc)
        self.repo.save_user_book(user_book)
        return user_book

    def list_bookmarks(self, viewer_id: Optional[str], book_id: str) -> List[BookmarkRecord]:
        book = require_book_owner(self.repo, viewer_id, book_id)
        return self.repo.list_bookmarks(book.owner_id, book.id)

    def create_bookmark(
        self,
        viewer_id: Optional[str],
        book_id: str,
        section_id: str,
        chunk_index: int,
        offset: float,
        label: Optional[str] = None,
    ) -> BookmarkRecord:
        book = require_book_owner(self.repo, viewer_id, book_id)
        self._require_section_in_book(section_id, book.id)
        if chunk_index < 0 or offset < 0:
            raise ValueError("chunkIndex and offset must not be negative.")
        bookmark = BookmarkRecord(
            id=uuid.uuid4().hex,
            user_id=book.owner_id,
            book_id=book.id,
            section_id=section_id,
            chunk_index=chunk_index,
            offset=offset,
            label=label or None,
        )
        self.repo.save_bookmark(bookmark)
        return bookmark

    def delete_bookmark(self, viewer_id: Optional[str], bookmark_id: str) -> None:
        viewer_id = require_viewer(viewer_id)
        bookmark = self.repo.get_bookmark(bookmark_id)
        if not bookmark:
            return
        if bookmark.user_id != viewer_id:
            raise NotAuthorizedError("Not authorized to delete this bookmark.")
        self.repo.delete_bookmark(bookmark_id)

    def _require_section_in_book(self, section_id: str, book_id: str) -> None:
        section = self.repo.get_section(section_id)
        if not section:
            raise NotFoundError("Section not found.")
        if section.book_id != book_id:
            raise ValueError("Section does not belong to this book.")
