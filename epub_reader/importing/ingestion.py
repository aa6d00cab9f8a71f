from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Dict, List

from .models import (
    BookAssetRecord,
    BookFileRecord,
    BookRecord,
    ContentChunkRecord,
    ImportJobRecord,
    IngestionBatch,
    ParsedBook,
    ParsedChunk,
    ParsedImage,
    ParsedSection,
    SectionRecord,
    UserBookRecord,
)
from .repository import LibraryRepository
from .storage import BlobStore

logger = logging.getLogger(__name__)

_EPUB_SUFFIX = re.compile(r"\.epub$", re.IGNORECASE)


def title_from_file_name(file_name: str) -> str:
    return _EPUB_SUFFIX.sub("", file_name) or file_name


class ContentIngestor:
    """
    Writes one validated parse result into the library: the Book, its
    original file reference, the owner's progress row, sections, content
    chunks, per-section text/block blobs and image assets.

    Rows are committed as a single batch. Blobs cannot join that
    transaction, so every blob written during an attempt is deleted again
    if the attempt fails. Running ingest twice for the same job creates a
    second book; the worker guards against that.
    """

    def __init__(self, repository: LibraryRepository, blob_store: BlobStore):
        self.repo = repository
        self.blobs = blob_store

    def ingest(self, job: ImportJobRecord, parsed: ParsedBook) -> BookRecord:
        written: List[str] = []
        try:
            batch = self._build_batch(job, parsed, written)
            self.repo.save_ingestion(batch)
        except Exception:
            self._discard(written)
            raise
        logger.info(
            "Ingested book %s for job %s: %d sections, %d chunks, %d assets",
            batch.book.id,
            job.id,
            len(batch.sections),
            len(batch.chunks),
            len(batch.assets),
        )
        return batch.book

    def _discard(self, storage_ids: List[str]) -> None:
        for storage_id in storage_ids:
            try:
                self.blobs.delete(storage_id)
            except Exception:  # noqa: BLE001
                logger.warning("Could not delete blob %s after failed ingestion", storage_id, exc_info=True)

    def _put(self, written: List[str], data: bytes, content_type: str) -> str:
        storage_id = self.blobs.put(data, content_type)
        written.append(storage_id)
        return storage_id

    def _build_batch(self, job: ImportJobRecord, parsed: ParsedBook, written: List[str]) -> IngestionBatch:
        book = self._map_book(job, parsed, written)

        sections, section_id_map = self._map_sections(book.id, parsed.sections)
        chunks = self._map_chunks(book.id, parsed.chunks, section_id_map)
        self._store_section_bodies(sections, section_id_map, chunks, parsed, written)
        assets = self._map_assets(book.id, parsed.images, written)

        book.section_count = len(sections)
        book_file = BookFileRecord(
            id=uuid.uuid4().hex,
            book_id=book.id,
            storage_id=job.storage_id,
            file_name=job.file_name,
            file_size=job.file_size,
            content_type=job.content_type,
        )
        return IngestionBatch(
            book=book,
            book_file=book_file,
            sections=sections,
            chunks=chunks,
            assets=assets,
            user_book=UserBookRecord(id=uuid.uuid4().hex, user_id=job.user_id, book_id=book.id),
            job_id=job.id,
        )

    def _map_book(self, job: ImportJobRecord, parsed: ParsedBook, written: List[str]) -> BookRecord:
        meta = parsed.metadata
        book = BookRecord(
            id=uuid.uuid4().hex,
            owner_id=job.user_id,
            title=meta.title or title_from_file_name(job.file_name),
            author=", ".join(meta.authors) if meta.authors else None,
            language=meta.language,
            publisher=meta.publisher,
            published_at=meta.published_at,
            series=meta.series,
            series_index=meta.series_index,
            subjects=list(meta.subjects),
            identifiers=list(meta.identifiers),
        )
        if parsed.cover and parsed.cover.data:
            content_type = parsed.cover.content_type or "image/jpeg"
            try:
                book.cover_storage_id = self._put(written, parsed.cover.data, content_type)
                book.cover_content_type = parsed.cover.content_type
            except Exception:  # noqa: BLE001
                # A missing cover never fails an import.
                logger.warning("Cover upload failed for job %s", job.id, exc_info=True)
        return book

    def _map_sections(self, book_id: str, parsed_sections: List[ParsedSection]):
        """
        Sections are renumbered 0..N-1 in the parser's order so order
        indices stay dense even when the parser skipped numbers. The map is
        keyed by the parser's own order index, which is what chunks,
        blocks and parents refer to.
        """
        ordered = sorted(parsed_sections, key=lambda s: s.order_index)
        section_id_map: Dict[int, str] = {}
        for position, section in enumerate(ordered):
            section_id_map[section.order_index] = f"{book_id}-sec-{position}"

        records: List[SectionRecord] = []
        for position, section in enumerate(ordered):
            parent_id = None
            if section.parent_order_index is not None:
                parent_id = section_id_map.get(section.parent_order_index)
                if parent_id is None:
                    logger.debug(
                        "Section %s references unknown parent %s", section.order_index, section.parent_order_index
                    )
            records.append(
                SectionRecord(
                    id=section_id_map[section.order_index],
                    book_id=book_id,
                    parent_id=parent_id,
                    title=section.title,
                    order_index=position,
                    depth=section.depth,
                    href=section.href,
                    anchor=section.anchor,
                )
            )
        return records, section_id_map

    def _map_chunks(
        self,
        book_id: str,
        parsed_chunks: List[ParsedChunk],
        section_id_map: Dict[int, str],
    ) -> List[ContentChunkRecord]:
        records: List[ContentChunkRecord] = []
        dropped = 0
        for chunk in sorted(parsed_chunks, key=lambda c: (c.section_order_index, c.chunk_index)):
            section_id = section_id_map.get(chunk.section_order_index)
            if section_id is None:
                dropped += 1
                continue
            records.append(
                ContentChunkRecord(
                    id=f"{section_id}-c{chunk.chunk_index}",
                    book_id=book_id,
                    section_id=section_id,
                    chunk_index=chunk.chunk_index,
                    start_offset=chunk.start_offset,
                    end_offset=chunk.end_offset,
                    word_count=chunk.word_count,
                    content=chunk.content,
                )
            )
        if dropped:
            logger.debug("Dropped %d chunks without a matching section for book %s", dropped, book_id)
        return records

    def _store_section_bodies(
        self,
        sections: List[SectionRecord],
        section_id_map: Dict[int, str],
        chunks: List[ContentChunkRecord],
        parsed: ParsedBook,
        written: List[str],
    ) -> None:
        texts: Dict[str, List[str]] = {}
        for chunk in chunks:
            texts.setdefault(chunk.section_id, []).append(chunk.content)

        blocks_by_section: Dict[str, list] = {}
        for entry in parsed.section_blocks:
            section_id = section_id_map.get(entry.section_order_index)
            if section_id is not None and entry.blocks:
                blocks_by_section[section_id] = entry.blocks

        for section in sections:
            text = "\n\n".join(texts.get(section.id, []))
            if text:
                section.text_storage_id = self._put(written, text.encode("utf-8"), "text/plain")
                section.text_size = len(text)
            blocks = blocks_by_section.get(section.id)
            if blocks:
                payload = json.dumps(blocks, ensure_ascii=False)
                section.content_storage_id = self._put(written, payload.encode("utf-8"), "application/json")
                section.content_size = len(payload)

    def _map_assets(self, book_id: str, images: List[ParsedImage], written: List[str]) -> List[BookAssetRecord]:
        records: List[BookAssetRecord] = []
        seen = set()
        for image in images:
            if not image.href or not image.data or image.href in seen:
                continue
            seen.add(image.href)
            content_type = image.content_type or "application/octet-stream"
            storage_id = self._put(written, image.data, content_type)
            records.append(
                BookAssetRecord(
                    id=f"{book_id}-asset-{len(records)}",
                    book_id=book_id,
                    href=image.href,
                    storage_id=storage_id,
                    content_type=image.content_type,
                    byte_size=len(image.data),
                    width=image.width,
                    height=image.height,
                )
            )
        return records
