from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ImportJobStatus(str, Enum):
    QUEUED = "queued"
    PARSING = "parsing"
    INGESTING = "ingesting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportJobStatus.COMPLETED, ImportJobStatus.FAILED)

    def can_transition_to(self, target: "ImportJobStatus") -> bool:
        return target in _TRANSITIONS[self]


# failed -> parsing is only taken by an explicit retry.
_TRANSITIONS = {
    ImportJobStatus.QUEUED: {ImportJobStatus.PARSING},
    ImportJobStatus.PARSING: {ImportJobStatus.INGESTING, ImportJobStatus.FAILED},
    ImportJobStatus.INGESTING: {ImportJobStatus.COMPLETED, ImportJobStatus.FAILED},
    ImportJobStatus.COMPLETED: set(),
    ImportJobStatus.FAILED: {ImportJobStatus.PARSING},
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Identifier:
    id: str
    scheme: str
    value: str
    type: str


# region Parsed output (parser service -> ingestion)


@dataclass
class ParsedMetadata:
    title: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    language: Optional[str] = None
    publisher: Optional[str] = None
    published_at: Optional[str] = None
    series: Optional[str] = None
    series_index: Optional[str] = None
    subjects: List[str] = field(default_factory=list)
    identifiers: List[Identifier] = field(default_factory=list)


@dataclass
class ParsedCover:
    data: bytes
    content_type: Optional[str] = None


@dataclass
class ParsedSection:
    title: str
    order_index: int
    depth: int
    parent_order_index: Optional[int] = None
    href: Optional[str] = None
    anchor: Optional[str] = None


@dataclass
class ParsedChunk:
    section_order_index: int
    chunk_index: int
    start_offset: int
    end_offset: int
    word_count: int
    content: str


@dataclass
class ParsedSectionBlocks:
    section_order_index: int
    # Block dicts are kept in the parser's camelCase wire shape; they are
    # stored as JSON and handed to the renderer untouched.
    blocks: List[Dict[str, Any]]


@dataclass
class ParsedImage:
    href: str
    data: bytes
    content_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class ParserWarning:
    code: str
    message: str
    path: Optional[str] = None


@dataclass
class ParsedBook:
    metadata: ParsedMetadata
    sections: List[ParsedSection]
    chunks: List[ParsedChunk]
    section_blocks: List[ParsedSectionBlocks] = field(default_factory=list)
    images: List[ParsedImage] = field(default_factory=list)
    cover: Optional[ParsedCover] = None
    warnings: List[ParserWarning] = field(default_factory=list)


# endregion

# region Persisted records


@dataclass
class UserRecord:
    id: str
    auth_provider: str
    external_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    created_at: datetime = field(default_factory=_now)


@dataclass
class BookRecord:
    id: str
    owner_id: str
    title: str
    author: Optional[str] = None
    language: Optional[str] = None
    publisher: Optional[str] = None
    published_at: Optional[str] = None
    series: Optional[str] = None
    series_index: Optional[str] = None
    subjects: List[str] = field(default_factory=list)
    identifiers: List[Identifier] = field(default_factory=list)
    cover_storage_id: Optional[str] = None
    cover_content_type: Optional[str] = None
    section_count: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class BookFileRecord:
    id: str
    book_id: str
    storage_id: str
    file_name: str
    file_size: int
    content_type: Optional[str] = None
    created_at: datetime = field(default_factory=_now)


@dataclass
class ImportJobRecord:
    id: str
    user_id: str
    file_name: str
    file_size: int
    content_type: Optional[str]
    storage_id: Optional[str]
    status: ImportJobStatus = ImportJobStatus.QUEUED
    error_message: Optional[str] = None
    book_id: Optional[str] = None
    attempts: int = 0
    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class SectionRecord:
    id: str
    book_id: str
    parent_id: Optional[str]
    title: str
    order_index: int
    depth: int = 0
    href: Optional[str] = None
    anchor: Optional[str] = None
    text_storage_id: Optional[str] = None
    text_size: Optional[int] = None
    content_storage_id: Optional[str] = None
    content_size: Optional[int] = None
    created_at: datetime = field(default_factory=_now)


@dataclass
class ContentChunkRecord:
    id: str
    book_id: str
    section_id: str
    chunk_index: int
    start_offset: int
    end_offset: int
    word_count: int
    content: str
    created_at: datetime = field(default_factory=_now)


@dataclass
class BookAssetRecord:
    id: str
    book_id: str
    href: str
    storage_id: str
    content_type: Optional[str] = None
    byte_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    created_at: datetime = field(default_factory=_now)


@dataclass
class UserBookRecord:
    id: str
    user_id: str
    book_id: str
    last_section_id: Optional[str] = None
    last_section_index: int = 0
    last_chunk_index: int = 0
    last_chunk_offset: float = 0
    last_scroll_ratio: Optional[float] = None
    last_scroll_top: Optional[float] = None
    last_scroll_height: Optional[float] = None
    last_client_height: Optional[float] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class BookmarkRecord:
    id: str
    user_id: str
    book_id: str
    section_id: str
    chunk_index: int
    offset: float
    label: Optional[str] = None
    created_at: datetime = field(default_factory=_now)


@dataclass
class IngestionBatch:
    """
    Everything one successful ingestion writes. The repository persists a
    batch as a single unit so readers never observe half an import.
    """

    book: BookRecord
    book_file: BookFileRecord
    sections: List[SectionRecord] = field(default_factory=list)
    chunks: List[ContentChunkRecord] = field(default_factory=list)
    assets: List[BookAssetRecord] = field(default_factory=list)
    user_book: Optional[UserBookRecord] = None
    # Import job that gets book.id recorded in the same write.
    job_id: Optional[str] = None


# endregion
