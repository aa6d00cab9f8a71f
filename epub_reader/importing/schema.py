"""
Wire schema of the parser service response.

The service answers ``POST /parse`` with camelCase JSON. Every field the
pipeline relies on is checked here before anything is ingested; unknown
fields are ignored so the parser can grow its payload without breaking
older importers.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator

from .models import (
    Identifier,
    ParsedBook,
    ParsedChunk,
    ParsedCover,
    ParsedImage,
    ParsedMetadata,
    ParsedSection,
    ParsedSectionBlocks,
    ParserWarning,
)


class WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _decode_base64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc


class IdentifierPayload(WireModel):
    id: str = ""
    scheme: str = ""
    value: str
    type: str = ""


class MetadataPayload(WireModel):
    title: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    language: Optional[str] = None
    publisher: Optional[str] = None
    published_at: Optional[str] = Field(default=None, alias="publishedAt")
    series: Optional[str] = None
    series_index: Optional[str] = Field(default=None, alias="seriesIndex")
    subjects: List[str] = Field(default_factory=list)
    identifiers: List[IdentifierPayload] = Field(default_factory=list)

    @field_validator("authors", "subjects", "identifiers", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class SectionPayload(WireModel):
    title: str
    order_index: StrictInt = Field(alias="orderIndex", ge=0)
    depth: StrictInt = Field(default=0, ge=0)
    parent_order_index: Optional[StrictInt] = Field(default=None, alias="parentOrderIndex")
    href: Optional[str] = None
    anchor: Optional[str] = None


class ChunkPayload(WireModel):
    section_order_index: StrictInt = Field(alias="sectionOrderIndex")
    chunk_index: StrictInt = Field(alias="chunkIndex", ge=0)
    start_offset: StrictInt = Field(alias="startOffset", ge=0)
    end_offset: StrictInt = Field(alias="endOffset", ge=0)
    word_count: StrictInt = Field(alias="wordCount", ge=0)
    content: str

    @model_validator(mode="after")
    def _offsets_ordered(self) -> "ChunkPayload":
        if self.end_offset < self.start_offset:
            raise ValueError(
                f"chunk {self.chunk_index} of section {self.section_order_index} ends before it starts"
            )
        return self


class InlinePayload(WireModel):
    kind: str
    text: Optional[str] = None
    href: Optional[str] = None
    src: Optional[str] = None
    alt: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    emph: Optional[bool] = None
    strong: Optional[bool] = None


class TableCellPayload(WireModel):
    inlines: List[InlinePayload]
    header: Optional[bool] = None


class TableRowPayload(WireModel):
    cells: List[TableCellPayload]


class TablePayload(WireModel):
    rows: List[TableRowPayload]


class FigurePayload(WireModel):
    images: List[InlinePayload]
    caption: List[InlinePayload]


class BlockPayload(WireModel):
    kind: str
    level: Optional[int] = None
    ordered: Optional[bool] = None
    list_index: Optional[int] = Field(default=None, alias="listIndex")
    inlines: Optional[List[InlinePayload]] = None
    table: Optional[TablePayload] = None
    figure: Optional[FigurePayload] = None
    anchors: Optional[List[str]] = None


class SectionBlocksPayload(WireModel):
    section_order_index: StrictInt = Field(alias="sectionOrderIndex")
    blocks: List[BlockPayload]


class ImagePayload(WireModel):
    href: str
    content_type: Optional[str] = Field(default=None, alias="contentType")
    data: str
    width: Optional[int] = None
    height: Optional[int] = None


class CoverPayload(WireModel):
    content_type: Optional[str] = Field(default=None, alias="contentType")
    data: str


class WarningPayload(WireModel):
    code: str = ""
    message: str = ""
    path: Optional[str] = None


class ParseResponse(WireModel):
    metadata: MetadataPayload = Field(default_factory=MetadataPayload)
    sections: List[SectionPayload]
    chunks: List[ChunkPayload]
    section_blocks: List[SectionBlocksPayload] = Field(default_factory=list, alias="sectionBlocks")
    images: List[ImagePayload] = Field(default_factory=list)
    cover: Optional[CoverPayload] = None
    warnings: List[WarningPayload] = Field(default_factory=list)

    @field_validator("section_blocks", "images", "warnings", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @model_validator(mode="after")
    def _check_layout(self) -> "ParseResponse":
        seen = set()
        for section in self.sections:
            if section.order_index in seen:
                raise ValueError(f"duplicate section orderIndex {section.order_index}")
            seen.add(section.order_index)

        by_section: Dict[int, List[ChunkPayload]] = {}
        for chunk in self.chunks:
            if chunk.section_order_index in seen:
                by_section.setdefault(chunk.section_order_index, []).append(chunk)

        for order_index, chunks in by_section.items():
            chunks.sort(key=lambda c: c.chunk_index)
            for expected, chunk in enumerate(chunks):
                if chunk.chunk_index != expected:
                    raise ValueError(
                        f"section {order_index}: chunk indices are not contiguous from 0 "
                        f"(expected {expected}, got {chunk.chunk_index})"
                    )
                if expected and chunks[expected - 1].end_offset != chunk.start_offset:
                    raise ValueError(
                        f"section {order_index}: chunk {expected} starts at {chunk.start_offset} "
                        f"but chunk {expected - 1} ends at {chunks[expected - 1].end_offset}"
                    )
        return self

    def to_parsed_book(self) -> ParsedBook:
        meta = self.metadata
        metadata = ParsedMetadata(
            title=meta.title or None,
            authors=[a for a in meta.authors if a],
            language=meta.language or None,
            publisher=meta.publisher or None,
            published_at=meta.published_at or None,
            series=meta.series or None,
            series_index=meta.series_index or None,
            subjects=list(meta.subjects),
            identifiers=[Identifier(id=i.id, scheme=i.scheme, value=i.value, type=i.type) for i in meta.identifiers],
        )
        cover = None
        if self.cover and self.cover.data:
            cover = ParsedCover(data=_decode_base64(self.cover.data), content_type=self.cover.content_type)
        return ParsedBook(
            metadata=metadata,
            sections=[
                ParsedSection(
                    title=s.title,
                    order_index=s.order_index,
                    depth=s.depth,
                    parent_order_index=s.parent_order_index,
                    href=s.href or None,
                    anchor=s.anchor or None,
                )
                for s in self.sections
            ],
            chunks=[
                ParsedChunk(
                    section_order_index=c.section_order_index,
                    chunk_index=c.chunk_index,
                    start_offset=c.start_offset,
                    end_offset=c.end_offset,
                    word_count=c.word_count,
                    content=c.content,
                )
                for c in self.chunks
            ],
            section_blocks=[
                ParsedSectionBlocks(
                    section_order_index=sb.section_order_index,
                    blocks=[b.model_dump(by_alias=True, exclude_none=True) for b in sb.blocks],
                )
                for sb in self.section_blocks
            ],
            images=[
                ParsedImage(
                    href=img.href,
                    data=_decode_base64(img.data),
                    content_type=img.content_type,
                    width=img.width,
                    height=img.height,
                )
                for img in self.images
                if img.href and img.data
            ],
            cover=cover,
            warnings=[ParserWarning(code=w.code, message=w.message, path=w.path) for w in self.warnings],
        )
