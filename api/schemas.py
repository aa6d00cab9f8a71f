"""Request bodies of the JSON endpoints. Field names follow the camelCase the web client sends."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ImportFromStorageRequest(RequestModel):
    storage_id: str = Field(alias="storageId", min_length=1)
    file_name: str = Field(alias="fileName", min_length=1)
    file_size: int = Field(alias="fileSize", ge=0)
    content_type: Optional[str] = Field(default=None, alias="contentType")


class RetryImportRequest(RequestModel):
    job_id: str = Field(alias="jobId", min_length=1)


class ProgressRequest(RequestModel):
    last_section_id: str = Field(alias="lastSectionId", min_length=1)
    last_section_index: int = Field(default=0, alias="lastSectionIndex", ge=0)
    last_chunk_index: int = Field(default=0, alias="lastChunkIndex", ge=0)
    last_chunk_offset: float = Field(default=0, alias="lastChunkOffset", ge=0)
    last_scroll_ratio: float = Field(default=0, alias="lastScrollRatio", ge=0, le=1)
    last_scroll_top: Optional[float] = Field(default=None, alias="lastScrollTop", ge=0)
    last_scroll_height: Optional[float] = Field(default=None, alias="lastScrollHeight", ge=0)
    last_client_height: Optional[float] = Field(default=None, alias="lastClientHeight", ge=0)


class BookmarkRequest(RequestModel):
    section_id: str = Field(alias="sectionId", min_length=1)
    chunk_index: int = Field(alias="chunkIndex", ge=0)
    offset: float = Field(ge=0)
    label: Optional[str] = None
