import base64
from typing import List, Optional

import pytest

from epub_reader.errors import ParserError
from epub_reader.importing import (
    ImportWorker,
    InlineJobQueue,
    InMemoryBlobStore,
    InMemoryLibraryRepository,
    ParserClient,
    parse_response_body,
)
from epub_reader.importing.service import ImportService

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


def build_payload(section_count: int = 3, chunks_per_section: int = 40, title: Optional[str] = "Sample Book") -> dict:
    """Parser response in its camelCase wire shape, with contiguous chunk offsets."""
    sections = []
    chunks = []
    blocks = []
    for s in range(section_count):
        sections.append(
            {
                "title": f"Chapter {s + 1}",
                "orderIndex": s,
                "depth": 0,
                "href": f"chapter{s + 1}.xhtml",
            }
        )
        offset = 0
        for c in range(chunks_per_section):
            content = f"Paragraph {c} of chapter {s + 1}."
            chunks.append(
                {
                    "sectionOrderIndex": s,
                    "chunkIndex": c,
                    "startOffset": offset,
                    "endOffset": offset + len(content),
                    "wordCount": len(content.split()),
                    "content": content,
                }
            )
            offset += len(content)
        blocks.append(
            {
                "sectionOrderIndex": s,
                "blocks": [{"kind": "heading", "level": 1, "inlines": [{"kind": "text", "text": f"Chapter {s + 1}"}]}],
            }
        )
    return {
        "metadata": {
            "title": title,
            "authors": ["Ada Writer", "Bo Editor"],
            "language": "en",
            "identifiers": [{"id": "uid", "scheme": "ISBN", "value": "9780000000000", "type": "isbn"}],
        },
        "sections": sections,
        "chunks": chunks,
        "sectionBlocks": blocks,
        "images": [
            {"href": "images/fig1.png", "contentType": "image/png", "data": base64.b64encode(PNG_BYTES).decode()},
            {"href": "images/fig1.png", "contentType": "image/png", "data": base64.b64encode(PNG_BYTES).decode()},
        ],
        "cover": {"contentType": "image/png", "data": base64.b64encode(PNG_BYTES).decode()},
        "warnings": [],
    }


class ScriptedParser(ParserClient):
    """
    Returns the parsed payload, or raises the queued errors first, one per call.
    """

    def __init__(self, payload: Optional[dict] = None, errors: Optional[List[Exception]] = None):
        self.payload = payload if payload is not None else build_payload()
        self.errors = list(errors or [])
        self.calls = 0

    def parse(self, data, file_name, content_type=None):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return parse_response_body(self.payload)


class Pipeline:
    def __init__(self, parser: ParserClient, repo=None, blobs=None):
        self.parser = parser
        self.repo = repo or InMemoryLibraryRepository()
        self.blobs = blobs or InMemoryBlobStore()
        self.worker = ImportWorker(self.repo, self.blobs, parser)
        self.queue = InlineJobQueue(self.worker)
        self.service = ImportService(self.repo, self.blobs, self.queue)

    def import_book(self, viewer_id: str = "user-1", file_name: str = "book.epub", data: bytes = b"PK\x03\x04epub"):
        job = self.service.submit(viewer_id, file_name, data, "application/epub+zip")
        return self.repo.get_job(job.id)


@pytest.fixture
def make_pipeline():
    def factory(parser: Optional[ParserClient] = None, **kwargs) -> Pipeline:
        return Pipeline(parser or ScriptedParser(), **kwargs)

    return factory


@pytest.fixture
def imported(make_pipeline):
    """A pipeline with one completed 3x40 import owned by user-1."""
    pipeline = make_pipeline()
    job = pipeline.import_book()
    return pipeline, job


@pytest.fixture
def failing_parser():
    return ScriptedParser(errors=[ParserError("Parser unreachable: connection refused")])
