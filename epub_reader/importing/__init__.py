"""
Import subsystem exports.

``ImportService`` lives in ``epub_reader.importing.service`` and is not
re-exported here, since it depends on ``epub_reader.auth``, which in turn
imports the records below.
"""

from .ingestion import ContentIngestor, title_from_file_name
from .job_queue import (
    InlineJobQueue,
    JobQueue,
    RQJobQueue,
    ThreadedJobQueue,
    WorkerConfig,
    build_worker,
    run_import_job,
)
from .models import (
    BookAssetRecord,
    BookFileRecord,
    BookmarkRecord,
    BookRecord,
    ContentChunkRecord,
    Identifier,
    ImportJobRecord,
    ImportJobStatus,
    IngestionBatch,
    ParsedBook,
    SectionRecord,
    UserBookRecord,
    UserRecord,
)
from .parser_client import HttpParserClient, ParserClient, parse_response_body
from .repository import InMemoryLibraryRepository, LibraryRepository, SqlAlchemyLibraryRepository
from .storage import BlobPaths, BlobStore, InMemoryBlobStore, LocalBlobStore, StoredBlob, UploadTicket
from .worker import ImportWorker, JobLocks

__all__ = [
    "BlobPaths",
    "BlobStore",
    "BookAssetRecord",
    "BookFileRecord",
    "BookRecord",
    "BookmarkRecord",
    "ContentChunkRecord",
    "ContentIngestor",
    "HttpParserClient",
    "Identifier",
    "ImportJobRecord",
    "ImportJobStatus",
    "ImportWorker",
    "InMemoryBlobStore",
    "InMemoryLibraryRepository",
    "IngestionBatch",
    "InlineJobQueue",
    "JobLocks",
    "JobQueue",
    "LibraryRepository",
    "LocalBlobStore",
    "ParsedBook",
    "ParserClient",
    "RQJobQueue",
    "SectionRecord",
    "SqlAlchemyLibraryRepository",
    "StoredBlob",
    "ThreadedJobQueue",
    "UploadTicket",
    "UserBookRecord",
    "UserRecord",
    "WorkerConfig",
    "build_worker",
    "parse_response_body",
    "run_import_job",
    "title_from_file_name",
]
