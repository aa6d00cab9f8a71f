import json
from types import SimpleNamespace

import pytest

from conftest import PNG_BYTES, ScriptedParser, build_payload
from epub_reader.errors import (
    InvalidTransitionError,
    NotAuthenticatedError,
    NotAuthorizedError,
    ParserError,
)
from epub_reader.importing import (
    BlobPaths,
    ImportJobStatus,
    ImportWorker,
    InMemoryBlobStore,
    InMemoryLibraryRepository,
    JobLocks,
    LocalBlobStore,
    RQJobQueue,
    SqlAlchemyLibraryRepository,
    ThreadedJobQueue,
    WorkerConfig,
    title_from_file_name,
)
from epub_reader.importing.service import ImportService
from epub_reader.reading import LibraryService


class RecordingQueue:
    def __init__(self):
        self.jobs = []

    def enqueue(self, job):
        self.jobs.append(job.id)


def test_status_transition_table():
    assert ImportJobStatus.QUEUED.can_transition_to(ImportJobStatus.PARSING)
    assert not ImportJobStatus.QUEUED.can_transition_to(ImportJobStatus.INGESTING)
    assert ImportJobStatus.PARSING.can_transition_to(ImportJobStatus.FAILED)
    assert ImportJobStatus.INGESTING.can_transition_to(ImportJobStatus.COMPLETED)
    assert ImportJobStatus.FAILED.can_transition_to(ImportJobStatus.PARSING)
    assert not any(ImportJobStatus.COMPLETED.can_transition_to(s) for s in ImportJobStatus)
    assert ImportJobStatus.COMPLETED.is_terminal and ImportJobStatus.FAILED.is_terminal


def test_three_sections_of_forty_chunks(imported):
    pipeline, job = imported
    repo, blobs = pipeline.repo, pipeline.blobs

    assert job.status == ImportJobStatus.COMPLETED
    assert job.book_id and job.error_message is None
    assert job.started_at is not None and job.finished_at is not None

    book = repo.get_book(job.book_id)
    assert book.title == "Sample Book"
    assert book.author == "Ada Writer, Bo Editor"
    assert book.section_count == 3
    assert book.identifiers[0].value == "9780000000000"
    assert blobs.get(book.cover_storage_id).data == PNG_BYTES

    sections = repo.list_sections(book.id)
    assert [s.order_index for s in sections] == [0, 1, 2]

    total = 0
    for section in sections:
        chunks = repo.list_chunks(section.id)
        total += len(chunks)
        assert [c.chunk_index for c in chunks] == list(range(40))
        for prev, nxt in zip(chunks, chunks[1:]):
            assert prev.end_offset == nxt.start_offset
        text = blobs.get(section.text_storage_id).data.decode("utf-8")
        assert text == "\n\n".join(c.content for c in chunks)
        blocks = json.loads(blobs.get(section.content_storage_id).data)
        assert blocks[0]["kind"] == "heading"
    assert total == 120

    # Duplicate hrefs collapse to one asset.
    assets = repo.list_assets(book.id)
    assert [a.href for a in assets] == ["images/fig1.png"]

    book_file = repo.get_book_file(book.id)
    assert book_file.storage_id == job.storage_id and book_file.file_name == "book.epub"

    user_book = repo.get_user_book("user-1", book.id)
    assert user_book.last_chunk_index == 0 and user_book.last_chunk_offset == 0


def test_status_query_is_idempotent(imported):
    pipeline, job = imported
    first = pipeline.service.get_job("user-1", job.id)
    second = pipeline.service.get_job("user-1", job.id)
    assert first == second
    assert first.status == ImportJobStatus.COMPLETED


def test_job_timestamps_are_timezone_aware(imported):
    _, job = imported
    for stamp in (job.created_at, job.started_at, job.finished_at):
        assert stamp.utcoffset() is not None and stamp.utcoffset().total_seconds() == 0


def test_title_falls_back_to_file_name(make_pipeline):
    pipeline = make_pipeline(ScriptedParser(build_payload(1, 2, title=None)))
    job = pipeline.import_book(file_name="My Novel.EPUB")
    assert pipeline.repo.get_book(job.book_id).title == "My Novel"
    assert title_from_file_name("notes.epub.epub") == "notes.epub"


def test_submit_requires_viewer_and_payload(make_pipeline):
    pipeline = make_pipeline()
    with pytest.raises(NotAuthenticatedError):
        pipeline.service.submit(None, "book.epub", b"data")
    with pytest.raises(ValueError):
        pipeline.service.submit("user-1", "book.epub", b"")
    assert pipeline.repo.jobs == {}


def test_submit_returns_queued_job_without_running_it():
    repo = InMemoryLibraryRepository()
    blobs = InMemoryBlobStore()
    queue = RecordingQueue()
    service = ImportService(repo, blobs, queue)
    job = service.submit("user-1", "book.epub", b"PK", None)
    assert job.status == ImportJobStatus.QUEUED
    assert job.content_type == "application/epub+zip"
    assert queue.jobs == [job.id]
    assert blobs.get(job.storage_id).data == b"PK"


def test_parser_failure_then_retry_completes(make_pipeline, failing_parser):
    pipeline = make_pipeline(failing_parser)
    job = pipeline.import_book()
    assert job.status == ImportJobStatus.FAILED
    assert job.error_message == "Parser unreachable: connection refused"
    assert job.book_id is None and job.finished_at is not None
    assert pipeline.repo.books == {}

    retried = pipeline.service.retry("user-1", job.id)
    assert retried.attempts == 1

    job = pipeline.repo.get_job(job.id)
    assert job.status == ImportJobStatus.COMPLETED
    assert job.book_id and job.error_message is None
    assert failing_parser.calls == 2
    # The retry reused the stored upload.
    assert pipeline.repo.get_book_file(job.book_id).storage_id == job.storage_id

    with pytest.raises(InvalidTransitionError):
        pipeline.service.retry("user-1", job.id)


def test_retried_job_keeps_last_error_until_worker_starts(failing_parser):
    repo = InMemoryLibraryRepository()
    blobs = InMemoryBlobStore()
    worker = ImportWorker(repo, blobs, failing_parser)
    queue = RecordingQueue()
    service = ImportService(repo, blobs, queue)
    job = service.submit("user-1", "book.epub", b"PK")
    assert worker.advance(job.id).status == ImportJobStatus.FAILED

    service.retry("user-1", job.id)
    waiting = service.get_job("user-1", job.id)
    assert waiting.status == ImportJobStatus.FAILED
    assert waiting.error_message == "Parser unreachable: connection refused"
    assert waiting.attempts == 1
    assert queue.jobs == [job.id, job.id]

    done = worker.advance(job.id)
    assert done.status == ImportJobStatus.COMPLETED
    assert done.error_message is None and done.book_id


def test_retry_checks_ownership(make_pipeline, failing_parser):
    pipeline = make_pipeline(failing_parser)
    job = pipeline.import_book()
    with pytest.raises(NotAuthorizedError):
        pipeline.service.retry("someone-else", job.id)
    assert pipeline.repo.get_job(job.id).status == ImportJobStatus.FAILED


def test_missing_stored_file_fails_job():
    repo = InMemoryLibraryRepository()
    blobs = InMemoryBlobStore()
    parser = ScriptedParser()
    service = ImportService(repo, blobs, RecordingQueue())
    job = service.submit("user-1", "book.epub", b"PK")
    blobs.delete(job.storage_id)

    result = ImportWorker(repo, blobs, parser).advance(job.id)
    assert result.status == ImportJobStatus.FAILED
    assert result.error_message == "Missing stored file"
    assert parser.calls == 0


def test_invalid_chunk_layout_fails_without_book(make_pipeline):
    payload = build_payload(1, 3)
    payload["chunks"][2]["startOffset"] += 5
    payload["chunks"][2]["endOffset"] += 5
    pipeline = make_pipeline(ScriptedParser(payload))
    job = pipeline.import_book()
    assert job.status == ImportJobStatus.FAILED
    assert job.error_message.startswith("Invalid parser response")
    assert pipeline.repo.books == {}


def test_chunk_for_unknown_section_is_dropped(make_pipeline):
    payload = build_payload(1, 2)
    payload["chunks"].append(
        {"sectionOrderIndex": 99, "chunkIndex": 0, "startOffset": 0, "endOffset": 4, "wordCount": 1, "content": "lost"}
    )
    pipeline = make_pipeline(ScriptedParser(payload))
    job = pipeline.import_book()
    assert job.status == ImportJobStatus.COMPLETED
    assert len(pipeline.repo.chunks) == 2
    assert all(c.content != "lost" for c in pipeline.repo.chunks.values())


def test_sparse_section_order_is_renumbered(make_pipeline):
    payload = build_payload(0, 0)
    payload["sections"] = [
        {"title": "Part", "orderIndex": 2, "depth": 0},
        {"title": "Chapter", "orderIndex": 5, "depth": 1, "parentOrderIndex": 2},
        {"title": "Appendix", "orderIndex": 9, "depth": 0},
    ]
    payload["chunks"] = [
        {"sectionOrderIndex": 5, "chunkIndex": 0, "startOffset": 0, "endOffset": 5, "wordCount": 1, "content": "Hello"},
    ]
    pipeline = make_pipeline(ScriptedParser(payload))
    job = pipeline.import_book()

    sections = pipeline.repo.list_sections(job.book_id)
    assert [(s.title, s.order_index) for s in sections] == [("Part", 0), ("Chapter", 1), ("Appendix", 2)]
    assert sections[1].parent_id == sections[0].id
    assert [c.content for c in pipeline.repo.list_chunks(sections[1].id)] == ["Hello"]
    assert pipeline.repo.list_chunks(sections[0].id) == []
    assert sections[0].text_storage_id is None


class BrokenRepository(InMemoryLibraryRepository):
    def save_ingestion(self, batch):
        raise RuntimeError("disk full")


def test_ingestion_failure_discards_written_blobs(make_pipeline):
    pipeline = make_pipeline(repo=BrokenRepository())
    job = pipeline.import_book()
    assert job.status == ImportJobStatus.FAILED
    assert job.error_message == "Ingestion failed: disk full"
    # Only the original upload survives the rollback.
    assert list(pipeline.blobs.blobs) == [job.storage_id]


def test_advance_does_not_reingest_completed_job(imported):
    pipeline, job = imported
    again = pipeline.worker.advance(job.id)
    assert again.status == ImportJobStatus.COMPLETED
    assert again.book_id == job.book_id
    assert pipeline.parser.calls == 1
    assert len(pipeline.repo.books) == 1


class CompletionFailsOnceRepository(InMemoryLibraryRepository):
    def __init__(self):
        super().__init__()
        self.fail_completion = True

    def update_job_status(self, job_id, status, error_message=None, book_id=None):
        if status == ImportJobStatus.COMPLETED and self.fail_completion:
            self.fail_completion = False
            raise RuntimeError("database went away")
        super().update_job_status(job_id, status, error_message=error_message, book_id=book_id)


def test_book_id_is_written_with_the_ingested_book():
    repo = CompletionFailsOnceRepository()
    blobs = InMemoryBlobStore()
    parser = ScriptedParser()
    worker = ImportWorker(repo, blobs, parser)
    job = ImportService(repo, blobs, RecordingQueue()).submit("user-1", "book.epub", b"PK")

    with pytest.raises(RuntimeError):
        worker.advance(job.id)
    stuck = repo.get_job(job.id)
    assert stuck.status == ImportJobStatus.INGESTING
    assert stuck.book_id in repo.books

    done = worker.advance(job.id)
    assert done.status == ImportJobStatus.COMPLETED
    assert done.book_id == stuck.book_id
    assert parser.calls == 1
    assert len(repo.books) == 1


def test_advance_skips_job_held_by_another_pass():
    repo = InMemoryLibraryRepository()
    blobs = InMemoryBlobStore()
    parser = ScriptedParser()
    locks = JobLocks()
    worker = ImportWorker(repo, blobs, parser, locks=locks)
    job = ImportService(repo, blobs, RecordingQueue()).submit("user-1", "book.epub", b"PK")

    with locks.hold(job.id) as acquired:
        assert acquired
        skipped = worker.advance(job.id)
    assert skipped.status == ImportJobStatus.QUEUED
    assert parser.calls == 0
    assert not locks.is_held(job.id)

    assert worker.advance(job.id).status == ImportJobStatus.COMPLETED


def test_list_and_clear_jobs(make_pipeline):
    pipeline = make_pipeline()
    first = pipeline.import_book()
    second = pipeline.import_book(file_name="other.epub")
    pipeline.import_book(viewer_id="user-2")

    listed = pipeline.service.list_jobs("user-1")
    assert {j.id for j in listed} == {first.id, second.id}
    assert len(pipeline.service.list_jobs("user-1", limit=1)) == 1

    assert pipeline.service.clear_jobs("user-1") == 2
    assert pipeline.service.list_jobs("user-1") == []
    assert len(pipeline.service.list_jobs("user-2")) == 1


def test_submit_stored_upload(make_pipeline):
    pipeline = make_pipeline()
    ticket = pipeline.blobs.issue_upload_url()
    storage_id = pipeline.blobs.complete_upload(ticket.token, b"PK\x03\x04", "application/epub+zip")
    job = pipeline.service.submit_stored("user-1", storage_id, "stored.epub", 4)
    job = pipeline.repo.get_job(job.id)
    assert job.status == ImportJobStatus.COMPLETED
    assert job.storage_id == storage_id


def test_threaded_queue_runs_jobs_in_background(make_pipeline):
    pipeline = make_pipeline()
    queue = ThreadedJobQueue(pipeline.worker)
    service = ImportService(pipeline.repo, pipeline.blobs, queue)
    jobs = [service.submit("user-1", f"book-{i}.epub", b"PK") for i in range(2)]
    queue.join()
    queue.stop()
    assert [pipeline.repo.get_job(j.id).status for j in jobs] == [ImportJobStatus.COMPLETED] * 2


def test_rq_queue_job_id_includes_attempt():
    config = WorkerConfig(database_url="sqlite://", blob_storage_root="/tmp/blobs")
    rq_queue = RQJobQueue(config, redis_url="redis://localhost:6379/0")
    calls = []
    rq_queue.queue = SimpleNamespace(enqueue=lambda *args, **kwargs: calls.append((args, kwargs)))

    job = SimpleNamespace(id="job-1", attempts=2)
    rq_queue.enqueue(job)
    args, kwargs = calls[0]
    assert args[1:] == ("job-1", config)
    assert kwargs["job_id"] == "job-1-2"


def test_worker_config_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///tmp/x.db")
    monkeypatch.setenv("PARSER_TIMEOUT_SECONDS", "7.5")
    monkeypatch.delenv("PARSER_URL", raising=False)
    config = WorkerConfig.from_env()
    assert config.database_url == "sqlite+pysqlite:///tmp/x.db"
    assert config.parser_timeout_seconds == 7.5
    assert config.parser_url == "http://localhost:8081/parse"


def test_sqlalchemy_pipeline_roundtrip(tmp_path, make_pipeline):
    repo = SqlAlchemyLibraryRepository(f"sqlite+pysqlite:///{tmp_path / 'library.db'}")
    blobs = LocalBlobStore(BlobPaths(tmp_path / "blobs"))
    blobs.ensure_base_dirs()
    pipeline = make_pipeline(repo=repo, blobs=blobs)

    job = pipeline.import_book()
    assert job.status == ImportJobStatus.COMPLETED
    assert job.started_at is not None and job.finished_at is not None

    sections = repo.list_sections(job.book_id)
    assert [s.order_index for s in sections] == [0, 1, 2]
    assert len(repo.list_chunks(sections[0].id, start_index=10, limit=5)) == 5
    assert repo.get_book(job.book_id).subjects == []
    assert repo.get_user_book("user-1", job.book_id) is not None

    text_id = sections[0].text_storage_id
    assert blobs.get(text_id).content_type == "text/plain"

    LibraryService(repo, blobs).delete_book("user-1", job.book_id)
    assert repo.get_book(job.book_id) is None
    assert repo.list_sections(job.book_id) == []
    assert blobs.get(text_id) is None
    assert blobs.get(job.storage_id) is None


def test_sqlalchemy_job_failure_keeps_message(tmp_path, make_pipeline):
    repo = SqlAlchemyLibraryRepository(f"sqlite+pysqlite:///{tmp_path / 'library.db'}")
    pipeline = make_pipeline(ScriptedParser(errors=[ParserError("Parser timed out after 120s")]), repo=repo)
    job = pipeline.import_book()
    assert job.status == ImportJobStatus.FAILED
    assert job.error_message == "Parser timed out after 120s"
