from __future__ import annotations

import json
from copy import deepcopy
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ..errors import IngestionError
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
    SectionRecord,
    UserBookRecord,
    UserRecord,
)

Base = declarative_base()


class UserModel(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("auth_provider", "external_id", name="uq_users_external_id"),)
    id = Column(String, primary_key=True)
    auth_provider = Column(String, nullable=False)
    external_id = Column(String, nullable=False)
    email = Column(String)
    name = Column(String)
    created_at = Column(DateTime)


class BookModel(Base):
    __tablename__ = "books"
    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    author = Column(String)
    language = Column(String)
    publisher = Column(String)
    published_at = Column(String)
    series = Column(String)
    series_index = Column(String)
    subjects_json = Column(Text)
    identifiers_json = Column(Text)
    cover_storage_id = Column(String)
    cover_content_type = Column(String)
    section_count = Column(Integer, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class BookFileModel(Base):
    __tablename__ = "book_files"
    id = Column(String, primary_key=True)
    book_id = Column(String, index=True, nullable=False)
    storage_id = Column(String, nullable=False)
    file_name = Column(String)
    file_size = Column(Integer)
    content_type = Column(String)
    created_at = Column(DateTime)


class ImportJobModel(Base):
    __tablename__ = "import_jobs"
    id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    file_name = Column(String)
    file_size = Column(Integer)
    content_type = Column(String)
    storage_id = Column(String)
    status = Column(Enum(ImportJobStatus))
    error_message = Column(Text)
    book_id = Column(String)
    attempts = Column(Integer, default=0)
    created_at = Column(DateTime, index=True)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)


class SectionModel(Base):
    __tablename__ = "sections"
    __table_args__ = (UniqueConstraint("book_id", "order_index", name="uq_sections_book_order"),)
    id = Column(String, primary_key=True)
    book_id = Column(String, index=True, nullable=False)
    parent_id = Column(String)
    title = Column(String)
    href = Column(String)
    anchor = Column(String)
    order_index = Column(Integer, nullable=False)
    depth = Column(Integer, default=0)
    text_storage_id = Column(String)
    text_size = Column(Integer)
    content_storage_id = Column(String)
    content_size = Column(Integer)
    created_at = Column(DateTime)


class ContentChunkModel(Base):
    __tablename__ = "content_chunks"
    __table_args__ = (UniqueConstraint("section_id", "chunk_index", name="uq_chunks_section_index"),)
    id = Column(String, primary_key=True)
    book_id = Column(String, index=True, nullable=False)
    section_id = Column(String, index=True, nullable=False)
    chunk_index = Column(Integer, nullable=False)
    start_offset = Column(Integer)
    end_offset = Column(Integer)
    word_count = Column(Integer)
    content = Column(Text)
    created_at = Column(DateTime)


class BookAssetModel(Base):
    __tablename__ = "book_assets"
    __table_args__ = (UniqueConstraint("book_id", "href", name="uq_assets_book_href"),)
    id = Column(String, primary_key=True)
    book_id = Column(String, index=True, nullable=False)
    href = Column(String, nullable=False)
    storage_id = Column(String, nullable=False)
    content_type = Column(String)
    byte_size = Column(Integer)
    width = Column(Integer)
    height = Column(Integer)
    created_at = Column(DateTime)


class UserBookModel(Base):
    __tablename__ = "user_books"
    __table_args__ = (UniqueConstraint("user_id", "book_id", name="uq_user_books_user_book"),)
    id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    book_id = Column(String, index=True, nullable=False)
    last_section_id = Column(String)
    last_section_index = Column(Integer, default=0)
    last_chunk_index = Column(Integer, default=0)
    last_chunk_offset = Column(Float, default=0)
    last_scroll_ratio = Column(Float)
    last_scroll_top = Column(Float)
    last_scroll_height = Column(Float)
    last_client_height = Column(Float)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class BookmarkModel(Base):
    __tablename__ = "bookmarks"
    id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    book_id = Column(String, index=True, nullable=False)
    section_id = Column(String, nullable=False)
    chunk_index = Column(Integer)
    offset = Column(Float)
    label = Column(String)
    created_at = Column(DateTime)


class LibraryRepository:
    """
    Persistence boundary for the library. Implementations can target
    SQLite/Postgres or keep everything in memory. All methods are
    synchronous; every write either fully lands or raises.
    """

    # Users
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        raise NotImplementedError

    def find_user(self, auth_provider: str, external_id: str) -> Optional[UserRecord]:
        raise NotImplementedError

    def save_user(self, user: UserRecord) -> None:
        raise NotImplementedError

    # Books
    def get_book(self, book_id: str) -> Optional[BookRecord]:
        raise NotImplementedError

    def list_books_for_owner(self, owner_id: str) -> List[BookRecord]:
        raise NotImplementedError

    def get_book_file(self, book_id: str) -> Optional[BookFileRecord]:
        raise NotImplementedError

    def delete_book(self, book_id: str) -> List[str]:
        """
        Remove a book and everything hanging off it. Returns the storage ids
        that no longer have an owner so the caller can drop the blobs.
        """
        raise NotImplementedError

    # Import jobs
    def get_job(self, job_id: str) -> Optional[ImportJobRecord]:
        raise NotImplementedError

    def save_job(self, job: ImportJobRecord) -> None:
        raise NotImplementedError

    def update_job_status(
        self,
        job_id: str,
        status: ImportJobStatus,
        error_message: Optional[str] = None,
        book_id: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    def list_jobs_for_user(self, user_id: str, limit: int = 50) -> List[ImportJobRecord]:
        raise NotImplementedError

    def delete_jobs_for_user(self, user_id: str) -> int:
        raise NotImplementedError

    # Content
    def save_ingestion(self, batch: IngestionBatch) -> None:
        raise NotImplementedError

    def list_sections(self, book_id: str) -> List[SectionRecord]:
        raise NotImplementedError

    def get_section(self, section_id: str) -> Optional[SectionRecord]:
        raise NotImplementedError

    def list_chunks(self, section_id: str, start_index: int = 0, limit: Optional[int] = None) -> List[ContentChunkRecord]:
        raise NotImplementedError

    def list_assets(self, book_id: str) -> List[BookAssetRecord]:
        raise NotImplementedError

    # Progress and bookmarks
    def get_user_book(self, user_id: str, book_id: str) -> Optional[UserBookRecord]:
        raise NotImplementedError

    def save_user_book(self, user_book: UserBookRecord) -> None:
        raise NotImplementedError

    def list_bookmarks(self, user_id: str, book_id: str) -> List[BookmarkRecord]:
        raise NotImplementedError

    def get_bookmark(self, bookmark_id: str) -> Optional[BookmarkRecord]:
        raise NotImplementedError

    def save_bookmark(self, bookmark: BookmarkRecord) -> None:
        raise NotImplementedError

    def delete_bookmark(self, bookmark_id: str) -> None:
        raise NotImplementedError


def _apply_status(job, status: ImportJobStatus, error_message: Optional[str], book_id: Optional[str]) -> None:
    now = datetime.now(timezone.utc)
    job.status = status
    if book_id:
        job.book_id = book_id
    if status == ImportJobStatus.PARSING:
        # A retried job keeps its last error until a new attempt actually starts.
        job.error_message = None
        job.finished_at = None
    if error_message:
        job.error_message = error_message
    if status in (ImportJobStatus.PARSING, ImportJobStatus.INGESTING):
        job.started_at = now
    if status in (ImportJobStatus.COMPLETED, ImportJobStatus.FAILED):
        job.finished_at = now


def _book_storage_ids(book: Optional[BookRecord], files, sections, assets) -> List[str]:
    ids: List[str] = []
    if book and book.cover_storage_id:
        ids.append(book.cover_storage_id)
    ids.extend(f.storage_id for f in files)
    for section in sections:
        if section.text_storage_id:
            ids.append(section.text_storage_id)
        if section.content_storage_id:
            ids.append(section.content_storage_id)
    ids.extend(a.storage_id for a in assets)
    return ids


class InMemoryLibraryRepository(LibraryRepository):
    """
    Simple in-memory store for local runs and tests. It mirrors the DB shape
    and keeps copies of dataclasses to avoid cross-mutation between calls.
    """

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.books: Dict[str, BookRecord] = {}
        self.book_files: Dict[str, BookFileRecord] = {}
        self.jobs: Dict[str, ImportJobRecord] = {}
        self.sections: Dict[str, SectionRecord] = {}
        self.chunks: Dict[str, ContentChunkRecord] = {}
        self.assets: Dict[str, BookAssetRecord] = {}
        self.user_books: Dict[str, UserBookRecord] = {}
        self.bookmarks: Dict[str, BookmarkRecord] = {}

    def _clone(self, obj):
        return deepcopy(obj)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        user = self.users.get(user_id)
        return self._clone(user) if user else None

    def find_user(self, auth_provider: str, external_id: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.auth_provider == auth_provider and user.external_id == external_id:
                return self._clone(user)
        return None

    def save_user(self, user: UserRecord) -> None:
        self.users[user.id] = self._clone(user)

    def get_book(self, book_id: str) -> Optional[BookRecord]:
        book = self.books.get(book_id)
        return self._clone(book) if book else None

    def list_books_for_owner(self, owner_id: str) -> List[BookRecord]:
        books = [self._clone(b) for b in self.books.values() if b.owner_id == owner_id]
        return sorted(books, key=lambda b: b.updated_at, reverse=True)

    def get_book_file(self, book_id: str) -> Optional[BookFileRecord]:
        for book_file in self.book_files.values():
            if book_file.book_id == book_id:
                return self._clone(book_file)
        return None

    def delete_book(self, book_id: str) -> List[str]:
        book = self.books.pop(book_id, None)
        files = [f for f in self.book_files.values() if f.book_id == book_id]
        sections = [s for s in self.sections.values() if s.book_id == book_id]
        assets = [a for a in self.assets.values() if a.book_id == book_id]
        storage_ids = _book_storage_ids(book, files, sections, assets)
        for table in (self.book_files, self.sections, self.chunks, self.assets, self.user_books, self.bookmarks):
            for key in [k for k, v in table.items() if v.book_id == book_id]:
                del table[key]
        return storage_ids

    def get_job(self, job_id: str) -> Optional[ImportJobRecord]:
        job = self.jobs.get(job_id)
        return self._clone(job) if job else None

    def save_job(self, job: ImportJobRecord) -> None:
        self.jobs[job.id] = self._clone(job)

    def update_job_status(
        self,
        job_id: str,
        status: ImportJobStatus,
        error_message: Optional[str] = None,
        book_id: Optional[str] = None,
    ) -> None:
        job = self.jobs.get(job_id)
        if not job:
            return
        _apply_status(job, status, error_message, book_id)
        self.jobs[job_id] = self._clone(job)

    def list_jobs_for_user(self, user_id: str, limit: int = 50) -> List[ImportJobRecord]:
        jobs = [self._clone(j) for j in self.jobs.values() if j.user_id == user_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    def delete_jobs_for_user(self, user_id: str) -> int:
        doomed = [k for k, j in self.jobs.items() if j.user_id == user_id]
        for key in doomed:
            del self.jobs[key]
        return len(doomed)

    def save_ingestion(self, batch: IngestionBatch) -> None:
        # Validate everything before touching state so a bad batch leaves no trace.
        if batch.book.id in self.books:
            raise IngestionError(f"Book already exists: {batch.book.id}")
        order_indices = [s.order_index for s in batch.sections]
        if len(set(order_indices)) != len(order_indices):
            raise IngestionError(f"Duplicate section order index in book {batch.book.id}")
        chunk_keys = [(c.section_id, c.chunk_index) for c in batch.chunks]
        if len(set(chunk_keys)) != len(chunk_keys):
            raise IngestionError(f"Duplicate chunk index in book {batch.book.id}")

        self.books[batch.book.id] = self._clone(batch.book)
        self.book_files[batch.book_file.id] = self._clone(batch.book_file)
        for section in batch.sections:
            self.sections[section.id] = self._clone(section)
        for chunk in batch.chunks:
            self.chunks[chunk.id] = self._clone(chunk)
        for asset in batch.assets:
            self.assets[asset.id] = self._clone(asset)
        if batch.user_book is not None:
            self.user_books[batch.user_book.id] = self._clone(batch.user_book)
        if batch.job_id in self.jobs:
            self.jobs[batch.job_id].book_id = batch.book.id

    def list_sections(self, book_id: str) -> List[SectionRecord]:
        sections = [self._clone(s) for s in self.sections.values() if s.book_id == book_id]
        return sorted(sections, key=lambda s: s.order_index)

    def get_section(self, section_id: str) -> Optional[SectionRecord]:
        section = self.sections.get(section_id)
        return self._clone(section) if section else None

    def list_chunks(self, section_id: str, start_index: int = 0, limit: Optional[int] = None) -> List[ContentChunkRecord]:
        chunks = sorted(
            (c for c in self.chunks.values() if c.section_id == section_id and c.chunk_index >= start_index),
            key=lambda c: c.chunk_index,
        )
        if limit is not None:
            chunks = chunks[:limit]
        return [self._clone(c) for c in chunks]

    def list_assets(self, book_id: str) -> List[BookAssetRecord]:
        return [self._clone(a) for a in self.assets.values() if a.book_id == book_id]

    def get_user_book(self, user_id: str, book_id: str) -> Optional[UserBookRecord]:
        for user_book in self.user_books.values():
            if user_book.user_id == user_id and user_book.book_id == book_id:
                return self._clone(user_book)
        return None

    def save_user_book(self, user_book: UserBookRecord) -> None:
        existing = self.get_user_book(user_book.user_id, user_book.book_id)
        if existing and existing.id != user_book.id:
            del self.user_books[existing.id]
        self.user_books[user_book.id] = self._clone(user_book)

    def list_bookmarks(self, user_id: str, book_id: str) -> List[BookmarkRecord]:
        marks = [self._clone(b) for b in self.bookmarks.values() if b.user_id == user_id and b.book_id == book_id]
        return sorted(marks, key=lambda b: b.created_at)

    def get_bookmark(self, bookmark_id: str) -> Optional[BookmarkRecord]:
        bookmark = self.bookmarks.get(bookmark_id)
        return self._clone(bookmark) if bookmark else None

    def save_bookmark(self, bookmark: BookmarkRecord) -> None:
        self.bookmarks[bookmark.id] = self._clone(bookmark)

    def delete_bookmark(self, bookmark_id: str) -> None:
        self.bookmarks.pop(bookmark_id, None)


class SqlAlchemyLibraryRepository(LibraryRepository):
    """
    SQL-backed repository using SQLAlchemy. Works with SQLite/Postgres URLs.
    """

    def __init__(self, database_url: str):
        self.engine = create_engine(database_url, future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def _session(self) -> Session:
        return self.SessionLocal()

    # region converters
    @staticmethod
    def _user(m: UserModel) -> UserRecord:
        return UserRecord(
            id=m.id,
            auth_provider=m.auth_provider,
            external_id=m.external_id,
            email=m.email,
            name=m.name,
            created_at=m.created_at,
        )

    @staticmethod
    def _book(m: BookModel) -> BookRecord:
        return BookRecord(
            id=m.id,
            owner_id=m.owner_id,
            title=m.title,
            author=m.author,
            language=m.language,
            publisher=m.publisher,
            published_at=m.published_at,
            series=m.series,
            series_index=m.series_index,
            subjects=json.loads(m.subjects_json or "[]"),
            identifiers=[Identifier(**i) for i in json.loads(m.identifiers_json or "[]")],
            cover_storage_id=m.cover_storage_id,
            cover_content_type=m.cover_content_type,
            section_count=int(m.section_count or 0),
            created_at=m.created_at,
            updated_at=m.updated_at,
        )

    @staticmethod
    def _book_model(book: BookRecord) -> BookModel:
        return BookModel(
            id=book.id,
            owner_id=book.owner_id,
            title=book.title,
            author=book.author,
            language=book.language,
            publisher=book.publisher,
            published_at=book.published_at,
            series=book.series,
            series_index=book.series_index,
            subjects_json=json.dumps(book.subjects or []),
            identifiers_json=json.dumps([vars(i) for i in book.identifiers or []]),
            cover_storage_id=book.cover_storage_id,
            cover_content_type=book.cover_content_type,
            section_count=book.section_count,
            created_at=book.created_at,
            updated_at=book.updated_at,
        )

    @staticmethod
    def _book_file(m: BookFileModel) -> BookFileRecord:
        return BookFileRecord(
            id=m.id,
            book_id=m.book_id,
            storage_id=m.storage_id,
            file_name=m.file_name,
            file_size=int(m.file_size or 0),
            content_type=m.content_type,
            created_at=m.created_at,
        )

    @staticmethod
    def _job(m: ImportJobModel) -> ImportJobRecord:
        return ImportJobRecord(
            id=m.id,
            user_id=m.user_id,
            file_name=m.file_name,
            file_size=int(m.file_size or 0),
            content_type=m.content_type,
            storage_id=m.storage_id,
            status=m.status,
            error_message=m.error_message,
            book_id=m.book_id,
            attempts=int(m.attempts or 0),
            created_at=m.created_at,
            started_at=m.started_at,
            finished_at=m.finished_at,
        )

    @staticmethod
    def _section(m: SectionModel) -> SectionRecord:
        return SectionRecord(
            id=m.id,
            book_id=m.book_id,
            parent_id=m.parent_id,
            title=m.title,
            order_index=m.order_index,
            depth=int(m.depth or 0),
            href=m.href,
            anchor=m.anchor,
            text_storage_id=m.text_storage_id,
            text_size=m.text_size,
            content_storage_id=m.content_storage_id,
            content_size=m.content_size,
            created_at=m.created_at,
        )

    @staticmethod
    def _chunk(m: ContentChunkModel) -> ContentChunkRecord:
        return ContentChunkRecord(
            id=m.id,
            book_id=m.book_id,
            section_id=m.section_id,
            chunk_index=m.chunk_index,
            start_offset=m.start_offset,
            end_offset=m.end_offset,
            word_count=m.word_count,
            content=m.content,
            created_at=m.created_at,
        )

    @staticmethod
    def _asset(m: BookAssetModel) -> BookAssetRecord:
        return BookAssetRecord(
            id=m.id,
            book_id=m.book_id,
            href=m.href,
            storage_id=m.storage_id,
            content_type=m.content_type,
            byte_size=m.byte_size,
            width=m.width,
            height=m.height,
            created_at=m.created_at,
        )

    @staticmethod
    def _user_book(m: UserBookModel) -> UserBookRecord:
        return UserBookRecord(
            id=m.id,
            user_id=m.user_id,
            book_id=m.book_id,
            last_section_id=m.last_section_id,
            last_section_index=int(m.last_section_index or 0),
            last_chunk_index=int(m.last_chunk_index or 0),
            last_chunk_offset=m.last_chunk_offset or 0,
            last_scroll_ratio=m.last_scroll_ratio,
            last_scroll_top=m.last_scroll_top,
            last_scroll_height=m.last_scroll_height,
            last_client_height=m.last_client_height,
            created_at=m.created_at,
            updated_at=m.updated_at,
        )

    @staticmethod
    def _bookmark(m: BookmarkModel) -> BookmarkRecord:
        return BookmarkRecord(
            id=m.id,
            user_id=m.user_id,
            book_id=m.book_id,
            section_id=m.section_id,
            chunk_index=int(m.chunk_index or 0),
            offset=m.offset or 0,
            label=m.label,
            created_at=m.created_at,
        )

    # endregion

    # region Users
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._session() as session:
            model = session.get(UserModel, user_id)
            return self._user(model) if model else None

    def find_user(self, auth_provider: str, external_id: str) -> Optional[UserRecord]:
        with self._session() as session:
            stmt = select(UserModel).where(
                UserModel.auth_provider == auth_provider, UserModel.external_id == external_id
            )
            model = session.execute(stmt).scalars().first()
            return self._user(model) if model else None

    def save_user(self, user: UserRecord) -> None:
        with self._session() as session:
            session.merge(
                UserModel(
                    id=user.id,
                    auth_provider=user.auth_provider,
                    external_id=user.external_id,
                    email=user.email,
                    name=user.name,
                    created_at=user.created_at,
                )
            )
            session.commit()

    # endregion

    # region Books
    def get_book(self, book_id: str) -> Optional[BookRecord]:
        with self._session() as session:
            model = session.get(BookModel, book_id)
            return self._book(model) if model else None

    def list_books_for_owner(self, owner_id: str) -> List[BookRecord]:
        with self._session() as session:
            stmt = select(BookModel).where(BookModel.owner_id == owner_id).order_by(BookModel.updated_at.desc())
            return [self._book(m) for m in session.execute(stmt).scalars().all()]

    def get_book_file(self, book_id: str) -> Optional[BookFileRecord]:
        with self._session() as session:
            stmt = select(BookFileModel).where(BookFileModel.book_id == book_id)
            model = session.execute(stmt).scalars().first()
            return self._book_file(model) if model else None

    def delete_book(self, book_id: str) -> List[str]:
        with self._session() as session:
            book = session.get(BookModel, book_id)
            files = session.execute(select(BookFileModel).where(BookFileModel.book_id == book_id)).scalars().all()
            sections = session.execute(select(SectionModel).where(SectionModel.book_id == book_id)).scalars().all()
            assets = session.execute(select(BookAssetModel).where(BookAssetModel.book_id == book_id)).scalars().all()
            storage_ids = _book_storage_ids(
                self._book(book) if book else None,
                [self._book_file(f) for f in files],
                [self._section(s) for s in sections],
                [self._asset(a) for a in assets],
            )
            for model in (
                BookFileModel,
                SectionModel,
                ContentChunkModel,
                BookAssetModel,
                UserBookModel,
                BookmarkModel,
            ):
                session.execute(delete(model).where(model.book_id == book_id))
            session.execute(delete(BookModel).where(BookModel.id == book_id))
            session.commit()
            return storage_ids

    # endregion

    # region Import jobs
    def get_job(self, job_id: str) -> Optional[ImportJobRecord]:
        with self._session() as session:
            model = session.get(ImportJobModel, job_id)
            return self._job(model) if model else None

    def save_job(self, job: ImportJobRecord) -> None:
        with self._session() as session:
            session.merge(
                ImportJobModel(
                    id=job.id,
                    user_id=job.user_id,
                    file_name=job.file_name,
                    file_size=job.file_size,
                    content_type=job.content_type,
                    storage_id=job.storage_id,
                    status=job.status,
                    error_message=job.error_message,
                    book_id=job.book_id,
                    attempts=job.attempts,
                    created_at=job.created_at,
                    started_at=job.started_at,
                    finished_at=job.finished_at,
                )
            )
            session.commit()

    def update_job_status(
        self,
        job_id: str,
        status: ImportJobStatus,
        error_message: Optional[str] = None,
        book_id: Optional[str] = None,
    ) -> None:
        with self._session() as session:
            model = session.get(ImportJobModel, job_id)
            if not model:
                return
            _apply_status(model, status, error_message, book_id)
            session.commit()

    def list_jobs_for_user(self, user_id: str, limit: int = 50) -> List[ImportJobRecord]:
        with self._session() as session:
            stmt = (
                select(ImportJobModel)
                .where(ImportJobModel.user_id == user_id)
                .order_by(ImportJobModel.created_at.desc())
                .limit(limit)
            )
            return [self._job(m) for m in session.execute(stmt).scalars().all()]

    def delete_jobs_for_user(self, user_id: str) -> int:
        with self._session() as session:
            result = session.execute(delete(ImportJobModel).where(ImportJobModel.user_id == user_id))
            session.commit()
            return int(result.rowcount or 0)

    # endregion

    # region Content
    def save_ingestion(self, batch: IngestionBatch) -> None:
        # One session, one commit: a failure anywhere rolls the whole batch back.
        with self._session() as session:
            session.add(self._book_model(batch.book))
            f = batch.book_file
            session.add(
                BookFileModel(
                    id=f.id,
                    book_id=f.book_id,
                    storage_id=f.storage_id,
                    file_name=f.file_name,
                    file_size=f.file_size,
                    content_type=f.content_type,
                    created_at=f.created_at,
                )
            )
            session.add_all(
                SectionModel(
                    id=s.id,
                    book_id=s.book_id,
                    parent_id=s.parent_id,
                    title=s.title,
                    href=s.href,
                    anchor=s.anchor,
                    order_index=s.order_index,
                    depth=s.depth,
                    text_storage_id=s.text_storage_id,
                    text_size=s.text_size,
                    content_storage_id=s.content_storage_id,
                    content_size=s.content_size,
                    created_at=s.created_at,
                )
                for s in batch.sections
            )
            session.add_all(
                ContentChunkModel(
                    id=c.id,
                    book_id=c.book_id,
                    section_id=c.section_id,
                    chunk_index=c.chunk_index,
                    start_offset=c.start_offset,
                    end_offset=c.end_offset,
                    word_count=c.word_count,
                    content=c.content,
                    created_at=c.created_at,
                )
                for c in batch.chunks
            )
            session.add_all(
                BookAssetModel(
                    id=a.id,
                    book_id=a.book_id,
                    href=a.href,
                    storage_id=a.storage_id,
                    content_type=a.content_type,
                    byte_size=a.byte_size,
                    width=a.width,
                    height=a.height,
                    created_at=a.created_at,
                )
                for a in batch.assets
            )
            if batch.user_book is not None:
                ub = batch.user_book
                session.add(
                    UserBookModel(
                        id=ub.id,
                        user_id=ub.user_id,
                        book_id=ub.book_id,
                        last_section_id=ub.last_section_id,
                        last_section_index=ub.last_section_index,
                        last_chunk_index=ub.last_chunk_index,
                        last_chunk_offset=ub.last_chunk_offset,
                        created_at=ub.created_at,
                        updated_at=ub.updated_at,
                    )
                )
            if batch.job_id:
                job_model = session.get(ImportJobModel, batch.job_id)
                if job_model is not None:
                    job_model.book_id = batch.book.id
            session.commit()

    def list_sections(self, book_id: str) -> List[SectionRecord]:
        with self._session() as session:
            stmt = select(SectionModel).where(SectionModel.book_id == book_id).order_by(SectionModel.order_index)
            return [self._section(m) for m in session.execute(stmt).scalars().all()]

    def get_section(self, section_id: str) -> Optional[SectionRecord]:
        with self._session() as session:
            model = session.get(SectionModel, section_id)
            return self._section(model) if model else None

    def list_chunks(self, section_id: str, start_index: int = 0, limit: Optional[int] = None) -> List[ContentChunkRecord]:
        with self._session() as session:
            stmt = (
                select(ContentChunkModel)
                .where(ContentChunkModel.section_id == section_id, ContentChunkModel.chunk_index >= start_index)
                .order_by(ContentChunkModel.chunk_index)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return [self._chunk(m) for m in session.execute(stmt).scalars().all()]

    def list_assets(self, book_id: str) -> List[BookAssetRecord]:
        with self._session() as session:
            stmt = select(BookAssetModel).where(BookAssetModel.book_id == book_id)
            return [self._asset(m) for m in session.execute(stmt).scalars().all()]

    # endregion

    # region Progress and bookmarks
    def get_user_book(self, user_id: str, book_id: str) -> Optional[UserBookRecord]:
        with self._session() as session:
            stmt = select(UserBookModel).where(UserBookModel.user_id == user_id, UserBookModel.book_id == book_id)
            model = session.execute(stmt).scalars().first()
            return self._user_book(model) if model else None

    def save_user_book(self, user_book: UserBookRecord) -> None:
        values = dict(
            last_section_id=user_book.last_section_id,
            last_section_index=user_book.last_section_index,
            last_chunk_index=user_book.last_chunk_index,
            last_chunk_offset=user_book.last_chunk_offset,
            last_scroll_ratio=user_book.last_scroll_ratio,
            last_scroll_top=user_book.last_scroll_top,
            last_scroll_height=user_book.last_scroll_height,
            last_client_height=user_book.last_client_height,
            updated_at=user_book.updated_at,
        )
        with self._session() as session:
            stmt = (
                update(UserBookModel)
                .where(UserBookModel.user_id == user_book.user_id, UserBookModel.book_id == user_book.book_id)
                .values(**values)
            )
            result = session.execute(stmt)
            if not result.rowcount:
                session.add(
                    UserBookModel(
                        id=user_book.id,
                        user_id=user_book.user_id,
                        book_id=user_book.book_id,
                        created_at=user_book.created_at,
                        **values,
                    )
                )
            session.commit()

    def list_bookmarks(self, user_id: str, book_id: str) -> List[BookmarkRecord]:
        with self._session() as session:
            stmt = (
                select(BookmarkModel)
                .where(BookmarkModel.user_id == user_id, BookmarkModel.book_id == book_id)
                .order_by(BookmarkModel.created_at)
            )
            return [self._bookmark(m) for m in session.execute(stmt).scalars().all()]

    def get_bookmark(self, bookmark_id: str) -> Optional[BookmarkRecord]:
        with self._session() as session:
            model = session.get(BookmarkModel, bookmark_id)
            return self._bookmark(model) if model else None

    def save_bookmark(self, bookmark: BookmarkRecord) -> None:
        with self._session() as session:
            session.merge(
                BookmarkModel(
                    id=bookmark.id,
                    user_id=bookmark.user_id,
                    book_id=bookmark.book_id,
                    section_id=bookmark.section_id,
                    chunk_index=bookmark.chunk_index,
                    offset=bookmark.offset,
                    label=bookmark.label,
                    created_at=bookmark.created_at,
                )
            )
            session.commit()

    def delete_bookmark(self, bookmark_id: str) -> None:
        with self._session() as session:
            session.execute(delete(BookmarkModel).where(BookmarkModel.id == bookmark_id))
            session.commit()

    # endregion
