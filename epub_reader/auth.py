"""
Viewer identity and ownership checks.

The identity provider is external: requests arrive carrying an opaque
subject (or nothing). A subject is mapped onto a local user row, created
on first sight. When local auth is allowed, anonymous callers act as a
single shared ``local-dev`` user, which is how development setups import
without signing in.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional, Tuple

from .errors import NotAuthenticatedError, NotAuthorizedError, NotFoundError
from .importing.models import BookRecord, ImportJobRecord, SectionRecord, UserRecord
from .importing.repository import LibraryRepository

logger = logging.getLogger(__name__)

EXTERNAL_PROVIDER = "external"
LOCAL_PROVIDER = "local"
LOCAL_DEV_EXTERNAL_ID = "local-dev"


class IdentityResolver:
    def __init__(self, repository: LibraryRepository, allow_local_auth: bool = False):
        self.repo = repository
        self.allow_local_auth = allow_local_auth

    def resolve(
        self,
        subject: Optional[str],
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Optional[str]:
        """
        Return the local user id for a subject, or None when the caller is
        anonymous and local auth is off.
        """
        if subject:
            return self._ensure_user(EXTERNAL_PROVIDER, subject, email=email, name=name).id
        if self.allow_local_auth:
            return self._ensure_user(LOCAL_PROVIDER, LOCAL_DEV_EXTERNAL_ID, name="Local Dev").id
        return None

    def require(self, subject: Optional[str]) -> str:
        user_id = self.resolve(subject)
        if not user_id:
            raise NotAuthenticatedError()
        return user_id

    def _ensure_user(
        self,
        provider: str,
        external_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> UserRecord:
        existing = self.repo.find_user(provider, external_id)
        if existing:
            if (email and email != existing.email) or (name and name != existing.name):
                existing.email = email or existing.email
                existing.name = name or existing.name
                self.repo.save_user(existing)
            return existing
        user = UserRecord(id=uuid.uuid4().hex, auth_provider=provider, external_id=external_id, email=email, name=name)
        self.repo.save_user(user)
        logger.info("Registered user %s for %s:%s", user.id, provider, external_id)
        return user


def require_viewer(viewer_id: Optional[str]) -> str:
    if not viewer_id:
        raise NotAuthenticatedError()
    return viewer_id


def require_book_owner(repo: LibraryRepository, viewer_id: Optional[str], book_id: str) -> BookRecord:
    viewer_id = require_viewer(viewer_id)
    book = repo.get_book(book_id)
    if not book:
        raise NotFoundError("Book not found.")
    if book.owner_id != viewer_id:
        raise NotAuthorizedError("Not authorized to access this book.")
    return book


def require_section_owner(
    repo: LibraryRepository, viewer_id: Optional[str], section_id: str
) -> Tuple[BookRecord, SectionRecord]:
    section = repo.get_section(section_id)
    if not section:
        raise NotFoundError("Section not found.")
    book = require_book_owner(repo, viewer_id, section.book_id)
    return book, section


def require_job_owner(repo: LibraryRepository, viewer_id: Optional[str], job_id: str) -> ImportJobRecord:
    viewer_id = require_viewer(viewer_id)
    job = repo.get_job(job_id)
    if not job:
        raise NotFoundError(f"Import job not found: {job_id}")
    if job.user_id != viewer_id:
        raise NotAuthorizedError("Not authorized to access this import job.")
    return job
