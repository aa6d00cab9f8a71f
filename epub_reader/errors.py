from __future__ import annotations

from typing import Optional


class EpubReaderError(Exception):
    """Base class for errors raised by the library core."""


class NotAuthenticatedError(EpubReaderError):
    def __init__(self, message: str = "Unauthenticated"):
        super().__init__(message)


class NotAuthorizedError(EpubReaderError):
    pass


class NotFoundError(EpubReaderError, LookupError):
    pass


class InvalidTransitionError(EpubReaderError):
    pass


class ParserError(EpubReaderError):
    """
    Any failure to obtain a usable parse result: network errors, timeouts,
    non-2xx responses and schema-invalid bodies all end up here.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class MissingStoredFileError(EpubReaderError):
    def __init__(self, storage_id: Optional[str]):
        super().__init__("Missing stored file")
        self.storage_id = storage_id


class IngestionError(EpubReaderError):
    pass
