from __future__ import annotations

import json
import logging
import secrets
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class StoredBlob:
    storage_id: str
    data: bytes
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadTicket:
    token: str
    upload_url: str


class BlobStore:
    """
    Opaque blob store. Callers only ever hold storage ids; where and how the
    bytes live is up to the implementation.
    """

    def put(self, data: bytes, content_type: Optional[str] = None) -> str:
        raise NotImplementedError

    def get(self, storage_id: str) -> Optional[StoredBlob]:
        raise NotImplementedError

    def delete(self, storage_id: str) -> None:
        raise NotImplementedError

    def issue_upload_url(self) -> UploadTicket:
        raise NotImplementedError

    def complete_upload(self, token: str, data: bytes, content_type: Optional[str] = None) -> str:
        raise NotImplementedError

    def url_for(self, storage_id: str) -> Optional[str]:
        raise NotImplementedError


def _new_storage_id() -> str:
    return uuid.uuid4().hex


class InMemoryBlobStore(BlobStore):
    """
    Dict-backed store for tests and local runs.
    """

    def __init__(self, base_url: str = "memory://blobs"):
        self.base_url = base_url.rstrip("/")
        self.blobs: Dict[str, Tuple[bytes, Optional[str]]] = {}
        self.tickets: Dict[str, bool] = {}

    def put(self, data: bytes, content_type: Optional[str] = None) -> str:
        storage_id = _new_storage_id()
        self.blobs[storage_id] = (bytes(data), content_type)
        return storage_id

    def get(self, storage_id: str) -> Optional[StoredBlob]:
        entry = self.blobs.get(storage_id)
        if not entry:
            return None
        return StoredBlob(storage_id=storage_id, data=entry[0], content_type=entry[1])

    def delete(self, storage_id: str) -> None:
        self.blobs.pop(storage_id, None)

    def issue_upload_url(self) -> UploadTicket:
        token = secrets.token_urlsafe(16)
        self.tickets[token] = True
        return UploadTicket(token=token, upload_url=f"{self.base_url}/uploads/{token}")

    def complete_upload(self, token: str, data: bytes, content_type: Optional[str] = None) -> str:
        if not self.tickets.pop(token, False):
            raise NotFoundError(f"Upload token not found: {token}")
        return self.put(data, content_type)

    def url_for(self, storage_id: str) -> Optional[str]:
        if storage_id not in self.blobs:
            return None
        return f"{self.base_url}/{storage_id}"


@dataclass
class BlobPaths:
    root: Path

    def blob_dir(self) -> Path:
        return self.root / "blobs"

    def blob_path(self, storage_id: str) -> Path:
        return self.blob_dir() / storage_id[:2] / storage_id

    def meta_path(self, storage_id: str) -> Path:
        return self.blob_dir() / storage_id[:2] / f"{storage_id}.json"

    def ticket_path(self, token: str) -> Path:
        return self.root / "uploads" / token


class LocalBlobStore(BlobStore):
    """
    Filesystem-backed blob store. Blobs are sharded by the first two
    characters of their id; a JSON sidecar keeps the content type.
    Upload tickets are marker files so any process sharing the root can
    redeem them.
    """

    def __init__(self, paths: BlobPaths, public_base_url: str = "http://localhost:8000"):
        self.paths = paths
        self.public_base_url = public_base_url.rstrip("/")

    def ensure_base_dirs(self) -> None:
        self.paths.blob_dir().mkdir(parents=True, exist_ok=True)
        (self.paths.root / "uploads").mkdir(parents=True, exist_ok=True)

    def put(self, data: bytes, content_type: Optional[str] = None) -> str:
        storage_id = _new_storage_id()
        target = self.paths.blob_path(storage_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        with self.paths.meta_path(storage_id).open("w", encoding="utf-8") as f:
            json.dump({"contentType": content_type, "size": len(data)}, f)
        logger.debug("Stored blob %s (%d bytes)", storage_id, len(data))
        return storage_id

    def get(self, storage_id: str) -> Optional[StoredBlob]:
        if not storage_id.isalnum():
            return None
        path = self.paths.blob_path(storage_id)
        if not path.exists():
            return None
        content_type = None
        meta_path = self.paths.meta_path(storage_id)
        if meta_path.exists():
            with meta_path.open("r", encoding="utf-8") as f:
                content_type = json.load(f).get("contentType")
        return StoredBlob(storage_id=storage_id, data=path.read_bytes(), content_type=content_type)

    def delete(self, storage_id: str) -> None:
        if not storage_id.isalnum():
            return
        self.paths.blob_path(storage_id).unlink(missing_ok=True)
        self.paths.meta_path(storage_id).unlink(missing_ok=True)

    def issue_upload_url(self) -> UploadTicket:
        self.ensure_base_dirs()
        token = secrets.token_urlsafe(16)
        self.paths.ticket_path(token).touch()
        return UploadTicket(token=token, upload_url=f"{self.public_base_url}/storage/uploads/{token}")

    def complete_upload(self, token: str, data: bytes, content_type: Optional[str] = None) -> str:
        ticket = self.paths.ticket_path(token)
        if "/" in token or ".." in token or not ticket.exists():
            raise NotFoundError(f"Upload token not found: {token}")
        ticket.unlink()
        return self.put(data, content_type)

    def url_for(self, storage_id: str) -> Optional[str]:
        if not storage_id.isalnum() or not self.paths.blob_path(storage_id).exists():
            return None
        return f"{self.public_base_url}/storage/blobs/{storage_id}"
