"""
Document storage backends.

Only the local filesystem backend ships; keys are relative paths under
`storage_root` and never escape it.
"""

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import get_settings

logger = logging.getLogger(__name__)


def safe_filename(name: str) -> str:
    """Strip directories and characters that are unsafe in a storage key."""
    base = Path(name or "").name
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", base).strip("._")
    return cleaned or "document"


def generate_key(tenant_id: str, client_id: str, category: str, file_name: str,
                 now: Optional[datetime] = None) -> str:
    """{tenant}/{client}/{category}/{timestamp}_{filename}"""
    timestamp = int((now or datetime.utcnow()).timestamp() * 1000)
    return f"{tenant_id}/{client_id}/{category}/{timestamp}_{safe_filename(file_name)}"


def todo_attachment_key(tenant_id: str, todo_id: str, file_name: str, now: Optional[datetime] = None) -> str:
    """{tenant}/todos/{todo}/{timestamp}_{filename}"""
    timestamp = int((now or datetime.utcnow()).timestamp() * 1000)
    return f"{tenant_id}/todos/{todo_id}/{timestamp}_{safe_filename(file_name)}"


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Store bytes under key, return the key."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return stored bytes; FileNotFoundError when absent."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a key, return whether something was removed."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass


class LocalStorage(StorageBackend):
    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Invalid storage key: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug(f"Stored {len(data)} bytes at {key}")
        return key

    def get(self, key: str) -> bytes:
        return self._path(key).read_bytes()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def exists(self, key: str) -> bool:
        return self._path(key).exists()


def get_storage() -> StorageBackend:
    """Storage backend configured for this process."""
    settings = get_settings()
    if settings.storage_backend != "local":
        logger.warning(f"Unsupported storage backend '{settings.storage_backend}', using local")
    return LocalStorage(settings.storage_root)


def remove_stored_files(keys, storage: Optional[StorageBackend] = None) -> int:
    """Delete stored files once their rows are gone. Failures are logged, not raised."""
    storage = storage or get_storage()
    removed = 0
    for key in keys:
        try:
            removed += bool(storage.delete(key))
        except Exception as e:
            logger.warning(f"Failed to delete {key} from storage: {e}")
    return removed

