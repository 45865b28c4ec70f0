from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from .models import new_id

logger = logging.getLogger(__name__)


class BlobStorage(Protocol):
    def put(self, path: str, data: bytes) -> str:
        ...


@dataclass
class StoragePaths:
    root: Path
    public_base_url: str = ""

    def blob_path(self, relative: str) -> Path:
        target = (self.root / "blobs" / relative).resolve()
        base = (self.root / "blobs").resolve()
        if base not in target.parents:
            raise ValueError(f"Blob path escapes storage root: {relative}")
        return target

    def document_key(self, owner_id: str, file_name: str) -> str:
        return f"documents/{owner_id}/{new_id()}-{file_name}"

    def image_key(self, owner_id: str, file_name: str) -> str:
        return f"images/{owner_id}/{new_id()}-{file_name}"


class LocalBlobStorage:
    """
    Filesystem blob store. `put` returns a public URL when a base URL is
    configured, otherwise the absolute file path.
    """

    def __init__(self, storage_paths: StoragePaths):
        self.paths = storage_paths

    def put(self, path: str, data: bytes) -> str:
        target = self.paths.blob_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.debug("Stored %s bytes at %s", len(data), target)
        if self.paths.public_base_url:
            return f"{self.paths.public_base_url.rstrip('/')}/{path}"
        return str(target)

    def resolve(self, location: str) -> Optional[Path]:
        """
        Map a location returned by `put` (or a plain local path) back to a
        file on disk. Returns None for remote locations.
        """
        base_url = self.paths.public_base_url.rstrip("/")
        if base_url and location.startswith(base_url + "/"):
            return self.paths.blob_path(location[len(base_url) + 1 :])
        if location.startswith(("http://", "https://")):
            return None
        candidate = Path(location)
        return candidate if candidate.exists() else None
