# storage.py — Blob store for uploaded files
# Objects live under FILE_STORAGE_ROOT at <uploader_id>/<generated name>.
# Disk I/O runs in a worker thread so request handlers stay non-blocking.

import os
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from errors import ConstraintViolation, NotFound, TooLarge, UpstreamFailure
from models import MAX_UPLOAD_BYTES

logger = logging.getLogger("interntrack.storage")

STORAGE_ROOT = os.getenv("FILE_STORAGE_ROOT", "/data/uploads")


@dataclass
class StoredBlob:
    path: str
    size: int
    modified_at: datetime


class LocalBlobStore:
    """Path-addressed blob store on the local filesystem"""

    def __init__(self, root: str, max_bytes: int = MAX_UPLOAD_BYTES):
        self.root = Path(root)
        self.max_bytes = max_bytes

    def _resolve(self, path: str) -> Path:
        parts = Path(path).parts
        if not parts or Path(path).is_absolute() or ".." in parts:
            raise ConstraintViolation("Invalid storage path")
        return self.root.joinpath(*parts)

    async def put(self, path: str, data: bytes) -> None:
        if len(data) > self.max_bytes:
            raise TooLarge()
        target = self._resolve(path)

        def _write():
            target.parent.mkdir(parents=True, exist_ok=True)
            # Exclusive create: a generated name must never overwrite an existing blob
            with open(target, "xb") as fh:
                fh.write(data)

        try:
            await asyncio.to_thread(_write)
        except FileExistsError:
            raise ConstraintViolation("A file already exists at this path")
        except OSError as e:
            logger.error(f"Blob write failed for {path}: {e}")
            raise UpstreamFailure("File storage is unavailable")

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError:
            raise NotFound("File content not found")
        except OSError as e:
            logger.error(f"Blob read failed for {path}: {e}")
            raise UpstreamFailure("File storage is unavailable")

    async def delete(self, path: str) -> bool:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(target.unlink)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Blob delete failed for {path}: {e}")
            raise UpstreamFailure("File storage is unavailable")

    async def list_blobs(self) -> List[StoredBlob]:
        def _scan():
            if not self.root.exists():
                return []
            blobs = []
            for p in self.root.rglob("*"):
                if p.is_file():
                    stat = p.stat()
                    blobs.append(StoredBlob(
                        path=p.relative_to(self.root).as_posix(),
                        size=stat.st_size,
                        modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    ))
            return blobs

        try:
            return await asyncio.to_thread(_scan)
        except OSError as e:
            logger.error(f"Blob listing failed: {e}")
            raise UpstreamFailure("File storage is unavailable")


_blob_store = LocalBlobStore(STORAGE_ROOT)


def get_blob_store() -> LocalBlobStore:
    """Dependency for the blob store (FastAPI Depends)"""
    return _blob_store
