# storage.py — Blob store for attachment bytes
# Attachments keep only the locator returned by put(); the bytes live on the
# filesystem under ATTACHMENT_STORAGE_ROOT. Disk I/O runs in a worker thread.

import os
import re
import uuid
import asyncio
import logging
from functools import lru_cache
from pathlib import Path

from config import get_settings
from errors import NotFoundError, InternalError

logger = logging.getLogger("bugboard.storage")

_LOCATOR_RE = re.compile(r"^[0-9a-f]{32}$")


class BlobNotFound(NotFoundError):
    default_detail = "Attachment content not found"


class LocalBlobStore:
    """Filesystem blob store: put(bytes) -> locator, get(locator), delete(locator)"""

    def __init__(self, root: str):
        self.root = Path(root)

    def _path_for(self, locator: str) -> Path:
        if not _LOCATOR_RE.match(locator or ""):
            raise BlobNotFound(f"Invalid storage locator: {locator!r}")
        # Two-level fan-out keeps directories small
        return self.root / locator[:2] / locator

    async def put(self, data: bytes) -> str:
        locator = uuid.uuid4().hex
        path = self._path_for(locator)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".part")
            with open(tmp, "wb") as fh:
                fh.write(data)
            os.replace(tmp, path)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            logger.error(f"Blob write failed for {locator}: {exc}")
            raise InternalError(f"Could not store blob: {exc}")
        return locator

    async def get(self, locator: str) -> bytes:
        path = self._path_for(locator)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise BlobNotFound()
        except OSError as exc:
            logger.error(f"Blob read failed for {locator}: {exc}")
            raise InternalError(f"Could not read blob: {exc}")

    async def delete(self, locator: str) -> None:
        """Remove a blob; a missing blob counts as already deleted."""
        path = self._path_for(locator)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            logger.info(f"Blob {locator} already absent")

    async def exists(self, locator: str) -> bool:
        path = self._path_for(locator)
        return await asyncio.to_thread(path.is_file)


@lru_cache
def get_blob_store() -> LocalBlobStore:
    return LocalBlobStore(get_settings().attachment_storage_root)
