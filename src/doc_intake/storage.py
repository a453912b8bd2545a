"""File storage for uploaded documents."""

import logging
import re
import secrets
import time
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol, runtime_checkable

import aiofiles
import aiofiles.os

logger = logging.getLogger("doc_intake.storage")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@runtime_checkable
class Storage(Protocol):
    """Where uploaded files live.

    Paths returned by :meth:`put` are opaque, storage-relative strings; they
    are what documents and job payloads record.
    """

    async def put(self, filename: str, content: bytes, owner_id: str) -> str:
        """Store ``content`` and return its path."""
        ...

    def get_url(self, path: str) -> str:
        """URL a client can fetch the file from."""
        ...

    async def read(self, path: str) -> bytes:
        """Read a stored file."""
        ...

    async def delete(self, path: str) -> None:
        """Remove a stored file. Missing files are ignored."""
        ...


def _safe_segment(value: str) -> str:
    segment = _UNSAFE_CHARS.sub("_", value).strip(".")
    return segment or "_"


def build_object_name(filename: str, owner_id: str, now_ms: Optional[int] = None) -> str:
    """Name for a new upload: ``<owner_id>/<timestamp>-<random>.<ext>``."""
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = PurePosixPath(filename).suffix.lower()
    ext = _safe_segment(suffix.lstrip(".")) if suffix else ""
    name = f"{now_ms}-{secrets.token_hex(6)}"
    if ext:
        name = f"{name}.{ext}"
    return f"{_safe_segment(owner_id)}/{name}"


class LocalStorage:
    """Stores files under a local root directory."""

    def __init__(self, root: Path | str, base_url: Optional[str] = None):
        """Initialize local storage.

        Args:
            root: Directory files are written under (created on first put).
            base_url: Public URL prefix; ``file://`` URIs are used without one.
        """
        self._root = Path(root).expanduser().resolve()
        self._base_url = base_url.rstrip("/") if base_url else None

    @property
    def root(self) -> Path:
        """Root directory of the store."""
        return self._root

    def resolve(self, path: str) -> Path:
        """Absolute location of a stored path.

        Raises:
            ValueError: If ``path`` points outside the storage root.
        """
        full = (self._root / path).resolve()
        if full != self._root and self._root not in full.parents:
            raise ValueError(f"Path escapes storage root: {path}")
        return full

    async def put(self, filename: str, content: bytes, owner_id: str) -> str:
        path = build_object_name(filename, owner_id)
        full = self.resolve(path)
        full.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(full, "wb") as f:
            await f.write(content)

        logger.debug(f"Stored {filename} ({len(content)} bytes) at {path}")
        return path

    def get_url(self, path: str) -> str:
        if self._base_url:
            return f"{self._base_url}/{path}"
        return self.resolve(path).as_uri()

    async def read(self, path: str) -> bytes:
        """Read a stored file.

        Raises:
            FileNotFoundError: If nothing is stored at ``path``.
        """
        async with aiofiles.open(self.resolve(path), "rb") as f:
            return await f.read()

    async def delete(self, path: str) -> None:
        try:
            await aiofiles.os.remove(self.resolve(path))
        except FileNotFoundError:
            logger.debug(f"Nothing to delete at {path}")
