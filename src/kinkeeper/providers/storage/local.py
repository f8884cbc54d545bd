"""Local disk storage adapter."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path, PurePosixPath

from kinkeeper.core.fileutil import atomic_write_bytes, ensure_dir, safe_filename

log = logging.getLogger(__name__)


class LocalStorageAdapter:
    """Store files under a root directory, served below a URL prefix.

    Every upload gets a unique prefix so names never collide.
    """

    def __init__(self, config: dict | None = None) -> None:
        config = config or {}
        self._root = Path(config.get("path", "uploads")).expanduser()
        self._url_prefix = config.get("url_prefix", "/api/uploads/")

    @property
    def name(self) -> str:
        return "LOCAL"

    @property
    def root(self) -> Path:
        return self._root

    def upload(self, data: bytes, filename: str, mime_type: str, folder: str = "") -> str:
        stored_name = f"{uuid.uuid4().hex[:12]}-{safe_filename(filename)}"
        path = f"{folder.strip('/')}/{stored_name}" if folder.strip("/") else stored_name
        target = self._resolve(path)
        atomic_write_bytes(target, data)
        log.debug("Stored %s (%s, %d bytes)", path, mime_type, len(data))
        return path

    def get_url(self, path: str) -> str:
        return f"{self._url_prefix}{path}"

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        if target.exists():
            target.unlink()
            log.debug("Deleted %s", path)

    def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def path_from_url(self, url: str) -> str | None:
        if not url or not url.startswith(self._url_prefix):
            return None
        path = url[len(self._url_prefix):]
        return path or None

    def _resolve(self, path: str) -> Path:
        """Absolute location of ``path``; refuses anything escaping the root."""
        parts = PurePosixPath(path).parts
        if not parts or path.startswith("/") or ".." in parts:
            raise ValueError(f"Invalid storage path: {path!r}")
        ensure_dir(self._root)
        return self._root.joinpath(*parts)
