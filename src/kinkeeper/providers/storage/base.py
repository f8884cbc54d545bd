"""StorageAdapter Protocol."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class StorageAdapter(Protocol):
    """Contract for file storage backends (local disk, object storage).

    Paths are adapter-relative strings; the engine never inspects them.
    """

    @property
    def name(self) -> str:
        """Provider ID, matching a ``StorageProvider`` value."""
        ...

    def upload(self, data: bytes, filename: str, mime_type: str, folder: str = "") -> str:
        """Store ``data`` and return its path."""
        ...

    def get_url(self, path: str) -> str:
        """Public URL of a stored path."""
        ...

    def delete(self, path: str) -> None:
        """Remove a stored path. Missing paths are not an error."""
        ...

    def read(self, path: str) -> bytes:
        """Content of a stored path. Raises OSError when unavailable."""
        ...

    def path_from_url(self, url: str) -> str | None:
        """Inverse of ``get_url``; None for URLs this adapter does not own."""
        ...
