"""File system utilities: atomic writes, safe names, permissions, locking."""

from __future__ import annotations

import contextlib
import logging
import os
import platform
import re
import tempfile
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

log = logging.getLogger(__name__)

FILE_MODE = 0o600
DIR_MODE = 0o700

_IS_WINDOWS = platform.system() == "Windows"

_LOCK_POLL_SECONDS = 0.05


class LockTimeout(TimeoutError):
    """The advisory lock could not be acquired within the timeout."""


def safe_filename(name: str, max_length: int = 200) -> str:
    """Convert an uploaded file name to a safe storage name.

    Strips path traversal and special characters, keeps the extension,
    limits length.
    """
    name = name.strip()
    name = name.replace("..", "").replace("/", "-").replace("\\", "-")
    name = re.sub(r"[^\w\s\-.]", "", name)
    name = re.sub(r"[\s]+", "-", name)
    name = re.sub(r"-+", "-", name)
    name = name.strip("-.")
    name = name.lower()
    if len(name) > max_length:
        name = name[-max_length:].lstrip("-.")
    if not name:
        name = "file"
    return name


def ensure_dir(path: Path) -> Path:
    """Create directory with secure permissions if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)
    if not _IS_WINDOWS:
        path.chmod(DIR_MODE)
    return path


def ensure_file_permissions(path: Path) -> None:
    """Set file permissions to owner-only read/write."""
    if not _IS_WINDOWS and path.exists():
        path.chmod(FILE_MODE)


def atomic_write_bytes(path: Path, content: bytes) -> None:
    """Write bytes to file atomically via temp file + rename.

    The file is never observed partially written.
    """
    ensure_dir(path.parent)

    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=".tmp_",
        suffix=path.suffix,
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise

    ensure_file_permissions(path)


@contextmanager
def file_lock(path: Path, timeout: float | None = None) -> Generator[None, None, None]:
    """Cross-platform advisory file lock guarding ``path``.

    Uses fcntl.flock on Unix, msvcrt.locking on Windows. With a timeout the
    lock is polled and LockTimeout is raised once it expires.
    """
    lock_path = path.parent / f".{path.name}.lock"
    ensure_dir(lock_path.parent)

    if _IS_WINDOWS:
        yield from _windows_lock(lock_path, timeout)
    else:
        yield from _unix_lock(lock_path, timeout)


def _deadline(timeout: float | None) -> float | None:
    return None if timeout is None else time.monotonic() + timeout


def _unix_lock(lock_path: Path, timeout: float | None) -> Generator[None, None, None]:
    import fcntl

    deadline = _deadline(timeout)
    with open(lock_path, "w") as fd:
        if deadline is None:
            fcntl.flock(fd, fcntl.LOCK_EX)
        else:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeout(f"Lock busy: {lock_path}") from None
                    time.sleep(_LOCK_POLL_SECONDS)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)


def _windows_lock(lock_path: Path, timeout: float | None) -> Generator[None, None, None]:
    import msvcrt

    deadline = _deadline(timeout)
    with open(lock_path, "w") as fd:
        while True:
            try:
                msvcrt.locking(fd.fileno(), msvcrt.LK_NBLCK, 1)
                break
            except OSError:
                if deadline is not None and time.monotonic() >= deadline:
                    raise LockTimeout(f"Lock busy: {lock_path}") from None
                time.sleep(_LOCK_POLL_SECONDS)
        try:
            yield
        finally:
            with contextlib.suppress(OSError):
                msvcrt.locking(fd.fileno(), msvcrt.LK_UNLCK, 1)
