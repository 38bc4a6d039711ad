"""Atomic file writes used by the cache, credential file and renderer."""

import contextlib
import os
import tempfile
from pathlib import Path


def ensure_dir(path: Path, mode: int = 0o755) -> Path:
    """Create ``path`` (and parents) and apply ``mode`` to any directory created here."""
    missing: list[Path] = []
    current = path
    while not current.exists():
        missing.append(current)
        if current.parent == current:
            break
        current = current.parent
    path.mkdir(parents=True, exist_ok=True)
    # mkdir honours the umask, so set the requested bits explicitly
    for created in missing:
        with contextlib.suppress(OSError):
            os.chmod(created, mode)
    return path


def stage_write(path: Path, data: bytes | str, *, mode: int = 0o644, encoding: str = "utf-8") -> Path:
    """Write ``data`` to a synced temp file beside ``path`` and return it; the caller renames it into place."""
    target = Path(path)
    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    temp_path = Path(temp_name)

    try:
        payload = data.encode(encoding) if isinstance(data, str) else data
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp_path, mode)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise
    return temp_path


def atomic_write(path: Path, data: bytes | str, *, mode: int = 0o644, encoding: str = "utf-8") -> None:
    """Write ``data`` to ``path`` via a temp file in the same directory and ``os.replace``.

    A failed or interrupted write leaves the previous file (or no file) in place.
    """
    temp_path = stage_write(path, data, mode=mode, encoding=encoding)
    try:
        os.replace(temp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise
