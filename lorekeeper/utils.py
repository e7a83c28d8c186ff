from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

logger = logging.getLogger(__name__)

_HASH_CHUNK_BYTES = 64 * 1024
_BINARY_SNIFF_BYTES = 512


class FileLockTimeout(Exception):
    """Raised when a file lock cannot be acquired within the timeout."""

    def __init__(self, target: Path, timeout_seconds: float, holder: dict | None = None) -> None:
        self.target = target
        self.holder = holder or {}
        message = f"Could not lock {target} within {timeout_seconds}s"
        if self.holder.get("pid"):
            message += (
                f"; held by {self.holder.get('owner', 'another process')} "
                f"(pid {self.holder['pid']} on {self.holder.get('host', '?')})"
            )
        super().__init__(message)


def _read_lock_owner(lock_path: Path) -> dict | None:
    try:
        meta = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return meta if isinstance(meta, dict) else None


def _try_create_lock(lock_path: Path, owner: str) -> bool:
    try:
        fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(
            {
                "pid": os.getpid(),
                "host": socket.gethostname(),
                "started_at": time.time(),
                "owner": owner,
            },
            handle,
        )
    return True


@contextmanager
def with_file_lock(
    target_path: str | Path,
    timeout_seconds: float = 5.0,
    poll_interval: float = 0.1,
    stale_timeout: float = 30.0,
    owner: str = "lorekeeper",
) -> Generator[None, None, None]:
    """Hold ``<target>.lock`` while the block runs.

    The lock file records pid, host and start time. A lock older than
    ``stale_timeout`` whose process is gone is removed and retried.
    """
    target_path = Path(target_path)
    lock_path = target_path.with_name(target_path.name + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout_seconds

    while not _try_create_lock(lock_path, owner):
        holder = _read_lock_owner(lock_path)
        if _is_stale_lock(lock_path, holder, stale_timeout):
            logger.warning("Removing stale lock %s left by %s", lock_path, holder)
            try:
                os.unlink(str(lock_path))
            except FileNotFoundError:
                pass  # another process reclaimed it first
            continue
        if time.monotonic() >= deadline:
            raise FileLockTimeout(target_path, timeout_seconds, holder)
        time.sleep(poll_interval)

    try:
        yield
    finally:
        try:
            os.unlink(str(lock_path))
        except FileNotFoundError:
            logger.warning("Lock %s vanished before release", lock_path)


def _is_stale_lock(lock_path: Path, holder: dict | None, stale_timeout: float) -> bool:
    """Old enough and, when the holder ran on this host, no longer alive."""
    if holder is None:
        try:
            return (time.time() - lock_path.stat().st_mtime) > stale_timeout
        except OSError:
            return False
    if time.time() - holder.get("started_at", 0) < stale_timeout:
        return False
    pid = holder.get("pid")
    if holder.get("host") != socket.gethostname() or not pid:
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    except PermissionError:
        return False
    return False


def atomic_write_text(path: str | Path, text: str) -> None:
    """Write text via a sibling temp file and an atomic replace.

    A crash mid-write leaves the previous file intact.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def sha256_file(path: str | Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


def is_binary_file(path: str | Path) -> bool:
    """Treat a file as binary if its first 512 bytes contain a NUL."""
    try:
        with open(path, "rb") as handle:
            return b"\x00" in handle.read(_BINARY_SNIFF_BYTES)
    except OSError:
        return False


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
