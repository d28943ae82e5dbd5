from __future__ import annotations

import fcntl
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "lot_ledger.lock"


class StoreLockedError(RuntimeError):
    def __init__(self, lock_path: Path, owner_pid: int | None) -> None:
        self.lock_path = lock_path
        self.owner_pid = owner_pid
        owner_text = f" (held by pid {owner_pid})" if owner_pid is not None else ""
        super().__init__(f"LOCKED: another instance is already using the store lock {lock_path}{owner_text}")


@dataclass(frozen=True)
class StoreLock:
    path: Path
    handle: BinaryIO
    pid: int


def _read_owner_pid(handle: BinaryIO) -> int | None:
    try:
        handle.seek(0)
        raw = handle.read().decode("utf-8").strip()
    except OSError:
        return None
    return int(raw) if raw.isdigit() else None


@contextmanager
def store_lock(lock_dir: Path) -> Iterator[StoreLock]:
    """Hold an exclusive, non-blocking lock on ``lock_dir`` for the duration of the block.

    Uses ``flock`` on a lock file inside the directory, so it is meant for
    local filesystems. Raises :class:`StoreLockedError` if another process
    holds it.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    path = lock_dir / LOCK_FILE_NAME
    fd = os.open(path, os.O_CREAT | os.O_RDWR)
    handle: BinaryIO = os.fdopen(fd, "r+b")
    pid = os.getpid()
    locked = False
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            raise StoreLockedError(path, _read_owner_pid(handle)) from exc
        locked = True

        handle.seek(0)
        handle.truncate(0)
        handle.write(f"{pid}\n".encode())
        handle.flush()
        logger.debug("Acquired store lock %s", path)
        yield StoreLock(path=path, handle=handle, pid=pid)
    finally:
        if locked:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        handle.close()


__all__ = ["LOCK_FILE_NAME", "StoreLock", "StoreLockedError", "store_lock"]
