from __future__ import annotations

import errno
import os
from pathlib import Path
from typing import Protocol

from .config_types import LOCK_FILENAME, state_dir
from .errors import LockHeldError


class RunLock(Protocol):
    def try_acquire(self) -> None: ...

    def release(self) -> None: ...


def lock_file_path() -> Path:
    return state_dir() / LOCK_FILENAME


class FileRunLock:
    """Exclusive-create lock file. Acquisition never waits."""

    def __init__(self, path: Path | None = None):
        self.path = path or lock_file_path()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except OSError as exc:
            if exc.errno != errno.EEXIST:
                raise
            raise LockHeldError(str(self.path), self._read_holder()) from exc
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{os.getpid()}\n")
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        self._held = False

    def _read_holder(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8").strip() or None
        except OSError:
            return None


class MemoryRunLock:
    def __init__(self, held_by_other: bool = False):
        self.held_by_other = held_by_other
        self.held = False
        self.acquired = 0
        self.released = 0

    def try_acquire(self) -> None:
        if self.held_by_other or self.held:
            raise LockHeldError("<memory>")
        self.held = True
        self.acquired += 1

    def release(self) -> None:
        if self.held:
            self.released += 1
        self.held = False
