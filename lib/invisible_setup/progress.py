from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Protocol

import tomli_w

from .config_types import (
    CONFIG_CACHE_FILENAME,
    STAGE_FILENAME,
    SetupConfig,
    from_cache,
    state_dir,
    to_cache,
)

logger = logging.getLogger(__name__)


class ProgressStore(Protocol):
    def load(self) -> int: ...

    def save(self, stage: int) -> None: ...

    def clear(self) -> None: ...


class ConfigCache(Protocol):
    def load(self) -> SetupConfig | None: ...

    def save(self, cfg: SetupConfig) -> None: ...

    def clear(self) -> None: ...


def stage_file_path() -> Path:
    return state_dir() / STAGE_FILENAME


def config_cache_path() -> Path:
    return state_dir() / CONFIG_CACHE_FILENAME


class FileProgressStore:
    """Last completed stage ordinal, stored as a bare integer."""

    def __init__(self, path: Path | None = None):
        self.path = path or stage_file_path()

    def load(self) -> int:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return 0
        try:
            value = int(raw)
        except ValueError:
            logger.warning("ignoring unreadable progress file %s: %r", self.path, raw)
            return 0
        return value if value > 0 else 0

    def save(self, stage: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(f"{int(stage)}\n", encoding="utf-8")
        os.replace(tmp, self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class MemoryProgressStore:
    def __init__(self, stage: int = 0):
        self.stage = stage
        self.history: list[int] = []
        self.cleared = False

    def load(self) -> int:
        return self.stage

    def save(self, stage: int) -> None:
        self.stage = stage
        self.history.append(stage)

    def clear(self) -> None:
        self.stage = 0
        self.cleared = True


class FileConfigCache:
    def __init__(self, path: Path | None = None):
        self.path = path or config_cache_path()

    def load(self) -> SetupConfig | None:
        try:
            with self.path.open("rb") as f:
                data = tomllib.load(f)
        except FileNotFoundError:
            return None
        except tomllib.TOMLDecodeError as exc:
            logger.warning("ignoring unreadable config cache %s: %s", self.path, exc)
            return None
        if not isinstance(data, dict):
            return None
        return from_cache(data)

    def save(self, cfg: SetupConfig) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(tomli_w.dumps(to_cache(cfg)).encode("utf-8"))
        os.chmod(self.path, 0o600)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class MemoryConfigCache:
    def __init__(self, cfg: SetupConfig | None = None):
        self.data = to_cache(cfg) if cfg is not None else None

    def load(self) -> SetupConfig | None:
        if self.data is None:
            return None
        return from_cache(self.data)

    def save(self, cfg: SetupConfig) -> None:
        self.data = to_cache(cfg)

    def clear(self) -> None:
        self.data = None
