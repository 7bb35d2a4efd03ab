# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_CACHE_DIR = ".matrixci/cache"
DEFAULT_WORK_DIR = ".matrixci/work"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def default_workers() -> int:
    value = os.environ.get("MATRIXCI_WORKERS")
    if value:
        return max(1, int(value))
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class Settings:
    cache_dir: str = DEFAULT_CACHE_DIR
    work_dir: str = DEFAULT_WORK_DIR
    workers: int = 1
    log_level: str = "WARNING"
    isolate: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            cache_dir=os.environ.get("MATRIXCI_CACHE_DIR", DEFAULT_CACHE_DIR),
            work_dir=os.environ.get("MATRIXCI_WORK_DIR", DEFAULT_WORK_DIR),
            workers=default_workers(),
            log_level=os.environ.get("MATRIXCI_LOG_LEVEL", "WARNING").upper(),
            isolate=_env_bool("MATRIXCI_ISOLATE", True),
        )
