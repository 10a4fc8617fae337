# logs.py
from __future__ import annotations

import re
from pathlib import Path
from typing import BinaryIO, Optional

from . import settings
from .results import LogRef

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_name(name: str) -> str:
    return _UNSAFE.sub("_", name).strip("_") or "unnamed"


class StepLog:
    """Append-only writer for one step's output; chunks go straight to disk."""

    def __init__(self, path: Path):
        self.path = path
        self._fh: Optional[BinaryIO] = None

    def __enter__(self) -> "StepLog":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open("ab")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def write(self, chunk: bytes) -> None:
        if self._fh is None:
            raise RuntimeError(f"log {self.path} is not open")
        self._fh.write(chunk)
        self._fh.flush()

    @property
    def ref(self) -> LogRef:
        return LogRef(path=str(self.path))


class LogStore:
    """
    Per-run log directory:
      root/<run_id>/<stage>/<step>.log
    """

    def __init__(self, root: str | Path = settings.LOG_DIR, run_id: str = "run"):
        self.root = Path(root).resolve()
        self.run_id = run_id

    @property
    def run_dir(self) -> Path:
        return self.root / _safe_name(self.run_id)

    def for_step(self, stage: str, step: str) -> StepLog:
        return StepLog(self.run_dir / _safe_name(stage) / f"{_safe_name(step)}.log")
