# cache.py
from __future__ import annotations

import hashlib
import json
import shutil
import tarfile
import tempfile
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import settings
from .errors import PERSIST_FAILED, RESTORE_FAILED, CacheError
from .model import CachePolicy
from .sandbox.base import Mount

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Path-level caching:
#   one entry per cache directory path (e.g. /app/node_modules),
#   key = sha256(path), newest snapshot wins.
#
# Store layout:
#   root/
#     <key>.tar.gz          snapshot of the directory contents
#     <key>.manifest.json   CacheEntry (path, updated_at, files, size)
#
# Around each step:
#   restore -> every declared path gets a private scratch copy, bind-mounted
#              at the same path inside the sandbox
#   persist -> after success only, each scratch copy is snapshotted back;
#              writes for the same key are serialized
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class CacheEntry:
    path: str
    key: str
    snapshot: str
    updated_at: str  # ISO-8601, UTC
    files: int = 0
    size_bytes: int = 0


def cache_key(path: str) -> str:
    return hashlib.sha256(path.encode("utf-8")).hexdigest()[:24]


def _iter_tree(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        yield p


def _safe_extract(tar: tarfile.TarFile, dest: Path) -> None:
    if hasattr(tarfile, "data_filter"):
        tar.extractall(path=str(dest), filter="data")
        return
    root = dest.resolve()
    for member in tar.getmembers():
        target = (root / member.name).resolve()
        if root != target and root not in target.parents:
            raise tarfile.TarError(f"refusing to extract outside cache dir: {member.name}")
    tar.extractall(path=str(dest))


class CacheStore:
    """
    Durable file-based cache store, shared by every run using the same root.

    Writes are serialized per key with an in-process lock; snapshots are
    built in a temp file and renamed into place, so readers only ever see
    a complete archive.
    """

    def __init__(self, root: str | Path = settings.CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{key}.manifest.json"

    def lock_for(self, path: str) -> threading.Lock:
        key = cache_key(path)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def get(self, path: str) -> Optional[CacheEntry]:
        key = cache_key(path)
        man = self.manifest_path(key)
        if not man.exists() or not self.artifact_path(key).exists():
            return None
        return CacheEntry(**json.loads(man.read_text(encoding="utf-8")))

    def entries(self) -> List[CacheEntry]:
        out: List[CacheEntry] = []
        for man in sorted(self.root.glob("*.manifest.json")):
            try:
                out.append(CacheEntry(**json.loads(man.read_text(encoding="utf-8"))))
            except (OSError, ValueError, TypeError):
                # half-written or foreign file, not an entry
                continue
        return sorted(out, key=lambda e: e.path)

    def load(self, path: str, dest: str | Path) -> Optional[CacheEntry]:
        """
        Extract the newest snapshot of `path` into `dest`.
        Returns None on a miss (first run starts cold).
        """
        entry = self.get(path)
        if entry is None:
            return None
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        with tarfile.open(entry.snapshot, mode="r:gz") as tar:
            _safe_extract(tar, dest)
        return entry

    def save(self, path: str, src: str | Path) -> CacheEntry:
        """Snapshot the contents of `src` as the new entry for `path`."""
        src = Path(src)
        key = cache_key(path)
        art = self.artifact_path(key)
        man = self.manifest_path(key)

        with self.lock_for(path):
            tmp = self.root / f".{key}.{uuid.uuid4().hex}.tmp"
            files = 0
            size = 0
            try:
                # Build tar.gz in tmp, then atomic rename
                with tarfile.open(str(tmp), mode="w:gz") as tar:
                    for p in _iter_tree(src):
                        arcname = p.relative_to(src).as_posix()
                        tar.add(str(p), arcname=arcname, recursive=False)
                        if p.is_file() and not p.is_symlink():
                            files += 1
                            size += p.stat().st_size
                tmp.replace(art)
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)

            entry = CacheEntry(
                path=path,
                key=key,
                snapshot=str(art),
                updated_at=datetime.now(timezone.utc).isoformat(),
                files=files,
                size_bytes=size,
            )
            tmp_man = man.with_suffix(f".{uuid.uuid4().hex}.tmp")
            tmp_man.write_text(json.dumps(asdict(entry), sort_keys=True, indent=2), encoding="utf-8")
            tmp_man.replace(man)
            return entry

    def clear(self) -> int:
        """Drop every entry. Returns how many were removed."""
        removed = 0
        for man in self.root.glob("*.manifest.json"):
            key = man.name[: -len(".manifest.json")]
            self.artifact_path(key).unlink(missing_ok=True)
            man.unlink(missing_ok=True)
            removed += 1
        return removed


# ---------------------------------------------------------------------
# Manager: restore / persist around one step
# ---------------------------------------------------------------------

@dataclass
class CacheSession:
    node: str
    scratch_root: Optional[Path] = None
    dirs: Dict[str, Path] = field(default_factory=dict)  # cache path -> scratch copy
    hits: Dict[str, bool] = field(default_factory=dict)
    warnings: List[CacheError] = field(default_factory=list)

    @property
    def mounts(self) -> List[Mount]:
        return [Mount(source=str(src), target=path) for path, src in self.dirs.items()]


class CacheManager:
    """Restores declared directories before a step and persists them after it succeeds."""

    def __init__(self, store: CacheStore, work_root: str | Path | None = None):
        self.store = store
        self.work_root = Path(work_root) if work_root is not None else None
        if self.work_root is not None:
            self.work_root.mkdir(parents=True, exist_ok=True)

    def restore(self, node: str, policy: CachePolicy) -> CacheSession:
        """
        Give `node` its own copy of every cached directory.

        A miss starts cold; a broken snapshot also starts cold and is
        reported as a warning on the session.
        """
        session = CacheSession(node=node)
        if not policy.active:
            return session

        session.scratch_root = Path(
            tempfile.mkdtemp(prefix="forge-cache-", dir=str(self.work_root) if self.work_root else None)
        )
        for path in policy.directories:
            scratch = session.scratch_root / cache_key(path)
            scratch.mkdir(parents=True, exist_ok=True)
            try:
                session.hits[path] = self.store.load(path, scratch) is not None
            except (OSError, tarfile.TarError, ValueError) as e:
                shutil.rmtree(scratch, ignore_errors=True)
                scratch.mkdir(parents=True, exist_ok=True)
                session.hits[path] = False
                session.warnings.append(
                    CacheError(
                        kind=RESTORE_FAILED,
                        message=f"[{node}] cache restore failed for {path}, starting cold: {e}",
                        path=path,
                    )
                )
            session.dirs[path] = scratch
        return session

    def persist(self, session: CacheSession, policy: CachePolicy) -> List[CacheError]:
        """Snapshot every scratch copy back into the store. Returns new warnings."""
        if not policy.active or not session.dirs:
            return []

        warnings: List[CacheError] = []
        for path, scratch in session.dirs.items():
            try:
                self.store.save(path, scratch)
            except (OSError, tarfile.TarError) as e:
                warnings.append(
                    CacheError(
                        kind=PERSIST_FAILED,
                        message=f"[{session.node}] cache persist failed for {path}: {e}",
                        path=path,
                    )
                )
        session.warnings.extend(warnings)
        return warnings

    def release(self, session: CacheSession) -> None:
        if session.scratch_root is not None:
            # sandbox may leave files we cannot delete (e.g. root-owned)
            shutil.rmtree(session.scratch_root, ignore_errors=True)
            session.scratch_root = None
