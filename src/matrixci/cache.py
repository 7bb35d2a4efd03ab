# cache.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import re
import tarfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import CacheWriteFailure
from .model import CacheSpec
from .settings import DEFAULT_CACHE_DIR

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# cache_key = namespace + sha256(namespace, fingerprint(lock files))
#
# The namespace stays readable at the front of the key so a miss can fall
# back to the newest entry sharing a prefix (restore prefixes), e.g.
#
#   linux-cargo-3f2a...   exact
#   linux-cargo-          prefix fallback
#
# Entries are tar.gz blobs of the job's cache paths. Stores publish a blob
# all-or-nothing: FileCacheStore writes a temp file then os.replace()s it.
# ---------------------------------------------------------------------

DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".matrixci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand lock-file patterns into concrete files.
    Supports:
      - file path: "Cargo.lock"
      - glob:      "**/Cargo.lock"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.is_file():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.is_file())

    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def lock_fingerprint(root: str | Path, lock_files: Iterable[str]) -> str:
    """
    Fingerprint the dependency lock state: relative path + content digest of
    every matching file, in path order.
    """
    root_p = Path(root).resolve()
    fps: List[Tuple[str, str]] = []
    for p in _resolve_globs(root_p, lock_files):
        rel = _relpath(p, root_p)
        if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
            continue
        fps.append((rel, _hash_file_contents(p)))
    fps.sort(key=lambda t: t[0])
    return _sha256_str(_json_dumps_stable({"files": fps}))


def compute_cache_key(spec: CacheSpec, fingerprint: str) -> str:
    digest = _sha256_str(_json_dumps_stable({"v": 1, "namespace": spec.namespace, "lock": fingerprint}))
    return f"{spec.namespace}{digest}"


# ---------------------------------------------------------------------
# Store boundary
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheEntry:
    key: str
    location: str
    last_write: float


class CacheStore:
    """Key/blob store. Blobs are published atomically by `put`."""

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def get_prefix(self, prefix: str) -> Optional[Tuple[str, bytes]]:
        """Newest entry whose key starts with `prefix`, or None."""
        raise NotImplementedError

    def put(self, key: str, blob: bytes) -> CacheEntry:
        raise NotImplementedError

    def entries(self) -> List[CacheEntry]:
        raise NotImplementedError


class MemoryCacheStore(CacheStore):
    """In-process store. Blobs are immutable bytes, so swaps are atomic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[bytes, float]] = {}
        self.puts = 0

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            item = self._data.get(key)
        return item[0] if item else None

    def get_prefix(self, prefix: str) -> Optional[Tuple[str, bytes]]:
        with self._lock:
            matches = [(k, v) for k, v in self._data.items() if k.startswith(prefix)]
        if not matches:
            return None
        key, (blob, _ts) = max(matches, key=lambda kv: (kv[1][1], kv[0]))
        return key, blob

    def put(self, key: str, blob: bytes) -> CacheEntry:
        now = time.time()
        with self._lock:
            self._data[key] = (bytes(blob), now)
            self.puts += 1
        return CacheEntry(key=key, location=f"memory://{key}", last_write=now)

    def entries(self) -> List[CacheEntry]:
        with self._lock:
            items = list(self._data.items())
        return [CacheEntry(key=k, location=f"memory://{k}", last_write=ts) for k, (_b, ts) in items]


class FileCacheStore(CacheStore):
    """
    File-based cache store:
      root/
        <key>.tar.gz
    """

    SUFFIX = ".tar.gz"

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{_UNSAFE_KEY_CHARS.sub('_', key)}{self.SUFFIX}"

    def _key_of(self, path: Path) -> str:
        return path.name[: -len(self.SUFFIX)]

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self.artifact_path(key).read_bytes()
        except FileNotFoundError:
            return None

    def get_prefix(self, prefix: str) -> Optional[Tuple[str, bytes]]:
        safe = _UNSAFE_KEY_CHARS.sub("_", prefix)
        candidates = []
        for p in self.root.glob(f"*{self.SUFFIX}"):
            if not p.name.startswith(safe):
                continue
            try:
                candidates.append((p.stat().st_mtime, p.name, p))
            except FileNotFoundError:
                continue
        for _mtime, _name, p in sorted(candidates, reverse=True):
            try:
                return self._key_of(p), p.read_bytes()
            except FileNotFoundError:
                # pruned between listing and reading
                continue
        return None

    def put(self, key: str, blob: bytes) -> CacheEntry:
        art = self.artifact_path(key)
        # Unique temp name per writer so concurrent writers never share a file.
        tmp = art.with_name(f".{art.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_bytes(blob)
            tmp.replace(art)
        except OSError as e:
            raise CacheWriteFailure(key=key, message=str(e), details={"path": str(art)}) from e
        finally:
            tmp.unlink(missing_ok=True)
        return CacheEntry(key=key, location=str(art), last_write=art.stat().st_mtime)

    def entries(self) -> List[CacheEntry]:
        out = []
        for p in sorted(self.root.glob(f"*{self.SUFFIX}")):
            out.append(CacheEntry(key=self._key_of(p), location=str(p), last_write=p.stat().st_mtime))
        return out

    def prune(self, keep: int = 3) -> List[CacheEntry]:
        """
        Keep only the newest N entries per namespace (key minus its digest).
        Returns the removed entries.
        """
        by_ns: Dict[str, List[CacheEntry]] = {}
        for e in self.entries():
            ns = e.key[:-64] if len(e.key) > 64 else e.key
            by_ns.setdefault(ns, []).append(e)

        removed = []
        for entries in by_ns.values():
            entries.sort(key=lambda e: e.last_write, reverse=True)
            for e in entries[keep:]:
                Path(e.location).unlink(missing_ok=True)
                removed.append(e)
        return removed


# ---------------------------------------------------------------------
# Packing cache paths
# ---------------------------------------------------------------------

def _resolve_cache_path(workdir: Path, entry: str) -> Path:
    p = Path(entry).expanduser()
    return p if p.is_absolute() else (workdir / p)


def pack_paths(workdir: str | Path, paths: Iterable[str]) -> bytes:
    """
    tar.gz the given paths. Entry i is stored under "f<i>/<name>" (file) or
    "d<i>/<relpath>" (directory) so it restores to the same place.
    """
    root = Path(workdir).resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for i, entry in enumerate(paths):
            src = _resolve_cache_path(root, entry)
            if not src.exists():
                continue
            if src.is_file():
                tar.add(str(src), arcname=f"f{i}/{src.name}", recursive=False)
                continue
            for f in _iter_files_under(src):
                rel = _relpath(f, src)
                if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
                    continue
                tar.add(str(f), arcname=f"d{i}/{rel}", recursive=False)
    return buf.getvalue()


def unpack_paths(blob: bytes, workdir: str | Path, paths: List[str]) -> None:
    root = Path(workdir).resolve()
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        for m in tar.getmembers():
            head, _, rest = m.name.partition("/")
            if len(head) < 2 or head[0] not in "fd" or not head[1:].isdigit() or not rest:
                continue
            i = int(head[1:])
            if i >= len(paths):
                continue
            dest = _resolve_cache_path(root, paths[i])
            base = dest.parent if head[0] == "f" else dest
            base.mkdir(parents=True, exist_ok=True)
            tar.extract(m.replace(name=rest), path=str(base), filter="data")


# ---------------------------------------------------------------------
# Cache manager
# ---------------------------------------------------------------------

class HitKind(str, Enum):
    EXACT = "exact"
    PREFIX = "prefix"
    MISS = "miss"


class Unchanged(Enum):
    UNCHANGED = "unchanged"


UNCHANGED = Unchanged.UNCHANGED


@dataclass
class CacheHandle:
    spec: CacheSpec
    key: str
    workdir: Path
    hit: HitKind
    restored_from: Optional[str] = None
    manifest: Dict = field(default_factory=dict)

    @property
    def reason(self) -> str:
        if self.hit == HitKind.EXACT:
            return f"hit ({self.key[:24]}...)"
        if self.hit == HitKind.PREFIX:
            return f"restored from prefix match {self.restored_from}"
        return "miss"


@dataclass
class CacheStats:
    hits: int = 0
    prefix_hits: int = 0
    misses: int = 0
    commits: int = 0
    skipped_writes: int = 0
    write_failures: int = 0


class CacheManager:
    """
    Governs concurrent access to a shared CacheStore.

    - any number of jobs may restore the same entry concurrently
    - per key, at most one writer commits; others skip
    - write failures degrade to a warning
    """

    def __init__(self, store: CacheStore):
        self.store = store
        self.stats = CacheStats()
        self._lock = threading.Lock()
        self._writers: Dict[str, threading.Lock] = {}
        self._committed: set[str] = set()

    def _count(self, attr: str) -> None:
        with self._lock:
            setattr(self.stats, attr, getattr(self.stats, attr) + 1)

    def _restore(self, blob: bytes, spec: CacheSpec, root: Path, key: str) -> bool:
        try:
            unpack_paths(blob, root, list(spec.paths))
        except (tarfile.TarError, OSError) as e:
            logger.warning("cache entry %s exists but restore failed: %s", key, e)
            return False
        return True

    def acquire(self, spec: CacheSpec, workdir: str | Path) -> CacheHandle:
        """
        Restore the best available entry for `spec` into `workdir`.

        exact key -> full restore; else the newest entry of the longest
        matching restore prefix; else start empty.
        """
        root = Path(workdir).resolve()
        fingerprint = lock_fingerprint(root, spec.lock_files)
        key = compute_cache_key(spec, fingerprint)
        manifest = {"key": key, "namespace": spec.namespace, "lock": fingerprint}

        blob = self.store.get(key)
        if blob is not None and self._restore(blob, spec, root, key):
            self._count("hits")
            return CacheHandle(spec=spec, key=key, workdir=root, hit=HitKind.EXACT, restored_from=key, manifest=manifest)

        for prefix in spec.prefixes():
            found = self.store.get_prefix(prefix)
            if found is None:
                continue
            matched_key, blob = found
            if matched_key == key or not self._restore(blob, spec, root, matched_key):
                continue
            self._count("prefix_hits")
            return CacheHandle(spec=spec, key=key, workdir=root, hit=HitKind.PREFIX, restored_from=matched_key, manifest=manifest)

        self._count("misses")
        return CacheHandle(spec=spec, key=key, workdir=root, hit=HitKind.MISS, manifest=manifest)

    def release(self, handle: CacheHandle, state: bytes | Unchanged | None = None) -> bool:
        """
        Commit the job's cache state under handle.key.

        Args:
            handle: From acquire()
            state: UNCHANGED to skip, bytes to store as-is, None to pack the
                   handle's cache paths from its workdir

        Returns:
            True if this call committed an entry.
        """
        if state is UNCHANGED or handle.hit == HitKind.EXACT:
            return False

        with self._lock:
            if handle.key in self._committed:
                self.stats.skipped_writes += 1
                return False
            writer = self._writers.setdefault(handle.key, threading.Lock())

        if not writer.acquire(blocking=False):
            logger.debug("cache %s: another job is committing, skipping", handle.key)
            self._count("skipped_writes")
            return False
        try:
            with self._lock:
                if handle.key in self._committed:
                    self.stats.skipped_writes += 1
                    return False
            try:
                blob = state if isinstance(state, bytes) else pack_paths(handle.workdir, handle.spec.paths)
                self.store.put(handle.key, blob)
            except (CacheWriteFailure, OSError, tarfile.TarError) as e:
                logger.warning("cache write failed for %s, continuing without saving: %s", handle.key, e)
                self._count("write_failures")
                return False
            with self._lock:
                self._committed.add(handle.key)
                self.stats.commits += 1
            return True
        finally:
            writer.release()
