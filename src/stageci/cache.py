# cache.py
from __future__ import annotations

import base64
import hashlib
import json
import os
import re
import tarfile
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import MissingCacheInputError
from .model import (
    CACHE_WHEN_ALWAYS,
    CACHE_WHEN_ON_FAILURE,
    CACHE_WHEN_ON_SUCCESS,
    CacheSpec,
)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# cache_key = [prefix ":"] sha256(bytes(files[0]) + bytes(files[1]) + ...)
#
# Files are hashed in the order they are listed. Missing inputs are a hard
# error: a key computed from a partial file set would point the job at the
# wrong cache scope.
#
# Artifacts live in a store that is passed in explicitly:
#   DirectoryCacheStore  root/<namespace>/<name>.tar.gz (+ .manifest.json)
#   MemoryCacheStore     dict, for tests
#
# Saving the same key twice replaces the first artifact (last writer wins).
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".stageci/cache"
DEFAULT_KEY = "default"
DEFAULT_NAMESPACE = "_"

# Storage names are used verbatim only when they are plain alphanumerics;
# anything else is base64-encoded behind a marker no verbatim name can
# start with. Distinct keys therefore never share an artifact, and no
# namespace can be "." or "..".
_PLAIN = re.compile(r"[A-Za-z0-9]+")
_ENCODED_NAMESPACE = "~"
_ENCODED_NAME = "k-"

CacheKey = str


@dataclass(frozen=True)
class RestoreResult:
    hit: bool
    key: str
    reason: str  # human readable


def _hash_files_in_order(root: Path, files: Sequence[str]) -> str:
    h = hashlib.sha256()
    for name in files:
        path = root / name
        if not path.is_file():
            raise MissingCacheInputError(name)
        with path.open("rb") as f:
            while True:
                chunk = f.read(1024 * 1024)
                if not chunk:
                    break
                h.update(chunk)
    return h.hexdigest()


def resolve_key(spec: CacheSpec, root: str | Path = ".") -> CacheKey:
    """
    Compute the cache key for `spec` against the files under `root`.

    Raises:
      MissingCacheInputError: a listed key file does not exist
    """
    if spec.files:
        digest = _hash_files_in_order(Path(root), spec.files)
    else:
        digest = spec.key or DEFAULT_KEY

    if spec.prefix:
        return f"{spec.prefix}:{digest}"
    return digest


def should_save(when: str, succeeded: bool) -> bool:
    if when == CACHE_WHEN_ALWAYS:
        return True
    if when == CACHE_WHEN_ON_FAILURE:
        return not succeeded
    if when == CACHE_WHEN_ON_SUCCESS:
        return succeeded
    raise ValueError(f"Unknown cache policy: {when!r}")


def _storage_name(value: str, marker: str) -> str:
    if _PLAIN.fullmatch(value):
        return value
    encoded = base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")
    return marker + encoded


def namespace_for(prefix: Optional[str]) -> str:
    """Storage directory for a key prefix; None or "" is the unprefixed namespace."""
    if not prefix:
        return DEFAULT_NAMESPACE
    return _storage_name(prefix, _ENCODED_NAMESPACE)


def split_key(key: CacheKey) -> Tuple[str, str]:
    """'prefix:hash' -> (namespace, name) as stored on disk; reversible."""
    prefix, sep, name = key.rpartition(":")
    namespace = _storage_name(prefix, _ENCODED_NAMESPACE) if sep else DEFAULT_NAMESPACE
    return namespace, _storage_name(name, _ENCODED_NAME)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_cache_files(project_dir: Path, paths: Iterable[str]) -> Iterable[Tuple[Path, str]]:
    """
    Yield (absolute, project-relative) for every file under the cache paths,
    in a deterministic order. Missing paths and paths outside the project
    directory are ignored.
    """
    root = project_dir.resolve()
    for entry in paths:
        src = (root / entry).resolve()
        if not src.exists():
            continue
        try:
            src.relative_to(root)
        except ValueError:
            continue
        if src.is_file():
            yield src, _relpath(src, root)
            continue
        for f in sorted(src.rglob("*")):
            if f.is_file():
                yield f, _relpath(f, root)


def _write_atomic(path: Path, text: str) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_name, path)
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class DirectoryCacheStore:
    """
    File-based cache store:
      root/
        <namespace>/          one per key prefix, "_" for unprefixed keys
          <name>.tar.gz
          <name>.manifest.json

    Plain alphanumeric prefixes and hashes are used as-is; see split_key.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _namespace_dir(self, namespace: str) -> Path:
        d = self.root / namespace
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, key: CacheKey) -> Path:
        namespace, name = split_key(key)
        return self._namespace_dir(namespace) / f"{name}.tar.gz"

    def manifest_path(self, key: CacheKey) -> Path:
        namespace, name = split_key(key)
        return self._namespace_dir(namespace) / f"{name}.manifest.json"

    def restore(self, key: CacheKey, paths: Sequence[str], project_dir: str | Path) -> RestoreResult:
        """
        Extract the artifact for `key` into `project_dir`.
        On a miss nothing in the project directory is touched.
        """
        art = self.artifact_path(key)
        if not art.exists():
            return RestoreResult(hit=False, key=key, reason="cache miss")

        root = Path(project_dir).resolve()
        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(path=str(root), filter="data")
                else:
                    tar.extractall(path=str(root))
        except (tarfile.TarError, OSError) as e:
            return RestoreResult(hit=False, key=key, reason=f"cache exists but restore failed: {e}")

        return RestoreResult(hit=True, key=key, reason="cache hit: restored artifact")

    def save(self, key: CacheKey, paths: Sequence[str], project_dir: str | Path) -> Path:
        """
        Archive `paths` under `key`. The archive is written to a private temp
        file and moved into place, so concurrent saves never interleave and
        the last one to finish wins.
        """
        root = Path(project_dir).resolve()
        art = self.artifact_path(key)
        files: List[str] = []

        fd, tmp_name = tempfile.mkstemp(prefix=art.name, suffix=".tmp", dir=str(art.parent))
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for src, rel in _iter_cache_files(root, paths):
                    tar.add(str(src), arcname=rel, recursive=False)
                    files.append(rel)
            os.replace(tmp, art)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        manifest = {
            "key": key,
            "paths": list(paths),
            "files": files,
            "saved_at_unix": int(time.time()),
        }
        _write_atomic(
            self.manifest_path(key),
            json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False),
        )
        return art

    def prune(self, prefix: Optional[str], keep: int = 3) -> None:
        """
        Keep only the newest N artifacts in a namespace.
        Uses file mtime as "newest". Jobs of one stage prune concurrently,
        so an artifact may vanish between listing and removal.
        """
        d = self._namespace_dir(namespace_for(prefix))
        found: List[Tuple[float, Path]] = []
        for p in d.glob("*.tar.gz"):
            try:
                found.append((p.stat().st_mtime, p))
            except FileNotFoundError:
                continue
        found.sort(key=lambda item: item[0], reverse=True)
        for _, p in found[keep:]:
            name = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{name}.manifest.json").unlink(missing_ok=True)


class MemoryCacheStore:
    """In-process store: key -> {relative path: bytes}."""

    def __init__(self):
        self._blobs: Dict[CacheKey, Dict[str, bytes]] = {}
        self._lock = threading.Lock()

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._blobs

    def contents(self, key: CacheKey) -> Dict[str, bytes]:
        with self._lock:
            return dict(self._blobs[key])

    def restore(self, key: CacheKey, paths: Sequence[str], project_dir: str | Path) -> RestoreResult:
        with self._lock:
            blob = self._blobs.get(key)
        if blob is None:
            return RestoreResult(hit=False, key=key, reason="cache miss")

        root = Path(project_dir)
        for rel, data in blob.items():
            dest = root / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(data)
        return RestoreResult(hit=True, key=key, reason="cache hit: restored from memory")

    def save(self, key: CacheKey, paths: Sequence[str], project_dir: str | Path) -> None:
        blob = {rel: src.read_bytes() for src, rel in _iter_cache_files(Path(project_dir), paths)}
        with self._lock:
            self._blobs[key] = blob


# ---------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------

class CacheResolver:
    """
    Binds a cache store to a project directory.

        resolver = CacheResolver(DirectoryCacheStore(".stageci/cache"), ".")
        key = resolver.resolve(job.cache)
        resolver.restore(key, job.cache)
        ...run job...
        resolver.save(key, job.cache, succeeded=True)
    """

    def __init__(self, store, project_dir: str | Path = "."):
        self.store = store
        self.project_dir = Path(project_dir)

    def resolve(self, spec: CacheSpec) -> CacheKey:
        return resolve_key(spec, self.project_dir)

    def restore(self, key: CacheKey, spec: CacheSpec) -> RestoreResult:
        if not spec.paths:
            return RestoreResult(hit=False, key=key, reason="no cache paths specified")
        return self.store.restore(key, spec.paths, self.project_dir)

    def save(self, key: CacheKey, spec: CacheSpec, *, succeeded: bool) -> bool:
        """Returns True if the cache was written."""
        if not spec.paths or not should_save(spec.when, succeeded):
            return False
        self.store.save(key, spec.paths, self.project_dir)
        return True
