"""File store contract consumed by the engine, plus the bundled backends.

The engine only talks to :class:`FileStore`. Any transport exposing the six
primitives (list, stat, read, write, move, mkdir) can back a hot folder;
``file://`` and ``memory://`` are built in and further URL schemes are added
with :func:`register_scheme`.
"""
from __future__ import annotations

import logging
import os
import posixpath
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

from .errors import AlreadyExistsError, StoreError, StoreNotFoundError

logger = logging.getLogger(__name__)


class EntryKind(str, Enum):
    """Kind of an entry returned by ``list_dir``."""

    FILE = "file"
    DIRECTORY = "directory"
    OTHER = "other"


@dataclass(frozen=True)
class StatResult:
    size: int
    modified: Optional[float] = None


DirEntry = Tuple[str, EntryKind]


def normalize_path(path: str) -> str:
    """Normalize a store path to a relative POSIX path ("" is the root)."""

    cleaned = posixpath.normpath(path.replace("\\", "/").strip("/")) if path else ""
    if cleaned in (".", ""):
        return ""
    if cleaned == ".." or cleaned.startswith("../"):
        raise StoreError(f"Path escapes the store root: {path}", path=path)
    return cleaned


class FileStore(ABC):
    """Abstract store; every failing call raises :class:`StoreError`."""

    @abstractmethod
    def list_dir(self, path: str) -> List[DirEntry]:
        ...

    @abstractmethod
    def stat(self, path: str) -> StatResult:
        ...

    @abstractmethod
    def read_file(self, path: str) -> bytes:
        ...

    @abstractmethod
    def write_file(self, path: str, data: bytes) -> None:
        ...

    @abstractmethod
    def move_file(self, source: str, destination: str) -> None:
        ...

    @abstractmethod
    def mkdir(self, path: str) -> None:
        """Create one directory level, raising AlreadyExistsError if present."""

    def close(self) -> None:
        """Release transport resources; the default store holds none."""


class LocalFileStore(FileStore):
    """Store backed by a directory on the local filesystem."""

    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def __repr__(self) -> str:
        return f"LocalFileStore({str(self._root)!r})"

    def list_dir(self, path: str) -> List[DirEntry]:
        directory = self._resolve(path)
        try:
            children = sorted(directory.iterdir(), key=lambda child: child.name)
        except FileNotFoundError as exc:
            raise StoreNotFoundError(f"Directory not found: {path}", path=path) from exc
        except OSError as exc:
            raise StoreError(f"Unable to list {path}: {exc}", path=path) from exc

        entries: List[DirEntry] = []
        for child in children:
            if child.is_file():
                kind = EntryKind.FILE
            elif child.is_dir():
                kind = EntryKind.DIRECTORY
            else:
                kind = EntryKind.OTHER
            entries.append((child.name, kind))
        return entries

    def stat(self, path: str) -> StatResult:
        try:
            stat = self._resolve(path).stat()
        except FileNotFoundError as exc:
            raise StoreNotFoundError(f"File not found: {path}", path=path) from exc
        except OSError as exc:
            raise StoreError(f"Unable to stat {path}: {exc}", path=path) from exc
        return StatResult(size=stat.st_size, modified=stat.st_mtime)

    def read_file(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except FileNotFoundError as exc:
            raise StoreNotFoundError(f"File not found: {path}", path=path) from exc
        except OSError as exc:
            raise StoreError(f"Unable to read {path}: {exc}", path=path) from exc

    def write_file(self, path: str, data: bytes) -> None:
        try:
            self._resolve(path).write_bytes(data)
        except OSError as exc:
            raise StoreError(f"Unable to write {path}: {exc}", path=path) from exc

    def move_file(self, source: str, destination: str) -> None:
        src = self._resolve(source)
        dst = self._resolve(destination)
        try:
            os.replace(src, dst)
        except FileNotFoundError as exc:
            raise StoreNotFoundError(f"Unable to move {source} -> {destination}: {exc}", path=source) from exc
        except OSError as exc:
            raise StoreError(f"Unable to move {source} -> {destination}: {exc}", path=source) from exc

    def mkdir(self, path: str) -> None:
        try:
            self._resolve(path).mkdir()
        except FileExistsError as exc:
            raise AlreadyExistsError(f"Directory already exists: {path}", path=path) from exc
        except FileNotFoundError as exc:
            raise StoreNotFoundError(f"Parent directory missing for {path}", path=path) from exc
        except OSError as exc:
            raise StoreError(f"Unable to create {path}: {exc}", path=path) from exc

    def _resolve(self, path: str) -> Path:
        relative = normalize_path(path)
        return self._root / relative if relative else self._root


class MemoryFileStore(FileStore):
    """Thread-safe in-process store, handy for embedding and tests."""

    def __init__(self) -> None:
        self._files: Dict[str, Tuple[bytes, float]] = {}
        self._dirs: Set[str] = {""}
        self._lock = threading.Lock()

    def list_dir(self, path: str) -> List[DirEntry]:
        directory = normalize_path(path)
        with self._lock:
            if directory not in self._dirs:
                raise StoreNotFoundError(f"Directory not found: {path}", path=path)
            entries: List[DirEntry] = []
            for name in self._files:
                if posixpath.dirname(name) == directory:
                    entries.append((posixpath.basename(name), EntryKind.FILE))
            for name in self._dirs:
                if name and posixpath.dirname(name) == directory:
                    entries.append((posixpath.basename(name), EntryKind.DIRECTORY))
        return sorted(entries)

    def stat(self, path: str) -> StatResult:
        key = normalize_path(path)
        with self._lock:
            if key in self._files:
                data, modified = self._files[key]
                return StatResult(size=len(data), modified=modified)
            if key in self._dirs:
                return StatResult(size=0)
        raise StoreNotFoundError(f"File not found: {path}", path=path)

    def read_file(self, path: str) -> bytes:
        key = normalize_path(path)
        with self._lock:
            try:
                return self._files[key][0]
            except KeyError:
                raise StoreNotFoundError(f"File not found: {path}", path=path) from None

    def write_file(self, path: str, data: bytes) -> None:
        key = normalize_path(path)
        with self._lock:
            self._require_parent(key)
            if key in self._dirs:
                raise StoreError(f"Cannot overwrite directory {path}", path=path)
            self._files[key] = (bytes(data), time.time())

    def append_file(self, path: str, data: bytes) -> None:
        """Grow a file in place, simulating an upload still in progress."""

        key = normalize_path(path)
        with self._lock:
            self._require_parent(key)
            existing = self._files.get(key, (b"", 0.0))[0]
            self._files[key] = (existing + bytes(data), time.time())

    def move_file(self, source: str, destination: str) -> None:
        src = normalize_path(source)
        dst = normalize_path(destination)
        with self._lock:
            if src not in self._files:
                raise StoreNotFoundError(f"Unable to move {source}: not found", path=source)
            self._require_parent(dst)
            self._files[dst] = self._files.pop(src)

    def mkdir(self, path: str) -> None:
        key = normalize_path(path)
        with self._lock:
            if key in self._dirs or key in self._files:
                raise AlreadyExistsError(f"Directory already exists: {path}", path=path)
            self._require_parent(key)
            self._dirs.add(key)

    def exists(self, path: str) -> bool:
        key = normalize_path(path)
        with self._lock:
            return key in self._files or key in self._dirs

    def _require_parent(self, key: str) -> None:
        parent = posixpath.dirname(key)
        if parent not in self._dirs:
            raise StoreNotFoundError(f"Parent directory missing for {key}", path=key)


StoreFactory = Callable[[str, str, str], FileStore]

_connections: Dict[str, FileStore] = {}
_memory_stores: Dict[str, MemoryFileStore] = {}
_registry_lock = threading.Lock()


def register_connection(name: str, store: FileStore) -> None:
    """Register a pre-authenticated store under ``name`` for shared use."""

    with _registry_lock:
        _connections[name] = store
    logger.debug("Registered connection '%s' (%r)", name, store)


def unregister_connection(name: str) -> Optional[FileStore]:
    with _registry_lock:
        return _connections.pop(name, None)


def get_connection(name: str) -> FileStore:
    with _registry_lock:
        store = _connections.get(name)
    if store is None:
        raise StoreError(f"Connection not found: {name}")
    return store


def _open_file_store(url: str, username: str, password: str) -> FileStore:
    parsed = urlparse(url)
    location = (parsed.netloc + parsed.path) or "."
    root = Path(location)
    if not root.is_dir():
        raise StoreError(f"Store root is not a directory: {root}")
    return LocalFileStore(root)


def _open_memory_store(url: str, username: str, password: str) -> FileStore:
    name = urlparse(url).netloc
    if not name:
        return MemoryFileStore()
    with _registry_lock:
        return _memory_stores.setdefault(name, MemoryFileStore())


_schemes: Dict[str, StoreFactory] = {
    "file": _open_file_store,
    "memory": _open_memory_store,
}


def register_scheme(scheme: str, factory: StoreFactory) -> None:
    """Make ``open_store`` accept URLs of ``scheme`` (e.g. an SMB transport)."""

    with _registry_lock:
        _schemes[scheme.lower()] = factory


def supported_schemes() -> List[str]:
    with _registry_lock:
        return sorted(_schemes)


def open_store(url: str, username: str, password: str) -> FileStore:
    """Open a store for ``url`` using the factory registered for its scheme."""

    scheme = urlparse(url).scheme.lower()
    with _registry_lock:
        factory = _schemes.get(scheme)
    if factory is None:
        raise StoreError(f"Unsupported store URL scheme '{scheme}' in {url}")
    return factory(url, username, password)
