"""Shared fixtures for the hot folder test suite."""
from __future__ import annotations

import itertools
import logging
import sys
from typing import Any, Callable, Dict, Iterator, List

import pytest

from hotfolder.config import EngineConfig, build_config
from hotfolder.events import EngineEvent, FileInfo
from hotfolder.store import MemoryFileStore, register_connection, unregister_connection

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)

_connection_ids = itertools.count()


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ok_handler(file: FileInfo) -> str:
    return f"handled {file.name}"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryFileStore:
    return MemoryFileStore()


@pytest.fixture
def connection(store: MemoryFileStore) -> Iterator[str]:
    name = f"test-share-{next(_connection_ids)}"
    register_connection(name, store)
    yield name
    unregister_connection(name)


@pytest.fixture
def make_config(connection: str) -> Callable[..., EngineConfig]:
    """Build a fast-polling engine config bound to the test connection."""

    def factory(**overrides: Any) -> EngineConfig:
        raw: Dict[str, Any] = {
            "connection": connection,
            "handler": ok_handler,
            "poll_interval": {"initial_ms": 100, "max_ms": 1000, "backoff_factor": 2.0},
            "stability": {"required_checks": 2, "duration_ms": 0},
            "handler_timeout_ms": 2000,
            "max_retries": 3,
            "retry_backoff_base_ms": 1,
        }
        raw.update(overrides)
        return build_config(raw)

    return factory


@pytest.fixture
def events() -> List[EngineEvent]:
    return []


def write_incoming(store: MemoryFileStore, name: str, data: bytes = b"x" * 64, folder: str = "incoming") -> None:
    if not store.exists(folder):
        store.mkdir(folder)
    store.write_file(f"{folder}/{name}", data)
