import os
import threading
import time

import pytest

from hotfolder.config import EngineConfig
from hotfolder.engine import EngineStatus, HotFolderEngine, start
from hotfolder.errors import (
    ConfigError,
    ConnectionSetupError,
    EngineBusyError,
    HandlerError,
    HotFolderError,
    StoreError,
)
from hotfolder.events import EngineEventType
from hotfolder.store import LocalFileStore, MemoryFileStore

from conftest import write_incoming


def _engine(config, store, clock, events):
    engine = HotFolderEngine(config, store=store, listeners=[events.append], clock=clock, sleep=lambda _: None)
    engine.connect()
    return engine


def _event_types(events):
    return [event.event_type for event in events]


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class StuckMoveStore(MemoryFileStore):
    def move_file(self, source, destination):
        raise StoreError("permission denied", path=source)


class BrokenReportStore(MemoryFileStore):
    def write_file(self, path, data):
        if path.endswith("_error.txt"):
            raise RuntimeError("driver crashed")
        super().write_file(path, data)


class FlakyListingStore(MemoryFileStore):
    """Listing the incoming folder blows up with a non-store error while armed."""

    def __init__(self):
        super().__init__()
        self.failures = 0

    def list_dir(self, path):
        if path == "incoming" and self.failures:
            self.failures -= 1
            raise RuntimeError("transport reset")
        return super().list_dir(path)


def test_connect_creates_folders_and_emits_started(make_config, store, clock, events):
    engine = _engine(make_config(base_path="hot"), store, clock, events)

    for folder in ("hot/incoming", "hot/processing", "hot/success", "hot/errors"):
        assert store.exists(folder)
    assert engine.status() is EngineStatus.POLLING
    assert _event_types(events) == [EngineEventType.ENGINE_STARTED]
    assert events[0].metadata["incoming_path"] == "hot/incoming"


def test_file_processed_once_stable(make_config, store, clock, events):
    seen = []
    engine = _engine(make_config(handler=lambda file: seen.append(file.path)), store, clock, events)
    write_incoming(store, "invoice.pdf")

    assert engine.poll_once() is None
    clock.advance(1)
    processed = engine.poll_once()

    assert processed.name == "invoice.pdf"
    assert seen == ["processing/invoice.pdf"]
    assert store.exists("success/invoice.pdf")
    assert not store.exists("incoming/invoice.pdf")

    stats = engine.stats()
    assert (stats.files_processed, stats.files_failed) == (1, 0)
    assert stats.status is EngineStatus.POLLING
    assert stats.current_file is None
    assert stats.last_poll is not None
    assert "invoice.pdf" not in engine.tracker
    assert _event_types(events)[-3:] == [
        EngineEventType.POLL_COMPLETED,
        EngineEventType.FILE_DISCOVERED,
        EngineEventType.FILE_PROCESSED,
    ]
    assert events[-1].metadata["file_size"] == 64


def test_exhausted_file_goes_to_errors_with_report(make_config, store, clock, events):
    def always_fails(file):
        raise HandlerError("corrupt page tree")

    engine = _engine(make_config(handler=always_fails, max_retries=2), store, clock, events)
    write_incoming(store, "broken.pdf")

    engine.poll_once()
    clock.advance(1)
    engine.poll_once()

    assert store.exists("errors/broken.pdf")
    report = store.read_file("errors/broken_error.txt").decode()
    assert "Attempts: 2" in report
    assert "Final Error: HandlerError: corrupt page tree" in report
    assert engine.stats().files_failed == 1
    failed = events[-1]
    assert failed.event_type is EngineEventType.FILE_FAILED
    assert "corrupt page tree" in failed.metadata["error"]


def test_only_one_file_per_poll(make_config, store, clock, events):
    in_flight = []
    peak = []

    def handler(file):
        in_flight.append(file.name)
        peak.append(len(in_flight))
        in_flight.remove(file.name)

    engine = _engine(make_config(handler=handler), store, clock, events)
    for name in ("a.pdf", "b.pdf", "c.pdf"):
        write_incoming(store, name)

    engine.poll_once()
    clock.advance(1)
    assert engine.poll_once().name == "a.pdf"
    assert [name for name, _ in store.list_dir("incoming")] == ["b.pdf", "c.pdf"]

    clock.advance(1)
    assert engine.poll_once().name == "b.pdf"
    clock.advance(1)
    assert engine.poll_once().name == "c.pdf"
    assert max(peak) == 1


def test_empty_polls_back_off_and_activity_resets(make_config, store, clock, events):
    engine = _engine(make_config(), store, clock, events)
    intervals = []
    for _ in range(5):
        engine.poll_once()
        intervals.append(engine.stats().current_interval_ms)

    assert intervals == [200, 400, 800, 1000, 1000]

    write_incoming(store, "late.pdf")
    engine.poll_once()
    clock.advance(1)
    engine.poll_once()
    assert engine.stats().current_interval_ms == 100


def test_listing_failure_is_transient(make_config, store, clock, events):
    engine = _engine(make_config(auto_create_folders=False), store, clock, events)

    assert engine.poll_once() is None
    assert engine.status() is EngineStatus.ERROR
    assert engine.stats().current_interval_ms == 200
    assert events[-1].event_type is EngineEventType.POLL_FAILED

    store.mkdir("incoming")
    engine.poll_once()
    assert engine.status() is EngineStatus.POLLING
    assert events[-1].event_type is EngineEventType.POLL_COMPLETED


def test_failed_stage_move_counts_as_failure_and_releases_claim(make_config, clock, events):
    store = StuckMoveStore()
    write_incoming(store, "locked.pdf")
    engine = _engine(make_config(), store, clock, events)

    engine.poll_once()
    clock.advance(1)
    engine.poll_once()

    assert store.exists("incoming/locked.pdf")
    assert engine.stats().files_failed == 1
    assert "locked.pdf" not in engine.tracker
    assert events[-1].event_type is EngineEventType.FILE_FAILED
    assert "permission denied" in events[-1].metadata["error"]


def test_filters_and_unstable_files_are_skipped(make_config, store, clock, events):
    engine = _engine(make_config(filters={"name_patterns": ["*.pdf"]}), store, clock, events)
    write_incoming(store, ".hidden.pdf")
    write_incoming(store, "notes.txt")
    write_incoming(store, "growing.pdf", b"a")
    store.mkdir("incoming/subdir")

    engine.poll_once()
    store.append_file("incoming/growing.pdf", b"b")
    clock.advance(1)

    assert engine.poll_once() is None
    assert engine.tracker.get("growing.pdf").consecutive_same_size_checks == 1
    assert ".hidden.pdf" not in engine.tracker
    assert "notes.txt" not in engine.tracker


def test_poll_now_is_rejected_while_processing(make_config, store, clock, events):
    outcomes = []
    engine_ref = []

    def handler(file):
        try:
            engine_ref[0].poll_now()
        except EngineBusyError as exc:
            outcomes.append(exc)

    engine = _engine(make_config(handler=handler), store, clock, events)
    engine_ref.append(engine)
    write_incoming(store, "job.pdf")

    engine.poll_once()
    clock.advance(1)
    engine.poll_once()

    assert len(outcomes) == 1
    engine.poll_now()


def test_listener_errors_do_not_break_the_engine(make_config, store, clock):
    def noisy(event):
        raise RuntimeError("collector offline")

    engine = HotFolderEngine(make_config(), store=store, listeners=[noisy], clock=clock)
    engine.connect()
    write_incoming(store, "a.pdf")
    engine.poll_once()
    clock.advance(1)

    assert engine.poll_once().name == "a.pdf"


def test_start_rejects_bad_config_and_unknown_connection():
    with pytest.raises(ConfigError):
        start({"handler": lambda file: None})

    with pytest.raises(ConnectionSetupError, match="Connection not found"):
        start({"connection": "no-such-share", "handler": lambda file: None})


def test_folder_creation_failure_is_a_setup_error(make_config, clock):
    class ReadOnlyStore(MemoryFileStore):
        def mkdir(self, path):
            raise StoreError("read-only share", path=path)

    engine = HotFolderEngine(make_config(), store=ReadOnlyStore(), clock=clock)

    with pytest.raises(ConnectionSetupError, match="read-only"):
        engine.connect()


def test_background_engine_processes_and_stops(make_config, store, events):
    write_incoming(store, "scan.pdf")
    engine = start(make_config(poll_interval={"initial_ms": 10, "max_ms": 50, "backoff_factor": 2.0}), listeners=[events.append])
    try:
        assert wait_for(lambda: engine.stats().files_processed == 1)
        engine.poll_now()
    finally:
        engine.stop(timeout=5)

    assert engine.status() is EngineStatus.STOPPED
    assert store.exists("success/scan.pdf")
    assert events[-1].event_type is EngineEventType.ENGINE_STOPPED
    assert events[-1].metadata["files_processed"] == 1


def test_stop_waits_for_in_flight_file(make_config, store, events):
    release = threading.Event()
    entered = threading.Event()

    def slow(file):
        entered.set()
        release.wait(5)

    write_incoming(store, "big.pdf")
    engine = start(
        make_config(handler=slow, poll_interval={"initial_ms": 10, "max_ms": 50, "backoff_factor": 2.0}),
        listeners=[events.append],
    )
    try:
        assert entered.wait(5)
        assert engine.status() is EngineStatus.PROCESSING
        assert engine.current_file() == "big.pdf"
        with pytest.raises(EngineBusyError):
            engine.poll_now()

        engine.stop(timeout=0.05)
        assert engine.status() is EngineStatus.PROCESSING
    finally:
        release.set()
        engine.stop(timeout=5)

    assert engine.status() is EngineStatus.STOPPED
    assert engine.stats().files_processed == 1
    assert store.exists("success/big.pdf")


def test_undecodable_file_name_is_routed_to_errors(make_config, tmp_path, clock, events):
    incoming = tmp_path / "incoming"
    incoming.mkdir()
    with open(os.path.join(os.fsencode(incoming), b"bad\xff.pdf"), "wb") as handle:
        handle.write(b"x" * 10)

    def always_fails(file):
        raise HandlerError("unreadable scan")

    engine = _engine(make_config(handler=always_fails, max_retries=1), LocalFileStore(tmp_path), clock, events)
    engine.poll_once()
    clock.advance(1)

    assert engine.poll_once().name == "bad\udcff.pdf"
    stats = engine.stats()
    assert (stats.files_processed, stats.files_failed) == (0, 1)
    assert sorted(os.listdir(os.fsencode(tmp_path / "errors"))) == [b"bad\xff.pdf", b"bad\xff_error.txt"]
    assert events[-1].event_type is EngineEventType.FILE_FAILED


def test_unexpected_episode_error_counts_as_failure(make_config, clock, events):
    def always_fails(file):
        raise HandlerError("corrupt")

    store = BrokenReportStore()
    write_incoming(store, "scan.pdf")
    engine = _engine(make_config(handler=always_fails, max_retries=1), store, clock, events)
    engine.poll_once()
    clock.advance(1)
    engine.poll_once()

    stats = engine.stats()
    assert (stats.files_processed, stats.files_failed) == (0, 1)
    assert stats.status is EngineStatus.POLLING
    assert "scan.pdf" not in engine.tracker
    assert events[-1].event_type is EngineEventType.FILE_FAILED
    assert "driver crashed" in events[-1].metadata["error"]


def test_background_loop_survives_unexpected_poll_errors(make_config, events):
    store = FlakyListingStore()
    engine = start(
        make_config(poll_interval={"initial_ms": 10, "max_ms": 20, "backoff_factor": 2.0}),
        store=store,
        listeners=[events.append],
    )
    try:
        store.failures = 2
        write_incoming(store, "scan.pdf")
        assert wait_for(lambda: store.failures == 0 and engine.stats().files_processed == 1)
        assert engine.status() is not EngineStatus.STOPPED
    finally:
        engine.stop(timeout=5)

    assert EngineEventType.POLL_FAILED in _event_types(events)
    assert store.exists("success/scan.pdf")


def test_poll_once_is_reserved_for_the_engine_loop(make_config):
    engine = start(make_config(poll_interval={"initial_ms": 10, "max_ms": 50, "backoff_factor": 2.0}))
    try:
        with pytest.raises(HotFolderError, match="poll_now"):
            engine.poll_once()
    finally:
        engine.stop(timeout=5)

    with pytest.raises(HotFolderError, match="stopped"):
        engine.poll_once()


def test_stop_before_connect_emits_nothing(make_config, clock, events):
    engine = HotFolderEngine(make_config(), listeners=[events.append], clock=clock)

    engine.stop()

    assert events == []
    assert engine.status() is EngineStatus.STARTING


def test_hand_built_config_gets_a_validated_handler(connection, store, clock, events):
    engine = _engine(EngineConfig(handler=lambda file: None, connection=connection), store, clock, events)

    assert events[0].metadata["handler"].endswith("<lambda>/1")

    with pytest.raises(ConfigError, match="handler must be"):
        HotFolderEngine(EngineConfig(handler="not-a-handler", connection=connection))
