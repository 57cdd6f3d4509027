"""Hot folder engine: adaptive polling and sequential file processing.

One control thread alternates between waiting for the poll timer, listing the
incoming folder and processing at most one stable file. Nothing is persisted;
a restarted engine rebuilds its view by listing the incoming folder again.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, List, Mapping, Optional, Set, Union

from .config import EngineConfig, build_config, validate_config
from .errors import (
    ConnectionSetupError,
    EngineBusyError,
    HandlerError,
    HotFolderError,
    StoreError,
    WorkflowMoveError,
)
from .events import EngineEvent, EngineEventType, FileInfo
from .filters import filter_files
from .reports import build_error_report
from .retry import RetryExecutor, RetrySuccess, describe_error
from .router import INCOMING, PROCESSING, WorkflowRouter
from .stability import StabilityTracker
from .store import EntryKind, FileStore, get_connection, open_store

logger = logging.getLogger(__name__)

EventListener = Callable[[EngineEvent], None]


class EngineStatus(str, Enum):
    STARTING = "starting"
    POLLING = "polling"
    PROCESSING = "processing"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass(frozen=True)
class EngineStats:
    """Point-in-time counters reported by :meth:`HotFolderEngine.stats`."""

    files_processed: int
    files_failed: int
    status: EngineStatus
    current_file: Optional[str]
    uptime: float
    last_poll: Optional[datetime]
    current_interval_ms: int


class HotFolderEngine:
    """Watches one incoming folder and routes its files through a handler."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        store: Optional[FileStore] = None,
        listeners: Iterable[EventListener] = (),
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._config = validate_config(config)
        self._store = store
        self._owns_store = False
        self._router: Optional[WorkflowRouter] = None
        self._listeners: List[EventListener] = list(listeners)
        self._clock = clock

        self._tracker = StabilityTracker(
            required_checks=config.stability.required_checks,
            stability_duration_ms=config.stability.duration_ms,
            grace_ms=config.stability.grace_ms,
        )
        self._executor = RetryExecutor(
            timeout_ms=config.handler_timeout_ms,
            max_retries=config.max_retries,
            backoff_base_ms=config.retry_backoff_base_ms,
            sleep=sleep,
        )
        self._claimed: Set[str] = set()

        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._initialized = False
        self._loop_thread: Optional[threading.Thread] = None
        self._shut_down = False

        self._status = EngineStatus.STARTING
        self._current_file: Optional[str] = None
        self._files_processed = 0
        self._files_failed = 0
        self._last_poll: Optional[datetime] = None
        self._current_interval_ms = config.poll_interval.initial_ms
        self._empty_polls = 0
        self._next_poll_at = 0.0
        self._started_at = clock()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def tracker(self) -> StabilityTracker:
        return self._tracker

    def __enter__(self) -> "HotFolderEngine":
        if not self._initialized:
            self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    # Lifecycle

    def start(self) -> "HotFolderEngine":
        """Connect, prepare folders and poll on a background thread."""

        self.connect()
        self._thread = threading.Thread(target=self._run_loop, name="hotfolder-engine", daemon=True)
        self._loop_thread = self._thread
        self._thread.start()
        return self

    def run(self) -> None:
        """Run the engine on the calling thread until stopped."""

        self.connect()
        self._loop_thread = threading.current_thread()
        try:
            self._run_loop()
        except KeyboardInterrupt:
            logger.info("Hot folder interrupted by user")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling; an episode already in flight is allowed to finish."""

        self._stop_event.set()
        self._wakeup.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Hot folder engine did not stop within %s s", timeout)
        elif self._loop_thread is None and self._initialized:
            self._shutdown("stopped")

    def poll_now(self) -> None:
        """Poll immediately instead of waiting for the timer."""

        with self._lock:
            if self._status is EngineStatus.PROCESSING:
                raise EngineBusyError(f"Busy processing {self._current_file}")
            if self._shut_down:
                raise HotFolderError("Engine has been stopped")
            self._next_poll_at = self._clock()
        self._wakeup.set()

    def status(self) -> EngineStatus:
        with self._lock:
            return self._status

    def current_file(self) -> Optional[str]:
        with self._lock:
            return self._current_file

    def stats(self) -> EngineStats:
        with self._lock:
            return EngineStats(
                files_processed=self._files_processed,
                files_failed=self._files_failed,
                status=self._status,
                current_file=self._current_file,
                uptime=self._clock() - self._started_at,
                last_poll=self._last_poll,
                current_interval_ms=self._current_interval_ms,
            )

    # Control loop

    def connect(self) -> None:
        """Acquire the store and prepare folders; raises ConnectionSetupError."""

        if self._initialized:
            raise HotFolderError("Engine already started")

        store = self._acquire_store()
        self._router = WorkflowRouter(store, self._config.all_folder_paths())

        if self._config.auto_create_folders:
            try:
                self._router.ensure_workflow_dirs_exist()
            except StoreError as exc:
                logger.error("Failed to create folders: %s", exc)
                self._close_store()
                raise ConnectionSetupError(f"Failed to create workflow folders: {exc}") from exc

        self._initialized = True
        with self._lock:
            self._status = EngineStatus.POLLING
        self._schedule(self._config.poll_interval.initial_ms)

        incoming = self._router.folder(INCOMING)
        logger.info("Hot folder started, monitoring %s", incoming)
        self._emit(
            EngineEventType.ENGINE_STARTED,
            incoming_path=incoming,
            poll_interval_ms=self._current_interval_ms,
            handler=self._config.handler.describe(),
        )

    def _acquire_store(self) -> FileStore:
        if self._store is not None:
            return self._store

        config = self._config
        try:
            if config.connection is not None:
                self._store = get_connection(config.connection)
            else:
                self._store = open_store(config.url, config.username, config.password)
                self._owns_store = True
        except StoreError as exc:
            logger.error("Failed to set up connection: %s", exc)
            raise ConnectionSetupError(str(exc)) from exc
        return self._store

    def _run_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                remaining = self._next_poll_at - self._clock()
                if remaining > 0:
                    self._wakeup.wait(remaining)
                self._wakeup.clear()
                if self._stop_event.is_set():
                    break
                if self._next_poll_at - self._clock() > 0:
                    continue
                self._safe_poll()
        finally:
            self._loop_thread = None
            self._shutdown("stopped")

    def _safe_poll(self) -> None:
        try:
            self.poll_once()
        except Exception as exc:
            logger.exception("Unexpected error during poll")
            self._poll_failed(exc)

    def _poll_failed(self, exc: BaseException) -> None:
        with self._lock:
            self._status = EngineStatus.ERROR
        self._back_off()
        self._emit(EngineEventType.POLL_FAILED, error=str(exc), next_interval_ms=self._current_interval_ms)

    def _back_off(self) -> None:
        policy = self._config.poll_interval
        if self._current_interval_ms < policy.max_ms:
            self._empty_polls += 1
        self._schedule(policy.interval_after(self._empty_polls))

    def _schedule(self, interval_ms: int) -> None:
        with self._lock:
            self._current_interval_ms = interval_ms
            self._next_poll_at = self._clock() + interval_ms / 1000.0

    def poll_once(self) -> Optional[FileInfo]:
        """Run one poll; process and return the claimed file, if any.

        While the engine loop is running only the loop itself may poll; other
        threads use :meth:`poll_now`.
        """

        if not self._initialized or self._router is None:
            raise HotFolderError("Engine has not been started")
        if self._shut_down:
            raise HotFolderError("Engine has been stopped")
        loop_thread = self._loop_thread
        if loop_thread is not None and loop_thread is not threading.current_thread():
            raise HotFolderError("Engine loop is running; use poll_now() to trigger a poll")

        poll_started = self._clock()
        policy = self._config.poll_interval

        try:
            listed = self._list_incoming()
        except StoreError as exc:
            logger.warning("Poll failed: %s", exc)
            self._poll_failed(exc)
            return None

        candidates = filter_files(listed, self._config.filters)
        stable = self._tracker.update(candidates, self._clock())
        processable = [file for file in stable if file.name not in self._claimed]

        with self._lock:
            self._last_poll = datetime.now(timezone.utc)
        self._emit(
            EngineEventType.POLL_COMPLETED,
            duration_ms=(self._clock() - poll_started) * 1000.0,
            files_listed=len(listed),
            files_found=len(processable),
        )

        if not processable:
            with self._lock:
                self._status = EngineStatus.POLLING
            self._back_off()
            return None

        file = processable[0]
        self._claimed.add(file.name)
        self._empty_polls = 0
        self._schedule(policy.initial_ms)
        with self._lock:
            self._status = EngineStatus.PROCESSING
            self._current_file = file.name
        self._emit(EngineEventType.FILE_DISCOVERED, file_name=file.name, file_path=file.path, file_size=file.size)

        self._process_file(file)
        return file

    def _list_incoming(self) -> List[FileInfo]:
        assert self._store is not None and self._router is not None
        incoming = self._router.folder(INCOMING)
        files: List[FileInfo] = []
        for name, kind in self._store.list_dir(incoming):
            if kind is not EntryKind.FILE:
                continue
            path = self._router.file_path(INCOMING, name)
            try:
                stat = self._store.stat(path)
            except StoreError as exc:
                logger.debug("Skipping %s; stat failed: %s", path, exc)
                continue
            files.append(FileInfo(name=name, path=path, size=stat.size, modified=stat.modified))
        return files

    # Processing

    def _process_file(self, file: FileInfo) -> None:
        started = self._clock()
        error: Optional[BaseException] = None
        try:
            error = self._run_episode(file)
        except Exception as exc:
            logger.exception("Unexpected error while processing %s", file.name)
            error = exc
        finally:
            self._claimed.discard(file.name)
            self._tracker.remove(file.name)
            with self._lock:
                if error is None:
                    self._files_processed += 1
                else:
                    self._files_failed += 1
                self._status = EngineStatus.POLLING
                self._current_file = None

        duration_ms = (self._clock() - started) * 1000.0
        if error is None:
            self._emit(
                EngineEventType.FILE_PROCESSED,
                file_name=file.name,
                file_path=file.path,
                file_size=file.size,
                duration_ms=duration_ms,
            )
        else:
            self._emit(
                EngineEventType.FILE_FAILED,
                file_name=file.name,
                file_path=file.path,
                file_size=file.size,
                duration_ms=duration_ms,
                error=describe_error(error),
            )

    def _run_episode(self, file: FileInfo) -> Optional[BaseException]:
        """Stage, handle and finalize ``file``; return the failure, if any."""

        assert self._router is not None
        logger.info("Processing file: %s", file.name)

        try:
            self._router.stage_for_processing(file.name)
        except WorkflowMoveError as exc:
            logger.error("Failed to move %s to processing folder: %s", file.name, exc.cause)
            return exc

        staged = file.relocated(self._router.folder(PROCESSING))
        handler = self._config.handler
        outcome = self._executor.execute(handler, staged)

        if isinstance(outcome, RetrySuccess):
            try:
                self._router.finalize_success(file.name)
            except WorkflowMoveError as exc:
                logger.error("Failed to move %s to success folder: %s", file.name, exc.cause)
                return exc
            logger.info("Successfully processed file: %s", file.name)
            return None

        state = outcome.state
        report = build_error_report(staged, handler, state)
        try:
            self._router.finalize_failure(file.name, report)
        except WorkflowMoveError as exc:
            logger.error("Failed to move %s to errors folder: %s", file.name, exc.cause)
            return exc
        logger.warning("File processing failed after %s attempts: %s", state.attempt, file.name)
        return state.last_error or HandlerError("No handler attempts were made")

    # Shutdown and events

    def _shutdown(self, reason: str) -> None:
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True
            self._status = EngineStatus.STOPPED
            uptime = self._clock() - self._started_at
            processed, failed = self._files_processed, self._files_failed

        logger.info("Hot folder stopped after %.1f s: %s processed, %s failed", uptime, processed, failed)
        self._emit(
            EngineEventType.ENGINE_STOPPED,
            reason=reason,
            uptime=uptime,
            files_processed=processed,
            files_failed=failed,
        )
        self._close_store()

    def _close_store(self) -> None:
        if self._owns_store and self._store is not None:
            try:
                self._store.close()
            except StoreError as exc:
                logger.warning("Failed to close store: %s", exc)
            self._owns_store = False

    def _emit(self, event_type: EngineEventType, **metadata: Any) -> None:
        event = EngineEvent(event_type=event_type, metadata=metadata)
        logger.debug("Event %s %s", event_type.value, metadata)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener %r failed for %s", listener, event_type.value)


def start(
    config: Union[EngineConfig, Mapping[str, Any]],
    *,
    store: Optional[FileStore] = None,
    listeners: Iterable[EventListener] = (),
    **kwargs: Any,
) -> HotFolderEngine:
    """Validate ``config`` and start an engine on a background thread.

    Raises ConfigError for invalid configuration and ConnectionSetupError when
    the store or the workflow folders cannot be reached.
    """

    if not isinstance(config, EngineConfig):
        config = build_config(config)
    engine = HotFolderEngine(config, store=store, listeners=listeners, **kwargs)
    return engine.start()
