"""Bounded-retry execution of handlers with a hard per-attempt deadline."""
from __future__ import annotations

import ctypes
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import HandlerTimeoutError
from .events import FileInfo
from .handlers import Handler

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_BASE_MS = 1_000


@dataclass(frozen=True)
class RetryAttemptRecord:
    attempt: int
    error: BaseException
    timestamp: datetime


@dataclass
class RetryState:
    """Progress of one file's processing episode; history is newest-first."""

    attempt: int = 0
    max_retries: int = 0
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    history: List[RetryAttemptRecord] = field(default_factory=list)

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.history[0].error if self.history else None


@dataclass(frozen=True)
class RetrySuccess:
    result: Any
    state: RetryState


@dataclass(frozen=True)
class ExhaustedRetries:
    state: RetryState


RetryOutcome = Union[RetrySuccess, ExhaustedRetries]


class _AttemptCancelled(BaseException):
    """Injected into a worker thread whose attempt ran past its deadline."""


def backoff_delay_ms(attempt: int, base_ms: int, *, rng: Optional[random.Random] = None) -> int:
    """Exponential delay for ``attempt`` (1-based) plus up to 10% additive jitter."""

    delay = base_ms * (2 ** (attempt - 1))
    jitter_span = max(1, round(delay * 0.10))
    jitter = (rng or random).randint(1, jitter_span)
    return int(round(delay + jitter))


class RetryExecutor:
    """Runs a handler against one file until it succeeds or attempts run out."""

    def __init__(
        self,
        *,
        timeout_ms: int,
        max_retries: int,
        backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.timeout_ms = timeout_ms
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self._sleep = sleep
        self._rng = rng

    def execute(self, handler: Handler, file: FileInfo) -> RetryOutcome:
        state = RetryState(max_retries=self.max_retries, backoff_base_ms=self.backoff_base_ms)

        while state.attempt < self.max_retries:
            state.attempt += 1
            try:
                result = self._run_attempt(handler, file)
            except Exception as exc:
                state.history.insert(
                    0,
                    RetryAttemptRecord(attempt=state.attempt, error=exc, timestamp=datetime.now(timezone.utc)),
                )
                logger.warning(
                    "Handler failed on attempt %s/%s for %s: %s",
                    state.attempt,
                    self.max_retries,
                    file.name,
                    describe_error(exc),
                )
                if state.attempt < self.max_retries:
                    delay = backoff_delay_ms(state.attempt, self.backoff_base_ms, rng=self._rng)
                    logger.debug("Retrying %s in %s ms", file.name, delay)
                    self._sleep(delay / 1000.0)
                continue

            logger.debug("Handler succeeded on attempt %s for %s", state.attempt, file.name)
            return RetrySuccess(result=result, state=state)

        return ExhaustedRetries(state=state)

    def _run_attempt(self, handler: Handler, file: FileInfo) -> Any:
        outcome: Dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["result"] = handler.invoke(file)
            except _AttemptCancelled:
                logger.debug("Abandoned handler attempt for %s was cancelled", file.name)
            except Exception as exc:
                outcome["error"] = exc

        worker = threading.Thread(target=target, name=f"hotfolder-handler-{file.name}", daemon=True)
        worker.start()
        worker.join(self.timeout_ms / 1000.0)

        if worker.is_alive():
            _cancel_thread(worker)
            raise HandlerTimeoutError(self.timeout_ms)
        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("result")


def _cancel_thread(worker: threading.Thread) -> None:
    """Best-effort kill: raise _AttemptCancelled inside ``worker``.

    The exception lands at the worker's next Python bytecode; a call blocked
    inside C code only sees it once that call returns. The worker is a daemon
    and is abandoned either way.
    """

    if worker.ident is None:
        return
    affected = ctypes.pythonapi.PyThreadState_SetAsyncExc(
        ctypes.c_ulong(worker.ident), ctypes.py_object(_AttemptCancelled)
    )
    if affected > 1:
        ctypes.pythonapi.PyThreadState_SetAsyncExc(ctypes.c_ulong(worker.ident), None)
        logger.error("Cancellation hit %s threads; reverted", affected)
    elif affected == 0:
        logger.debug("Handler thread %s already finished before cancellation", worker.name)


def describe_error(error: BaseException) -> str:
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


