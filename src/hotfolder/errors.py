"""Exception hierarchy shared by the hot folder components."""
from __future__ import annotations

from typing import Optional


class HotFolderError(Exception):
    """Base class for every error raised by the hot folder engine."""


class ConfigError(HotFolderError):
    """Raised when the configuration is missing or invalid."""


class ConnectionSetupError(HotFolderError):
    """Raised when the engine cannot acquire its store connection or folders."""


class EngineBusyError(HotFolderError):
    """Raised by ``poll_now`` while a file is being processed."""


class StoreError(HotFolderError):
    """A file store primitive failed."""

    def __init__(self, message: str, *, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class AlreadyExistsError(StoreError):
    """``mkdir`` target already exists."""


class StoreNotFoundError(StoreError):
    """The requested path does not exist in the store."""


class WorkflowMoveError(HotFolderError):
    """Moving a file between workflow folders failed."""

    def __init__(self, source: str, destination: str, cause: StoreError):
        super().__init__(f"Failed to move {source} -> {destination}: {cause}")
        self.source = source
        self.destination = destination
        self.cause = cause


class HandlerError(HotFolderError):
    """Raised by handlers to report an expected processing failure."""


class HandlerTimeoutError(HandlerError):
    """A handler attempt did not finish before its deadline."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Handler timed out after {timeout_ms} ms")
        self.timeout_ms = timeout_ms
