"""Models shared across engine components."""
from __future__ import annotations

import posixpath
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class FileInfo:
    """Snapshot of a single file observed in a workflow folder."""

    name: str
    path: str
    size: int
    modified: Optional[float] = None

    def relocated(self, folder: str) -> "FileInfo":
        """Return a copy pointing at the same file name inside ``folder``."""

        return replace(self, path=posixpath.join(folder, self.name) if folder else self.name)


class EngineEventType(str, Enum):
    """Lifecycle events emitted by the engine for telemetry collectors."""

    ENGINE_STARTED = "engine_started"
    FILE_DISCOVERED = "file_discovered"
    FILE_PROCESSED = "file_processed"
    FILE_FAILED = "file_failed"
    POLL_COMPLETED = "poll_completed"
    POLL_FAILED = "poll_failed"
    ENGINE_STOPPED = "engine_stopped"


@dataclass(frozen=True)
class EngineEvent:
    """A single observation published to engine listeners."""

    event_type: EngineEventType
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
