"""Upload-completion detection by size polling.

A file is handed to the engine once its size has been identical for
``required_checks`` consecutive polls *and* for at least
``stability_duration_ms`` of wall-clock time since the check threshold was
first reached.

Files whose size coincidentally stays equal across two separate write bursts
are still reported stable once both floors pass. Size polling cannot tell the
difference.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional

from .events import FileInfo

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_CHECKS = 2
DEFAULT_STABILITY_DURATION_MS = 5_000
DEFAULT_GRACE_MS = 60_000


@dataclass(frozen=True)
class StabilityRecord:
    """Per-file tracking state; timestamps are monotonic seconds."""

    name: str
    size: int
    first_seen: float
    last_seen: float
    stable_since: Optional[float] = None
    consecutive_same_size_checks: int = 1


@dataclass(frozen=True)
class TrackerStats:
    total_tracked: int
    stable_count: int
    unstable_count: int


class StabilityTracker:
    """Keeps one :class:`StabilityRecord` per file name seen in recent polls."""

    def __init__(
        self,
        required_checks: int = DEFAULT_REQUIRED_CHECKS,
        stability_duration_ms: int = DEFAULT_STABILITY_DURATION_MS,
        grace_ms: int = DEFAULT_GRACE_MS,
    ):
        if required_checks < 1:
            raise ValueError("required_checks must be at least 1")
        self.required_checks = required_checks
        self.stability_duration_ms = stability_duration_ms
        self.grace_ms = grace_ms
        self._records: Dict[str, StabilityRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def update(self, snapshot: Iterable[FileInfo], now: float) -> List[FileInfo]:
        """Fold ``snapshot`` into the tracked state and return the stable files.

        Stable files are returned in snapshot order.
        """

        current = list(snapshot)
        present = set()
        for file in current:
            present.add(file.name)
            self._records[file.name] = self._advance(self._records.get(file.name), file, now)

        self._prune(present, now)
        return [file for file in current if self.is_stable(file.name, now)]

    def is_stable(self, name: str, now: float) -> bool:
        record = self._records.get(name)
        if record is None or record.stable_since is None:
            return False
        if record.consecutive_same_size_checks < self.required_checks:
            return False
        return (now - record.stable_since) * 1000.0 >= self.stability_duration_ms

    def get(self, name: str) -> Optional[StabilityRecord]:
        return self._records.get(name)

    def remove(self, name: str) -> None:
        """Forget ``name``; used once the engine releases its claim."""

        self._records.pop(name, None)

    def clear(self) -> None:
        self._records.clear()

    def stats(self) -> TrackerStats:
        stable = sum(1 for record in self._records.values() if record.stable_since is not None)
        return TrackerStats(
            total_tracked=len(self._records),
            stable_count=stable,
            unstable_count=len(self._records) - stable,
        )

    def _advance(self, record: Optional[StabilityRecord], file: FileInfo, now: float) -> StabilityRecord:
        if record is None:
            logger.debug("Tracking new file %s (%s bytes)", file.name, file.size)
            return StabilityRecord(name=file.name, size=file.size, first_seen=now, last_seen=now)

        if record.size != file.size:
            logger.debug("Size of %s changed %s -> %s; restarting stability", file.name, record.size, file.size)
            return replace(
                record,
                size=file.size,
                last_seen=now,
                stable_since=None,
                consecutive_same_size_checks=1,
            )

        checks = record.consecutive_same_size_checks + 1
        stable_since = record.stable_since
        if stable_since is None and checks >= self.required_checks:
            stable_since = now
        return replace(record, last_seen=now, stable_since=stable_since, consecutive_same_size_checks=checks)

    def _prune(self, present: set, now: float) -> None:
        cutoff = now - self.grace_ms / 1000.0
        for name in [name for name, record in self._records.items() if name not in present]:
            if self._records[name].last_seen < cutoff:
                logger.debug("Dropping %s from stability tracking; not seen since grace window", name)
                del self._records[name]
