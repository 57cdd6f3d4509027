"""Diagnostic reports written next to files that exhausted their retries."""
from __future__ import annotations

import posixpath
from datetime import datetime, timezone
from typing import Optional

from .events import FileInfo
from .handlers import Handler
from .retry import RetryState, describe_error

REPORT_SUFFIX = "_error.txt"


def report_name(filename: str) -> str:
    """``scan.tar.gz`` -> ``scan.tar_error.txt``."""

    return posixpath.splitext(filename)[0] + REPORT_SUFFIX


def build_error_report(
    file: FileInfo,
    handler: Handler,
    state: RetryState,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Render a self-contained, human readable report for a failed file."""

    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    final_error = describe_error(state.last_error) if state.last_error is not None else "unknown"

    history_lines = [
        f"Attempt {record.attempt} ({record.timestamp.isoformat()}): {describe_error(record.error)}"
        for record in reversed(state.history)
    ]

    lines = [
        f"Error processing file: {file.name}",
        f"Timestamp: {timestamp}",
        f"File Path: {file.path}",
        f"File Size: {file.size} bytes",
        f"Attempts: {state.attempt}",
        f"Final Error: {final_error}",
        f"Handler: {handler.describe()}",
        "",
        "Error History:",
    ]
    lines.extend(history_lines or ["(no attempts were made)"])
    return "\n".join(lines) + "\n"
