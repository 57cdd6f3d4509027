"""Moves files between the incoming, processing, success and errors folders."""
from __future__ import annotations

import logging
import posixpath
from typing import Dict, Optional

from .errors import AlreadyExistsError, StoreError, WorkflowMoveError
from .reports import report_name
from .store import FileStore, normalize_path

logger = logging.getLogger(__name__)

INCOMING = "incoming"
PROCESSING = "processing"
SUCCESS = "success"
ERRORS = "errors"

WORKFLOW_ROLES = (INCOMING, PROCESSING, SUCCESS, ERRORS)


class WorkflowRouter:
    """Applies workflow moves against a store.

    ``folders`` maps each role to its full store path (base path included).
    """

    def __init__(self, store: FileStore, folders: Dict[str, str]):
        missing = [role for role in WORKFLOW_ROLES if role not in folders]
        if missing:
            raise ValueError(f"Missing workflow folders: {', '.join(missing)}")
        self._store = store
        self._folders = {role: normalize_path(path) for role, path in folders.items()}

    def folder(self, role: str) -> str:
        return self._folders[role]

    def file_path(self, role: str, filename: str) -> str:
        folder = self._folders[role]
        return posixpath.join(folder, filename) if folder else filename

    def ensure_workflow_dirs_exist(self) -> None:
        """Create any missing workflow folder; raises StoreError on failure."""

        for role in WORKFLOW_ROLES:
            self._ensure_dir(self._folders[role])
            logger.debug("Folder %s exists or created: %s", role, self._folders[role])

    def stage_for_processing(self, filename: str) -> str:
        return self._move(filename, INCOMING, PROCESSING)

    def finalize_success(self, filename: str) -> str:
        return self._move(filename, PROCESSING, SUCCESS)

    def finalize_failure(self, filename: str, report: Optional[str] = None) -> str:
        """Move to errors, then write ``report`` beside the file if given.

        A failed report write is logged only; the move is what matters.
        """

        destination = self._move(filename, PROCESSING, ERRORS)
        if report is not None:
            report_path = self.file_path(ERRORS, report_name(filename))
            try:
                self._store.write_file(report_path, report.encode("utf-8", errors="backslashreplace"))
            except (StoreError, UnicodeError) as exc:
                logger.warning("Failed to write error report for %s: %s", filename, exc)
            else:
                logger.debug("Error report written: %s", report_path)
        return destination

    def _move(self, filename: str, source_role: str, destination_role: str) -> str:
        source = self.file_path(source_role, filename)
        destination = self.file_path(destination_role, filename)
        logger.debug("Moving file to %s: %s -> %s", destination_role, source, destination)
        try:
            self._ensure_dir(self._folders[destination_role])
            self._store.move_file(source, destination)
        except StoreError as exc:
            logger.error("Failed to move file %s -> %s: %s", source, destination, exc)
            raise WorkflowMoveError(source, destination, exc) from exc
        return destination

    def _ensure_dir(self, path: str) -> None:
        if not path:
            return
        try:
            self._store.list_dir(path)
            return
        except StoreError:
            pass

        parts = path.split("/")
        for index in range(1, len(parts) + 1):
            try:
                self._store.mkdir("/".join(parts[:index]))
            except AlreadyExistsError:
                continue
