"""Example handlers that can be referenced from configuration."""
from __future__ import annotations

import logging
import posixpath
import subprocess
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .errors import HandlerError
from .events import FileInfo

logger = logging.getLogger(__name__)


def log_file(file: FileInfo, level: str = "INFO", message: str = "Hot folder file received") -> Dict[str, Any]:
    """Log the file and report it as processed."""

    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logger.log(log_level, "%s: %s", message, _describe_file(file))
    return {"name": file.name, "size": file.size}


def reject_extensions(file: FileInfo, extensions: Iterable[str] = ()) -> None:
    """Fail files whose extension is listed, so they end up in the errors folder."""

    suffix = posixpath.splitext(file.name)[1].lower()
    rejected = {ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in extensions}
    if suffix in rejected:
        raise HandlerError(f"Extension {suffix} is not accepted")


def run_shell_command(file: FileInfo, command: Optional[str] = None, root: Optional[str] = None) -> int:
    """Execute a templated shell command for the file.

    Placeholders: ``{path}``, ``{name}``, ``{size}``, ``{root}``. When ``root``
    is given (the directory a ``file://`` store is rooted at) ``{path}`` is
    absolute.
    """

    if not command:
        raise HandlerError("run_shell_command requires a 'command' option")

    path = str(Path(root) / file.path) if root else file.path
    values = {
        "path": path,
        "name": file.name,
        "size": file.size,
        "root": root or "",
    }

    try:
        rendered = str(command).format(**values)
    except KeyError as exc:
        raise HandlerError(f"run_shell_command missing placeholder value for {exc}") from exc

    logger.info("Executing shell command for %s: %s", file.name, rendered)
    try:
        subprocess.run(rendered, shell=True, check=True)
    except subprocess.CalledProcessError as exc:
        raise HandlerError(f"Shell command failed (exit {exc.returncode}): {rendered}") from exc
    return 0


def _describe_file(file: FileInfo) -> str:
    details = [f"name={file.name}", f"path={file.path}", f"size={file.size}"]
    if file.modified is not None:
        details.append(f"modified={file.modified}")
    return ", ".join(details)
