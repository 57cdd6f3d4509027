"""Name, size and type rules applied to files listed in the incoming folder."""
from __future__ import annotations

import posixpath
from fnmatch import fnmatch
from typing import Dict, Iterable, List, Sequence

from .config import FilterConfig, NamePattern
from .events import FileInfo

DEFAULT_MIME_TYPE = "application/octet-stream"

_MIME_TYPES: Dict[str, str] = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".json": "application/json",
    ".xml": "application/xml",
    ".zip": "application/zip",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}


def mime_type_from_extension(filename: str) -> str:
    """Guess a MIME type from the file extension (case-insensitive)."""

    extension = posixpath.splitext(filename)[1].lower()
    return _MIME_TYPES.get(extension, DEFAULT_MIME_TYPE)


def passes(file: FileInfo, filters: FilterConfig) -> bool:
    """Return True when ``file`` satisfies every configured rule."""

    if filters.name_patterns and not _matches_any(file.name, filters.name_patterns):
        return False
    if filters.exclude_patterns and _matches_any(file.name, filters.exclude_patterns):
        return False
    if file.size < filters.min_size:
        return False
    if filters.max_size is not None and file.size > filters.max_size:
        return False
    if filters.mime_types and not _mime_allowed(file.name, filters.mime_types):
        return False
    return True


def filter_files(files: Iterable[FileInfo], filters: FilterConfig) -> List[FileInfo]:
    return [file for file in files if passes(file, filters)]


def _matches_any(name: str, patterns: Sequence[NamePattern]) -> bool:
    for pattern in patterns:
        if isinstance(pattern, str):
            if fnmatch(name, pattern):
                return True
        elif pattern.search(name):
            return True
    return False


def _mime_allowed(name: str, allowed: Sequence[str]) -> bool:
    detected = mime_type_from_extension(name)
    for allowed_type in allowed:
        main_type, _, sub_type = allowed_type.partition("/")
        if sub_type == "*":
            if detected.startswith(main_type + "/"):
                return True
        elif detected == allowed_type:
            return True
    return False
