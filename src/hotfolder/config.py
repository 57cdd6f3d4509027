"""Configuration model, validation and YAML loading for the hot folder engine."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

import yaml  # type: ignore

from .errors import ConfigError
from .handlers import DescribedHandler, DirectHandler, Handler, build_handler

logger = logging.getLogger(__name__)

NamePattern = Union[str, "re.Pattern[str]"]

REGEX_PREFIX = "re:"
DEFAULT_EXCLUDE_PATTERNS: Tuple[NamePattern, ...] = (".*",)
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class FolderConfig:
    """Folder names for the four workflow roles, relative to ``base_path``."""

    incoming: str = "incoming"
    processing: str = "processing"
    success: str = "success"
    errors: str = "errors"

    def as_dict(self) -> Dict[str, str]:
        return {
            "incoming": self.incoming,
            "processing": self.processing,
            "success": self.success,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class PollIntervalPolicy:
    initial_ms: int = 2_000
    max_ms: int = 30_000
    backoff_factor: float = 1.5

    def interval_after(self, empty_polls: int) -> int:
        """Interval after ``empty_polls`` consecutive polls that found nothing (or failed)."""

        interval = self.initial_ms * self.backoff_factor ** empty_polls
        return int(min(round(interval), self.max_ms))


@dataclass(frozen=True)
class FilterConfig:
    """File selection rules.

    Patterns are shell globs when given as strings and regular expressions
    when given as compiled patterns.
    """

    name_patterns: Tuple[NamePattern, ...] = ()
    exclude_patterns: Tuple[NamePattern, ...] = DEFAULT_EXCLUDE_PATTERNS
    min_size: int = 0
    max_size: Optional[int] = None
    mime_types: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StabilityConfig:
    required_checks: int = 2
    duration_ms: int = 5_000
    grace_ms: int = 60_000


@dataclass(frozen=True)
class EngineConfig:
    """Everything one engine instance needs; validated by :func:`validate_config`."""

    handler: Handler
    connection: Optional[str] = None
    url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    base_path: str = ""
    folders: FolderConfig = field(default_factory=FolderConfig)
    poll_interval: PollIntervalPolicy = field(default_factory=PollIntervalPolicy)
    filters: FilterConfig = field(default_factory=FilterConfig)
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    handler_timeout_ms: int = 60_000
    max_retries: int = 3
    retry_backoff_base_ms: int = 1_000
    auto_create_folders: bool = True

    def folder_path(self, role: str) -> str:
        """``base_path`` joined with the folder name for ``role``."""

        name = self.folders.as_dict()[role]
        base = self.base_path.strip("/")
        return f"{base}/{name}" if base else name

    def all_folder_paths(self) -> Dict[str, str]:
        return {role: self.folder_path(role) for role in self.folders.as_dict()}


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class AppConfig:
    """Top-level configuration structure."""

    engine: EngineConfig
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def validate_config(config: EngineConfig) -> EngineConfig:
    """Raise :class:`ConfigError` unless ``config`` is internally consistent.

    A bare callable or mapping in ``handler`` is normalized to a validated
    handler; the (possibly replaced) config is returned.
    """

    if not isinstance(config.handler, (DirectHandler, DescribedHandler)):
        config = replace(config, handler=build_handler(config.handler))

    has_url = any(value is not None for value in (config.url, config.username, config.password))
    if config.connection is not None and has_url:
        raise ConfigError("Provide either a connection name or url+username+password, not both")
    if config.connection is None:
        if not has_url:
            raise ConfigError("Must provide either connection name or url+username+password")
        for name in ("url", "username", "password"):
            if not isinstance(getattr(config, name), str):
                raise ConfigError(f"{name} must be a string when connecting by URL")
        if not urlparse(config.url).scheme:
            raise ConfigError(f"url must include a scheme (e.g. file://): {config.url}")
    elif not isinstance(config.connection, str) or not config.connection:
        raise ConfigError("connection must be a non-empty string")

    for role, name in config.folders.as_dict().items():
        if not isinstance(name, str) or not name.strip("/"):
            raise ConfigError(f"folders.{role} must be a non-empty string")

    poll = config.poll_interval
    if poll.initial_ms <= 0:
        raise ConfigError("poll_interval.initial_ms must be positive")
    if poll.max_ms < poll.initial_ms:
        raise ConfigError("poll_interval.max_ms must be >= poll_interval.initial_ms")
    if poll.backoff_factor <= 1.0:
        raise ConfigError("poll_interval.backoff_factor must be greater than 1.0")

    filters = config.filters
    if filters.min_size < 0:
        raise ConfigError("filters.min_size must not be negative")
    if filters.max_size is not None and filters.max_size < filters.min_size:
        raise ConfigError("filters.max_size must be >= filters.min_size")

    if config.stability.required_checks < 1:
        raise ConfigError("stability.required_checks must be at least 1")
    if config.stability.duration_ms < 0 or config.stability.grace_ms < 0:
        raise ConfigError("stability durations must not be negative")

    if config.handler_timeout_ms <= 0:
        raise ConfigError("handler_timeout_ms must be positive")
    if config.max_retries < 0:
        raise ConfigError("max_retries must not be negative")
    if config.retry_backoff_base_ms < 0:
        raise ConfigError("retry_backoff_base_ms must not be negative")

    return config


def build_config(raw: Mapping[str, Any]) -> EngineConfig:
    """Build and validate an :class:`EngineConfig` from a plain mapping."""

    if not isinstance(raw, Mapping):
        raise ConfigError("Engine configuration must be a mapping")

    folders_raw = _ensure_mapping(raw.get("folders"), "folders")
    poll_raw = _ensure_mapping(raw.get("poll_interval"), "poll_interval")
    filters_raw = _ensure_mapping(raw.get("filters"), "filters")
    stability_raw = _ensure_mapping(raw.get("stability"), "stability")

    defaults = FolderConfig()
    folders = FolderConfig(
        incoming=_ensure_str(folders_raw.get("incoming", defaults.incoming), "folders.incoming"),
        processing=_ensure_str(folders_raw.get("processing", defaults.processing), "folders.processing"),
        success=_ensure_str(folders_raw.get("success", defaults.success), "folders.success"),
        errors=_ensure_str(folders_raw.get("errors", defaults.errors), "folders.errors"),
    )

    poll = PollIntervalPolicy(
        initial_ms=_ensure_int(poll_raw.get("initial_ms", 2_000), "poll_interval.initial_ms"),
        max_ms=_ensure_int(poll_raw.get("max_ms", 30_000), "poll_interval.max_ms"),
        backoff_factor=_ensure_float(poll_raw.get("backoff_factor", 1.5), "poll_interval.backoff_factor"),
    )

    if "exclude_patterns" in filters_raw:
        exclude = _ensure_patterns(filters_raw.get("exclude_patterns"), "filters.exclude_patterns")
    else:
        exclude = DEFAULT_EXCLUDE_PATTERNS
    max_size_raw = filters_raw.get("max_size")
    filters = FilterConfig(
        name_patterns=_ensure_patterns(filters_raw.get("name_patterns"), "filters.name_patterns"),
        exclude_patterns=exclude,
        min_size=_ensure_int(filters_raw.get("min_size", 0), "filters.min_size"),
        max_size=None if max_size_raw is None else _ensure_int(max_size_raw, "filters.max_size"),
        mime_types=tuple(_ensure_str_list(filters_raw.get("mime_types"), "filters.mime_types")),
    )

    stability = StabilityConfig(
        required_checks=_ensure_int(stability_raw.get("required_checks", 2), "stability.required_checks"),
        duration_ms=_ensure_int(stability_raw.get("duration_ms", 5_000), "stability.duration_ms"),
        grace_ms=_ensure_int(stability_raw.get("grace_ms", 60_000), "stability.grace_ms"),
    )

    auto_create = raw.get("auto_create_folders", True)
    if not isinstance(auto_create, bool):
        raise ConfigError("auto_create_folders must be a boolean")

    config = EngineConfig(
        handler=build_handler(raw.get("handler")),
        connection=_optional_str(raw.get("connection"), "connection"),
        url=_optional_str(raw.get("url"), "url"),
        username=_optional_str(raw.get("username"), "username"),
        password=_optional_str(raw.get("password"), "password"),
        base_path=_ensure_str(raw.get("base_path", "") or "", "base_path"),
        folders=folders,
        poll_interval=poll,
        filters=filters,
        stability=stability,
        handler_timeout_ms=_ensure_int(raw.get("handler_timeout_ms", 60_000), "handler_timeout_ms"),
        max_retries=_ensure_int(raw.get("max_retries", 3), "max_retries"),
        retry_backoff_base_ms=_ensure_int(raw.get("retry_backoff_base_ms", 1_000), "retry_backoff_base_ms"),
        auto_create_folders=auto_create,
    )
    return validate_config(config)


def load_config(path: Path) -> AppConfig:
    """Load and validate the YAML configuration file."""

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse YAML configuration: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    engine_raw = data.get("hotfolder")
    if not isinstance(engine_raw, dict):
        raise ConfigError("'hotfolder' section must be a mapping")

    engine_raw = dict(engine_raw)
    if isinstance(engine_raw.get("url"), str):
        engine_raw["url"] = _resolve_file_url(engine_raw["url"], config_path=path)

    engine = build_config(engine_raw)
    logging_cfg = _parse_logging_config(data.get("logging"))
    logger.info(
        "Loaded hot folder config: handler=%s incoming=%s",
        engine.handler.describe(),
        engine.folder_path("incoming"),
    )
    return AppConfig(engine=engine, logging=logging_cfg)


def _parse_logging_config(raw: Any) -> LoggingConfig:
    if raw is None:
        return LoggingConfig()
    if not isinstance(raw, dict):
        raise ConfigError("'logging' section must be a mapping")
    level = str(raw.get("level", "INFO")).upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of: {', '.join(LOG_LEVELS)}")
    return LoggingConfig(level=level)


def _resolve_file_url(url: str, *, config_path: Path) -> str:
    parsed = urlparse(url)
    if parsed.scheme != "file":
        return url
    location = Path(parsed.netloc + parsed.path)
    if not location.is_absolute():
        location = (config_path.parent / location).resolve()
    return location.as_uri()


def _ensure_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{field_name} must be a mapping")
    return value


def _ensure_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{field_name} must be a string")
    return value


def _optional_str(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    return _ensure_str(value, field_name)


def _ensure_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{field_name} must be an integer")
    return value


def _ensure_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{field_name} must be numeric")
    return float(value)


def _ensure_str_list(value: Any, field_name: str) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{field_name} must be a list of strings")
    items = []
    for elem in value:
        if not isinstance(elem, str):
            raise ConfigError(f"{field_name} must contain only strings")
        items.append(elem)
    return items


def _ensure_patterns(value: Any, field_name: str) -> Tuple[NamePattern, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, re.Pattern)):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{field_name} must be a list of patterns")

    patterns = []
    for elem in value:
        if isinstance(elem, re.Pattern):
            patterns.append(elem)
        elif isinstance(elem, str) and elem.startswith(REGEX_PREFIX):
            try:
                patterns.append(re.compile(elem[len(REGEX_PREFIX):]))
            except re.error as exc:
                raise ConfigError(f"{field_name} has an invalid regular expression {elem!r}: {exc}") from exc
        elif isinstance(elem, str):
            patterns.append(elem)
        else:
            raise ConfigError(f"{field_name} must contain glob strings or regular expressions")
    return tuple(patterns)
