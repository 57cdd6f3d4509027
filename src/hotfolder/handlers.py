"""Handler specifications and dynamic loading.

A handler is either a Python callable supplied directly or a
``module``/``function`` pair (plus extra arguments) named in configuration.
Both are invoked as ``fn(file, *args, **kwargs)``; returning normally means
success and raising means failure.
"""
from __future__ import annotations

import importlib
import inspect
import logging
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from .errors import ConfigError
from .events import FileInfo

logger = logging.getLogger(__name__)

HandlerCallback = Callable[..., Any]


@dataclass(frozen=True)
class DirectHandler:
    """A callable passed in by application code."""

    callback: HandlerCallback

    def invoke(self, file: FileInfo) -> Any:
        return self.callback(file)

    def describe(self) -> str:
        module = getattr(self.callback, "__module__", None) or "<unknown>"
        name = getattr(self.callback, "__qualname__", None) or repr(self.callback)
        return f"{module}.{name}/1"


@dataclass(frozen=True)
class DescribedHandler:
    """A handler named by module path and function, loaded on demand."""

    module: str
    function: str
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)

    def resolve(self) -> HandlerCallback:
        module = _import_module(self.module)
        try:
            callback = getattr(module, self.function)
        except AttributeError as exc:
            raise ConfigError(f"Handler function '{self.function}' not found in {self.module}") from exc
        if not callable(callback):
            raise ConfigError(f"Handler attribute '{self.function}' in {self.module} is not callable")
        return callback

    def invoke(self, file: FileInfo) -> Any:
        return self.resolve()(file, *self.args, **self.kwargs)

    def describe(self) -> str:
        return f"{self.module}.{self.function}/{len(self.args) + 1}"


Handler = Union[DirectHandler, DescribedHandler]


def build_handler(raw: Any) -> Handler:
    """Turn a callable, a handler object or a mapping into a validated handler."""

    if isinstance(raw, (DirectHandler, DescribedHandler)):
        handler = raw
    elif callable(raw):
        handler = DirectHandler(raw)
    elif isinstance(raw, Mapping):
        handler = _handler_from_mapping(raw)
    elif raw is None:
        raise ConfigError("handler is required")
    else:
        raise ConfigError("handler must be a callable or a {module, function, args} mapping")

    validate_handler(handler)
    return handler


def validate_handler(handler: Handler) -> None:
    """Check once that the handler can be called with a FileInfo and its args."""

    if isinstance(handler, DescribedHandler):
        callback = handler.resolve()
        args: Tuple[Any, ...] = handler.args
        kwargs: Dict[str, Any] = handler.kwargs
    else:
        callback = handler.callback
        args, kwargs = (), {}

    try:
        signature = inspect.signature(callback)
    except (TypeError, ValueError):
        logger.debug("Cannot inspect signature of %s; skipping arity check", handler.describe())
        return

    try:
        signature.bind(None, *args, **kwargs)
    except TypeError as exc:
        raise ConfigError(f"Handler {handler.describe()} does not accept (file, *args): {exc}") from exc


def _handler_from_mapping(raw: Mapping[str, Any]) -> DescribedHandler:
    module = raw.get("module")
    function = raw.get("function")
    if not isinstance(module, str) or not isinstance(function, str):
        raise ConfigError("handler must include 'module' and 'function' strings")

    args = raw.get("args") or []
    if not isinstance(args, (list, tuple)):
        raise ConfigError("handler.args must be a list if provided")

    options: Optional[Any] = raw.get("options")
    if options is None:
        options = {}
    if not isinstance(options, Mapping):
        raise ConfigError("handler.options must be a mapping if provided")

    return DescribedHandler(module=module, function=function, args=tuple(args), kwargs=dict(options))


def _import_module(module_path: str) -> ModuleType:
    try:
        return importlib.import_module(module_path)
    except ImportError as exc:
        raise ConfigError(f"Unable to import handler module '{module_path}'") from exc
