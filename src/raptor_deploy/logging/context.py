"""
Deployment context for log entries.

``log_scope`` layers the azd environment, service and hook step over the
current context for the duration of a block; ``add_context_processor``
copies whatever is in scope into each structlog event.

Usage:
    with log_scope(service="frontend", environment="dev", step="deploy"):
        logger.info("containerapp.update")   # carries all three keys
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, fields, replace
from typing import Any

import structlog


@dataclass(frozen=True)
class LogContext:
    environment: str | None = None
    service: str | None = None
    step: str | None = None

    def to_dict(self) -> dict[str, str]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


_EMPTY = LogContext()
_current: ContextVar[LogContext] = ContextVar("raptor_log_context", default=_EMPTY)


def get_context() -> LogContext:
    return _current.get()


def clear_context() -> None:
    _current.set(_EMPTY)


@contextmanager
def log_scope(**values: str | None) -> Iterator[LogContext]:
    """Override context fields until the block exits.

    ``None`` keeps the value from the enclosing scope, so a hook step nested
    in a deploy keeps its ``service``.
    """
    scoped = replace(get_context(), **{k: v for k, v in values.items() if v is not None})
    token = _current.set(scoped)
    try:
        yield scoped
    finally:
        _current.reset(token)


def add_context_processor(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor; keys passed to the log call win over scoped ones."""
    for key, value in get_context().to_dict().items():
        event_dict.setdefault(key, value)
    return event_dict


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)
