"""
Logging setup for the CLI.

``configure_logging`` runs once per invocation from the root command. Level
and format come from ``--log-level``/``--log-format`` or, when omitted,
``RAPTOR_LOG_LEVEL`` (default INFO) and ``RAPTOR_LOG_FORMAT`` (``console``
or ``json``, default console).

Everything goes to stderr; stdout and ``$GITHUB_OUTPUT`` belong to azd
hooks and GitHub Actions.
"""

import logging
import os
import sys
from typing import Literal

import structlog
from structlog.types import Processor

from raptor_deploy.logging.context import add_context_processor

LEVEL_ENV = "RAPTOR_LOG_LEVEL"
FORMAT_ENV = "RAPTOR_LOG_FORMAT"

# Libraries that log each request at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore")


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stderr.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
    format: Literal["json", "console"] | None = None,
) -> None:
    """
    Route structlog through stdlib logging on stderr.

    Args:
        level: Overrides RAPTOR_LOG_LEVEL
        format: Overrides RAPTOR_LOG_FORMAT
    """
    log_level = (level or os.environ.get(LEVEL_ENV, "INFO")).upper()
    log_format = (format or os.environ.get(FORMAT_ENV, "console")).lower()
    numeric_level = getattr(logging, log_level, logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_context_processor,
            structlog.processors.format_exc_info,
            structlog.processors.StackInfoRenderer(),
            _renderer(log_format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level, force=True)
    logging.getLogger("raptor_deploy").setLevel(numeric_level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
