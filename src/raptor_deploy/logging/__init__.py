"""
raptor-deploy logging - structured, context-aware logging.

Usage:
    from raptor_deploy.logging import configure_logging, get_logger, log_scope

    configure_logging()
    log = get_logger(__name__)

    with log_scope(environment="dev", service="frontend"):
        log.info("acr.binding.exists", server="ngraptordev.azurecr.io")
"""

from raptor_deploy.logging.config import configure_logging
from raptor_deploy.logging.context import (
    LogContext,
    clear_context,
    get_context,
    get_logger,
    log_scope,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "log_scope",
    "clear_context",
    "get_context",
    "LogContext",
]
