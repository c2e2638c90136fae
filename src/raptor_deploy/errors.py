"""
Structured error types for raptor-deploy.

Every failure raised by an operation is a :class:`DeployError` carrying a
category, structured context and an optional chained cause. Workflows that
must report a boolean outcome to CI (``didFastPath``) catch ``DeployError``
at their boundary; everything else propagates to the CLI, which maps it to
exit code 1.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        DeployError                            │
        │          (category, context, cause)                           │
        ├──────────────────────────────────────────────────────────────┤
        │  ConfigError          AzureCliError        PreconditionError  │
        │  (CONFIG)             (AZURE_CLI)          (PRECONDITION)     │
        │      │                    │                     │             │
        │  MissingConfigError   CommandNotFoundError  IdentityError     │
        │                                                               │
        │  RegistryError        PermissionPreflightError  Notification  │
        │  (REGISTRY)           (AUTH)                    Error (NETWORK)│
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> err = MissingConfigError(["AZURE_ACR_NAME"])
    >>> err.category
    <ErrorCategory.CONFIG: 'CONFIG'>
    >>> err.to_dict()["context"]["keys"]
    ['AZURE_ACR_NAME']

Tags:
    error-handling, exception-hierarchy, azure-cli, raptor-deploy
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and reporting."""

    CONFIG = "CONFIG"
    AZURE_CLI = "AZURE_CLI"
    REGISTRY = "REGISTRY"
    NETWORK = "NETWORK"
    AUTH = "AUTH"
    PRECONDITION = "PRECONDITION"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to a :class:`DeployError`."""

    environment: str | None = None
    service: str | None = None
    app_name: str | None = None
    resource_group: str | None = None
    registry: str | None = None
    command: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return only the populated fields."""
        result: dict[str, Any] = {}
        for key in ("environment", "service", "app_name", "resource_group", "registry", "command"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        result.update(self.metadata)
        return result


class DeployError(Exception):
    """Base exception for all raptor-deploy errors."""

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DeployError:
        """Attach context fields; unknown keys land in ``metadata``."""
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION
# =============================================================================


class ConfigError(DeployError):
    """Invalid or inconsistent configuration."""

    default_category = ErrorCategory.CONFIG


class MissingConfigError(ConfigError):
    """One or more required settings are not set."""

    def __init__(self, keys: list[str], message: str | None = None):
        self.keys = list(keys)
        super().__init__(message or f"Missing required settings: {', '.join(self.keys)}")
        self.context.metadata["keys"] = self.keys


# =============================================================================
# AZURE CLI
# =============================================================================


class AzureCliError(DeployError):
    """A CLI invocation (``az``/``azd``/``sqlcmd``) failed or timed out."""

    default_category = ErrorCategory.AZURE_CLI

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
        cause: Exception | None = None,
    ):
        super().__init__(message, cause=cause)
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr
        if self.command:
            self.context.command = " ".join(self.command)
        if returncode is not None:
            self.context.metadata["returncode"] = returncode


class CommandNotFoundError(AzureCliError):
    """The required CLI binary is not on PATH."""


# =============================================================================
# DOMAIN
# =============================================================================


class PreconditionError(DeployError):
    """A required Azure resource or input is missing or malformed."""

    default_category = ErrorCategory.PRECONDITION


class IdentityError(PreconditionError):
    """No usable managed identity was found on a resource."""


class RegistryError(DeployError):
    """An ACR or OCI registry operation failed."""

    default_category = ErrorCategory.REGISTRY


class PermissionPreflightError(DeployError):
    """The signed-in principal lacks a role required by the deployment."""

    default_category = ErrorCategory.AUTH

    def __init__(self, message: str, *, scope: str, hint: str = ""):
        super().__init__(message)
        self.scope = scope
        self.hint = hint
        self.context.metadata["scope"] = scope
        if hint:
            self.context.metadata["hint"] = hint


class NotificationError(DeployError):
    """A release notification could not be delivered."""

    default_category = ErrorCategory.NETWORK
