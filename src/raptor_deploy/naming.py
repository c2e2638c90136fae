"""Naming conventions shared by the Bicep templates and the deployment helpers.

Every Azure resource name the helpers compute lives here so that the
preprovision hooks, the fast-path deploy and the promotion workflow agree
with ``main.bicep`` on what a resource is called.

Key Concepts:
    Container App: ``{env}-rap-{suffix}`` where the suffix is a short form
        of the service key (``frontend`` -> ``fe``).
    ACR repository: ``raptor/{service}-{env}``; one repository per service
        and environment.
    Image variable: ``SERVICE_{SERVICE}_IMAGE_NAME`` in the azd environment,
        consumed by Bicep as the image to deploy.
    Key Vault: ``{prefix}{env}-{hash}-v10``, where ``hash`` stands in for
        Bicep's ``uniqueString(subscription().id, environmentName)``.

Tags:
    naming, conventions, azure, container-apps, acr, key-vault
"""

from __future__ import annotations

import hashlib
import json
import re
from pathlib import Path

from raptor_deploy.errors import ConfigError, ErrorContext

ACR_DOMAIN_SUFFIX = ".azurecr.io"
REPOSITORY_PREFIX = "raptor"
APP_INFIX = "rap"

FALLBACK_IMAGE = "mcr.microsoft.com/azuredocs/containerapps-helloworld:latest"

COMMIT_TAG_KEY = "raptor.lastCommit"

SERVICE_SUFFIXES: dict[str, str] = {
    "frontend": "fe",
    "backend": "be",
    "processes": "proc",
}

DEFAULT_SERVICES: list[str] = ["frontend", "backend"]

AGGREGATE_SKIP_FLAG = "SKIP_ACR_PULL_ROLE_ASSIGNMENT"

KEY_VAULT_PREFIX_KEY = "keyVaultVaults"
DEFAULT_KEY_VAULT_PREFIX = "kv-"
KEY_VAULT_SUFFIX = "-v10"
PRODUCTION_ENVIRONMENTS = ("prod", "production")


def service_suffix(service: str) -> str:
    """Short form used in Container App names."""
    return SERVICE_SUFFIXES.get(service, service[:3])


def container_app_name(environment: str, service: str) -> str:
    """Container App name for a service, e.g. ``dev-rap-fe``."""
    return f"{environment}-{APP_INFIX}-{service_suffix(service)}".lower()


def acr_repository(service: str, environment: str) -> str:
    """ACR repository for a service in an environment, e.g. ``raptor/frontend-dev``."""
    return f"{REPOSITORY_PREFIX}/{service}-{environment}"


def acr_domain(acr_name: str) -> str:
    """Login server of a registry."""
    return f"{acr_name}{ACR_DOMAIN_SUFFIX}"


def image_variable(service: str) -> str:
    """azd environment key holding a service's image, e.g. ``SERVICE_FRONTEND_IMAGE_NAME``."""
    return f"SERVICE_{service.upper()}_IMAGE_NAME"


def skip_pull_flag(service: str) -> str:
    """Per-service flag telling Bicep not to create the AcrPull assignment."""
    return f"SKIP_{service.upper()}_ACR_PULL_ROLE_ASSIGNMENT"


def default_resource_group(environment: str) -> str:
    return f"rg-raptor-{environment}"


def default_acr_name(environment: str) -> str:
    """Derive a registry name: lower-case alphanumerics only, at most 50 characters."""
    return re.sub(r"[^a-z0-9]", "", f"{environment}-{APP_INFIX}-acr".lower())[:50]


def unique_string(*parts: str) -> str:
    """Deterministic 13-character token approximating Bicep's ``uniqueString``."""
    return hashlib.md5("".join(parts).encode("utf-8")).hexdigest()[:13]


def key_vault_prefix(abbreviations_file: Path | None) -> str:
    """Read the Key Vault abbreviation from ``abbreviations.json`` if present."""
    if abbreviations_file is None or not abbreviations_file.is_file():
        return DEFAULT_KEY_VAULT_PREFIX
    try:
        data = json.loads(abbreviations_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(
            f"Cannot read Key Vault prefix from {abbreviations_file}: {exc}",
            context=ErrorContext(metadata={"file": str(abbreviations_file)}),
            cause=exc,
        ) from exc
    if not isinstance(data, dict):
        raise ConfigError(
            f"{abbreviations_file} must contain a JSON object",
            context=ErrorContext(metadata={"file": str(abbreviations_file)}),
        )
    return data.get(KEY_VAULT_PREFIX_KEY) or DEFAULT_KEY_VAULT_PREFIX


def key_vault_name(
    environment: str,
    subscription_id: str,
    prefix: str = DEFAULT_KEY_VAULT_PREFIX,
) -> str:
    """Key Vault name for an environment, e.g. ``kv-dev-1a2b3c4d5e6f7-v10``."""
    token = f"{environment}-{unique_string(subscription_id, environment)}".lower()
    return f"{prefix}{token}{KEY_VAULT_SUFFIX}"


def key_vault_retention_days(environment: str) -> int:
    """Soft-delete retention: 90 days for production, 7 elsewhere."""
    return 90 if environment.lower() in PRODUCTION_ENVIRONMENTS else 7
