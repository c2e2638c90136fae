"""Configuration models for raptor-deploy.

Provides the Pydantic v2 settings model shared by every helper. Values come
from the process environment, which azd populates for hooks and GitHub
Actions populates from repository variables, so the same command works in
``azd up`` and in CI.

Key Concepts:
    DeploySettings: Azure environment identity (env name, resource group,
        registries, location, subscription) plus helper knobs (services,
        RBAC propagation delay, abbreviations file).
        Uses ``AZURE_*``/``RAPTOR_*`` env vars via ``from_env()``.

Architecture Decisions:
    - from_env() classmethod: Explicit env-var parsing rather than
      ``pydantic-settings``.
    - Override precedence: kwargs > env vars > field defaults.
    - Derived names (resource group, ACR name) are properties, so an unset
      value can still be reported as missing by ``require()``.

Tags:
    config, settings, pydantic, azd, environment
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from raptor_deploy import naming
from raptor_deploy.errors import MissingConfigError


class DeploySettings(BaseModel):
    """Settings for one azd environment.

    Example::

        settings = DeploySettings(environment="dev", acr_name="ngraptordev")
        settings.acr_domain  # "ngraptordev.azurecr.io"
    """

    environment: str = Field(default="", description="azd environment name (AZURE_ENV_NAME)")
    resource_group: str = Field(default="", description="Target resource group")
    acr_name: str = Field(default="", description="Target Azure Container Registry name")
    source_acr_name: str = Field(default="", description="Source ACR for promotions")
    acr_resource_group: str = Field(default="", description="Resource group holding the ACR")
    location: str = Field(default="", description="Azure region")
    subscription_id: str = Field(default="", description="Azure subscription id")
    key_vault_name: str = Field(default="", description="Key Vault name override")

    services: list[str] = Field(
        default_factory=lambda: list(naming.DEFAULT_SERVICES),
        description="Service keys whose images are managed",
    )
    rbac_propagation_seconds: float = Field(
        default=15.0,
        description="Wait after a new AcrPull assignment before the app pulls",
    )
    abbreviations_file: Path = Field(
        default=Path("infra/abbreviations.json"),
        description="azd abbreviations.json used for resource prefixes",
    )

    @field_validator("services", mode="before")
    @classmethod
    def _split_services(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [s.strip() for s in value.split(",") if s.strip()]
        return value

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def acr_domain(self) -> str:
        return naming.acr_domain(self.acr_name) if self.acr_name else ""

    @property
    def effective_resource_group(self) -> str:
        """Configured resource group, or the conventional default."""
        if self.resource_group:
            return self.resource_group
        return naming.default_resource_group(self.environment) if self.environment else ""

    @property
    def acr_target_resource_group(self) -> str:
        return self.acr_resource_group or self.effective_resource_group

    def app_name(self, service: str, environment: str | None = None) -> str:
        return naming.container_app_name(environment or self.environment, service)

    def repository(self, service: str, environment: str | None = None) -> str:
        return naming.acr_repository(service, environment or self.environment)

    def require(self, *fields: str) -> None:
        """Raise :class:`MissingConfigError` naming the env vars of unset fields."""
        missing = [ENV_MAP[f] for f in fields if not getattr(self, f)]
        if missing:
            raise MissingConfigError(missing)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls, **overrides: Any) -> DeploySettings:
        """Create settings from AZURE_* / RAPTOR_* environment variables."""
        values: dict[str, Any] = {}
        for field_name, env_var in ENV_MAP.items():
            env_val = os.environ.get(env_var)
            if env_val is None or env_val == "":
                continue
            if field_name == "rbac_propagation_seconds":
                values[field_name] = float(env_val)
            elif field_name == "abbreviations_file":
                values[field_name] = Path(env_val)
            else:
                values[field_name] = env_val
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


ENV_MAP: dict[str, str] = {
    "environment": "AZURE_ENV_NAME",
    "resource_group": "AZURE_RESOURCE_GROUP",
    "acr_name": "AZURE_ACR_NAME",
    "source_acr_name": "AZURE_ACR_NAME_SRC",
    "acr_resource_group": "AZURE_ACR_RESOURCE_GROUP",
    "location": "AZURE_LOCATION",
    "subscription_id": "AZURE_SUBSCRIPTION_ID",
    "key_vault_name": "KEY_VAULT_NAME",
    "services": "RAPTOR_SERVICES",
    "rbac_propagation_seconds": "RAPTOR_RBAC_PROPAGATION_SECONDS",
    "abbreviations_file": "RAPTOR_ABBREVIATIONS_FILE",
}
