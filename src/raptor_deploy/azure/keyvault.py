"""Key Vault provisioning ahead of ``azd provision``.

The vault is created outside Bicep so it survives ``azd down``/``azd up``
cycles: with purge protection on, a vault deleted by ``azd down`` stays
soft-deleted for the retention period and Bicep cannot recreate a vault
of the same name. The preprovision hook therefore recovers it instead.

Key Concepts:
    ensure_keyvault: exists -> done; soft-deleted -> recover;
        otherwise create with access-policy authorization, grant the
        signed-in principal secret permissions and seed known secrets.
    recover_keyvault: Classifies ``az keyvault show-deleted`` and recovers
        when possible. Advisory only: it never fails a deployment.

Tags:
    key-vault, soft-delete, recovery, preprovision
"""

from __future__ import annotations

import json
import os
from enum import Enum

from raptor_deploy import naming
from raptor_deploy.azure.runner import AzdEnvironment, AzureCli
from raptor_deploy.config import DeploySettings
from raptor_deploy.errors import AzureCliError, ErrorContext, PreconditionError
from raptor_deploy.logging import get_logger
from raptor_deploy.results import KeyVaultResult

logger = get_logger(__name__)

SECRET_ENV_VARS: dict[str, str] = {
    "oidc-client-secret": "OIDC_CLIENT_SECRET",
    "jwt-secret": "JWT_SECRET",
    "aad-client-secret": "AZURE_AD_CLIENT_SECRET",
}

SECRET_PERMISSIONS = ["get", "list", "set", "delete"]


class DeletedVaultState(str, Enum):
    SOFT_DELETED = "soft_deleted"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


def secrets_from_env() -> dict[str, str]:
    """Seed secrets available in the environment, keyed by vault secret name."""
    return {name: os.environ[var] for name, var in SECRET_ENV_VARS.items() if os.environ.get(var)}


def resolve_vault_name(settings: DeploySettings, az: AzureCli) -> str:
    if settings.key_vault_name:
        return settings.key_vault_name
    subscription_id = settings.subscription_id or az.tsv(["account", "show", "--query", "id"])
    prefix = naming.key_vault_prefix(settings.abbreviations_file)
    return naming.key_vault_name(settings.environment, subscription_id, prefix)


def signed_in_object_id(az: AzureCli) -> str:
    """Object id of the signed-in user, or of the service principal in CI."""
    object_id = az.tsv(["ad", "signed-in-user", "show", "--query", "id"])
    if object_id:
        return object_id
    if az.tsv(["account", "show", "--query", "user.type"]) == "servicePrincipal":
        app_id = az.tsv(["account", "show", "--query", "user.name"])
        if app_id:
            return az.tsv(["ad", "sp", "show", "--id", app_id, "--query", "id"])
    return ""


def ensure_keyvault(
    settings: DeploySettings,
    az: AzureCli,
    azd: AzdEnvironment,
    secrets: dict[str, str] | None = None,
) -> KeyVaultResult:
    """Make sure the environment's Key Vault exists and record its name."""
    settings.require("environment", "location")
    resource_group = settings.effective_resource_group
    name = resolve_vault_name(settings, az)
    azd.set_value("KEY_VAULT_NAME", name)
    result = KeyVaultResult(name=name, resource_group=resource_group)

    if az.succeeds(["keyvault", "show", "--name", name, "--resource-group", resource_group]):
        result.message = f"Key Vault '{name}' already exists"
        logger.info("keyvault.exists", vault=name)
        return result

    if az.succeeds(["keyvault", "show-deleted", "--name", name]):
        logger.warning("keyvault.soft_deleted", vault=name)
        if not az.succeeds(["keyvault", "recover", "--name", name, "--location", settings.location]):
            raise PreconditionError(
                f"Key Vault '{name}' is soft-deleted and could not be recovered (may lack permissions). "
                "Wait for auto-purge (7-90 days), ask an admin to purge it, "
                "or set KEY_VAULT_NAME to a different name in the azd environment.",
                context=ErrorContext(environment=settings.environment, resource_group=resource_group),
            )
        result.action = "recovered"
        result.message = "Key Vault recovered successfully"
        logger.info("keyvault.recovered", vault=name)
        return result

    result.retention_days = naming.key_vault_retention_days(settings.environment)
    logger.info("keyvault.create", vault=name, retention_days=result.retention_days)
    try:
        az.execute([
            "keyvault", "create",
            "--name", name,
            "--resource-group", resource_group,
            "--location", settings.location,
            "--retention-days", str(result.retention_days),
            "--enable-purge-protection", "true",
            "--enable-rbac-authorization", "false",
        ])
    except AzureCliError as exc:
        raise exc.with_context(resource_group=resource_group, environment=settings.environment)
    result.action = "created"

    object_id = signed_in_object_id(az)
    if not object_id:
        result.warnings.append("Could not determine current identity; skipping access policy assignment")
    elif not az.succeeds([
        "keyvault", "set-policy",
        "--name", name,
        "--object-id", object_id,
        "--secret-permissions", *SECRET_PERMISSIONS,
    ]):
        result.warnings.append("Failed to set access policies")

    for secret_name, value in (secrets or {}).items():
        if az.succeeds(["keyvault", "secret", "set", "--vault-name", name, "--name", secret_name, "--value", value]):
            result.secrets_set.append(secret_name)
        else:
            result.warnings.append(f"Failed to create {secret_name}")

    for warning in result.warnings:
        logger.warning("keyvault.warning", vault=name, detail=warning)
    result.message = f"Key Vault created successfully: {name}"
    return result


def classify_deleted(output: str) -> DeletedVaultState:
    if "scheduledPurgeDate" in output:
        return DeletedVaultState.SOFT_DELETED
    if "AuthorizationFailed" in output:
        return DeletedVaultState.UNAUTHORIZED
    lowered = output.lower()
    if "not found" in lowered or "resourcenotfound" in lowered:
        return DeletedVaultState.NOT_FOUND
    return DeletedVaultState.UNKNOWN


def _purge_date(output: str) -> str:
    try:
        return json.loads(output).get("properties", {}).get("scheduledPurgeDate") or "Unknown"
    except (ValueError, AttributeError):
        return "Unknown"


def recover_keyvault(settings: DeploySettings, az: AzureCli) -> KeyVaultResult:
    """Recover a soft-deleted vault if there is one. Never raises for Azure answers."""
    name = resolve_vault_name(settings, az)
    result = KeyVaultResult(name=name, resource_group=settings.effective_resource_group, action="none")

    args = ["keyvault", "show-deleted", "--name", name]
    if settings.location:
        args += ["--location", settings.location]
    output = az.combined(args)
    state = classify_deleted(output)
    logger.info("keyvault.deleted_state", vault=name, state=state.value)

    if state is DeletedVaultState.SOFT_DELETED:
        purge_date = _purge_date(output)
        recover = ["keyvault", "recover", "--name", name]
        if settings.location:
            recover += ["--location", settings.location]
        if az.succeeds(recover):
            result.action = "recovered"
            result.message = f"Recovered Key Vault {name} (scheduled purge date: {purge_date})"
        else:
            result.action = "recovering"
            result.warnings.append("Recovery initiated but may take a few moments; retry in 1-2 minutes if deployment fails")
            result.message = f"Recovery of {name} pending (scheduled purge date: {purge_date})"
    elif state is DeletedVaultState.UNAUTHORIZED:
        result.warnings.append(
            f"Cannot check soft-deleted vaults due to permissions. If deployment fails, ask an admin to run "
            f"'az keyvault recover --name {name}' or wait for auto-purge."
        )
        result.message = "soft-delete state unknown (unauthorized)"
    elif state is DeletedVaultState.NOT_FOUND:
        result.message = "No soft-deleted Key Vault found; deployment will create a new vault"
    else:
        result.message = "Could not determine vault status; continuing"
    return result
