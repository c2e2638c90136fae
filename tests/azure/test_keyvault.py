"""Tests for raptor_deploy.azure.keyvault - creation, recovery and secret seeding."""

from __future__ import annotations

import json

import pytest

from raptor_deploy import naming
from raptor_deploy.azure.keyvault import (
    DeletedVaultState,
    classify_deleted,
    ensure_keyvault,
    recover_keyvault,
    resolve_vault_name,
    secrets_from_env,
    signed_in_object_id,
)
from raptor_deploy.config import DeploySettings
from raptor_deploy.errors import AzureCliError, MissingConfigError, PreconditionError

VAULT = "kv-dev-custom"


@pytest.fixture
def kv_settings(settings) -> DeploySettings:
    settings.key_vault_name = VAULT
    return settings


class TestNaming:
    def test_explicit_name(self, az, kv_settings):
        assert resolve_vault_name(kv_settings, az) == VAULT

    def test_derived_name(self, az, settings, tmp_path):
        settings.abbreviations_file = tmp_path / "none.json"
        expected = naming.key_vault_name("dev", settings.subscription_id)
        assert resolve_vault_name(settings, az) == expected
        assert az.calls == []

    def test_subscription_from_account(self, az, settings, tmp_path):
        settings.subscription_id = ""
        settings.abbreviations_file = tmp_path / "none.json"
        az.on("account show --query id", stdout="sub-9")
        assert resolve_vault_name(settings, az) == naming.key_vault_name("dev", "sub-9")


class TestSecretsFromEnv:
    def test_only_set_values(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "j")
        monkeypatch.setenv("OIDC_CLIENT_SECRET", "")
        assert secrets_from_env() == {"jwt-secret": "j"}


class TestSignedInObjectId:
    def test_user(self, az):
        az.on("ad signed-in-user show", stdout="user-oid")
        assert signed_in_object_id(az) == "user-oid"

    def test_service_principal(self, az):
        az.on("account show --query user.type", stdout="servicePrincipal")
        az.on("account show --query user.name", stdout="app-id")
        az.on("ad sp show --id app-id", stdout="sp-oid")
        assert signed_in_object_id(az) == "sp-oid"

    def test_unknown(self, az):
        assert signed_in_object_id(az) == ""


class TestEnsureKeyvault:
    def test_requires_environment_and_location(self, az, azd):
        with pytest.raises(MissingConfigError) as exc_info:
            ensure_keyvault(DeploySettings(), az, azd)
        assert exc_info.value.keys == ["AZURE_ENV_NAME", "AZURE_LOCATION"]

    def test_existing(self, az, azd, kv_settings):
        az.on(f"keyvault show --name {VAULT}")
        result = ensure_keyvault(kv_settings, az, azd)
        assert result.action == "exists"
        assert azd.values["KEY_VAULT_NAME"] == VAULT
        assert not az.called("keyvault create")

    def test_recovers_soft_deleted(self, az, azd, kv_settings):
        az.on(f"keyvault show-deleted --name {VAULT}")
        az.on(f"keyvault recover --name {VAULT} --location eastus2")
        result = ensure_keyvault(kv_settings, az, azd)
        assert result.action == "recovered"
        assert not az.called("keyvault create")

    def test_unrecoverable(self, az, azd, kv_settings):
        az.on(f"keyvault show-deleted --name {VAULT}")
        with pytest.raises(PreconditionError, match="could not be recovered"):
            ensure_keyvault(kv_settings, az, azd)

    def test_creates_and_seeds(self, az, azd, kv_settings):
        az.on("keyvault create")
        az.on("ad signed-in-user show", stdout="user-oid")
        az.on("keyvault set-policy")
        az.on("keyvault secret set")
        az.on("--name aad-client-secret", returncode=1)
        result = ensure_keyvault(kv_settings, az, azd, {"jwt-secret": "j", "aad-client-secret": "a"})
        assert result.action == "created"
        assert result.retention_days == 7
        assert result.secrets_set == ["jwt-secret"]
        assert result.warnings == ["Failed to create aad-client-secret"]
        create = next(c for c in az.calls if c.startswith("keyvault create"))
        assert "--enable-purge-protection true" in create
        assert "--enable-rbac-authorization false" in create
        assert "--resource-group rg-raptor-dev" in create
        assert az.called(f"keyvault set-policy --name {VAULT} --object-id user-oid --secret-permissions get list set delete")

    def test_production_retention(self, az, azd, kv_settings):
        kv_settings.environment = "prod"
        az.on("keyvault create")
        result = ensure_keyvault(kv_settings, az, azd)
        assert result.retention_days == 90
        assert "Could not determine current identity" in result.warnings[0]

    def test_create_failure(self, az, azd, kv_settings):
        az.on("keyvault create", returncode=1, stderr="VaultAlreadyExists")
        with pytest.raises(AzureCliError) as exc_info:
            ensure_keyvault(kv_settings, az, azd)
        assert exc_info.value.context.resource_group == "rg-raptor-dev"


class TestRecover:
    @pytest.mark.parametrize(
        ("output", "state"),
        [
            (json.dumps({"properties": {"scheduledPurgeDate": "2024-09-01"}}), DeletedVaultState.SOFT_DELETED),
            ("ERROR: (AuthorizationFailed) no access", DeletedVaultState.UNAUTHORIZED),
            ("ERROR: Vault not found", DeletedVaultState.NOT_FOUND),
            ("(ResourceNotFound)", DeletedVaultState.NOT_FOUND),
            ("something else", DeletedVaultState.UNKNOWN),
        ],
    )
    def test_classify(self, output, state):
        assert classify_deleted(output) is state

    def test_recovered(self, az, kv_settings):
        az.on("keyvault show-deleted", stdout=json.dumps({"properties": {"scheduledPurgeDate": "2024-09-01"}}))
        az.on("keyvault recover")
        result = recover_keyvault(kv_settings, az)
        assert result.action == "recovered"
        assert "2024-09-01" in result.message

    def test_recovery_pending(self, az, kv_settings):
        az.on("keyvault show-deleted", stdout=json.dumps({"properties": {"scheduledPurgeDate": "2024-09-01"}}))
        result = recover_keyvault(kv_settings, az)
        assert result.action == "recovering"
        assert result.warnings

    def test_unauthorized_is_advisory(self, az, kv_settings):
        az.on("keyvault show-deleted", returncode=1, stderr="ERROR: (AuthorizationFailed)")
        result = recover_keyvault(kv_settings, az)
        assert result.action == "none"
        assert f"az keyvault recover --name {VAULT}" in result.warnings[0]

    def test_not_found(self, az, kv_settings):
        az.on("keyvault show-deleted", returncode=1, stderr="ERROR: Vault not found")
        assert "No soft-deleted Key Vault" in recover_keyvault(kv_settings, az).message
