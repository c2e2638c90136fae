"""Tests for raptor_deploy.azure.acr - registry queries, role preflight and ensure_acr."""

from __future__ import annotations

import json

import pytest

from raptor_deploy.azure.acr import (
    Registry,
    RepositoryState,
    check_roles,
    ensure_acr,
    upgrade_service_image,
)
from raptor_deploy.config import DeploySettings
from raptor_deploy.errors import (
    AzureCliError,
    MissingConfigError,
    PermissionPreflightError,
    PreconditionError,
    RegistryError,
)
from raptor_deploy.naming import FALLBACK_IMAGE
from raptor_deploy.results import ImageCheck, ImageSource

DIGEST = "sha256:" + "a" * 64
SUB = "00000000-0000-0000-0000-000000000000"


def _signed_in(az, roles: str = "Owner") -> None:
    az.on("account show --query id", stdout=SUB)
    az.on("account show --query user.name", stdout="dev@example.com")
    az.on("role assignment list", stdout=roles)


class TestRegistryQueries:
    def test_domain(self, az):
        assert Registry(az, "ngraptordev").domain == "ngraptordev.azurecr.io"

    def test_latest_digest(self, az):
        az.on("show-manifests", stdout=f"{DIGEST}\n")
        assert Registry(az, "ngraptordev").latest_digest("raptor/frontend-dev") == DIGEST
        assert az.called("--orderby time_desc --top 1")

    def test_latest_digest_missing(self, az):
        assert Registry(az, "ngraptordev").latest_digest("raptor/frontend-dev") == ""

    def test_subscription_scoping(self, az):
        az.on("show-manifests", stdout=DIGEST)
        Registry(az, "ngraptorprod", subscription="sub-2").has_digest("raptor/x", DIGEST)
        assert az.calls[-1].endswith("--subscription sub-2 -o tsv")

    def test_latest_image(self, az):
        az.on("show-manifests", stdout=DIGEST)
        assert Registry(az, "ngraptordev").latest_image("raptor/frontend-dev") == (
            f"ngraptordev.azurecr.io/raptor/frontend-dev@{DIGEST}"
        )

    def test_latest_image_empty_repository(self, az):
        assert Registry(az, "ngraptordev").latest_image("raptor/frontend-dev") == ""

    def test_find_tag_exact(self, az):
        sha = "0123456789abcdef0123456789abcdef01234567"
        az.on(f"[?@=='{sha}']", stdout=sha)
        assert Registry(az, "r").find_tag("raptor/fe", sha) == (ImageCheck.COMMIT_TAG, sha)

    def test_find_tag_short(self, az):
        sha = "0123456789abcdef0123456789abcdef01234567"
        az.on("starts_with(@, '0123456789ab')", stdout="0123456789ab")
        assert Registry(az, "r").find_tag("raptor/fe", sha) == (ImageCheck.SHORT_COMMIT_TAG, "0123456789ab")

    def test_find_tag_none(self, az):
        assert Registry(az, "r").find_tag("raptor/fe", "abc") is None

    def test_repository_state(self, az):
        registry = Registry(az, "r")
        az.on("acr repository show", stdout="raptor/frontend-dev\n")
        assert registry.repository_state("raptor/frontend-dev") is RepositoryState.EXISTS
        az.on("acr repository show", stdout="")
        assert registry.repository_state("raptor/frontend-dev") is RepositoryState.MISSING
        az.on("acr repository show", returncode=1, stderr="ERROR: unauthorized")
        assert registry.repository_state("raptor/frontend-dev") is RepositoryState.UNKNOWN


class TestRegistryMutations:
    def test_import_flags(self, az):
        az.on("acr import")
        Registry(az, "tgt").import_image("src.azurecr.io/a@sha256:1", "a@sha256:1", force=True, no_wait=True)
        assert az.calls[-1] == (
            "acr import --name tgt --source src.azurecr.io/a@sha256:1 --image a@sha256:1 --force --no-wait"
        )

    def test_import_failure_raises(self, az):
        az.on("acr import", returncode=1, stderr="denied")
        with pytest.raises(AzureCliError):
            Registry(az, "tgt").import_image("s", "i")

    def test_untag_is_tolerant(self, az):
        assert Registry(az, "tgt").untag("raptor/fe:promoted-1") is False

    def test_create(self, az):
        az.on("acr create")
        Registry(az, "ngraptordev").create("rg-raptor-dev", "eastus2")
        assert "--admin-enabled false" in az.calls[-1]
        assert "--sku Standard" in az.calls[-1]


class TestCheckRoles:
    def test_owner_passes(self, az):
        _signed_in(az, "Owner")
        warnings: list[str] = []
        assert check_roles(az, "rg", require_create=True, warnings=warnings) == ["Owner"]
        assert warnings == []

    def test_contributor_and_uaa_pass(self, az):
        _signed_in(az, "Contributor\nUser Access Administrator\n")
        assert check_roles(az, "rg", require_create=True, warnings=[]) == ["Contributor", "User Access Administrator"]

    def test_scope_is_resource_group(self, az):
        _signed_in(az)
        check_roles(az, "rg-raptor-dev", require_create=True, warnings=[])
        assert az.called(f"--scope /subscriptions/{SUB}/resourceGroups/rg-raptor-dev")

    def test_reader_cannot_create(self, az):
        _signed_in(az, "Reader")
        with pytest.raises(PermissionPreflightError) as exc_info:
            check_roles(az, "rg", require_create=True, warnings=[])
        assert "Contributor or Owner" in exc_info.value.message
        assert exc_info.value.scope == "rg"

    def test_contributor_cannot_assign(self, az):
        _signed_in(az, "Contributor")
        with pytest.raises(PermissionPreflightError, match="role assignments"):
            check_roles(az, "rg", require_create=True, warnings=[])

    def test_assign_only_check(self, az):
        _signed_in(az, "User Access Administrator")
        check_roles(az, "rg", require_create=False, warnings=[])

    def test_unreadable_assignments_warn(self, az):
        _signed_in(az, "")
        warnings: list[str] = []
        assert check_roles(az, "rg", require_create=True, warnings=warnings) == []
        assert "Could not read role assignments" in warnings[0]

    def test_unknown_principal_warns(self, az):
        warnings: list[str] = []
        assert check_roles(az, "rg", require_create=True, warnings=warnings) == []
        assert "skipping permission preflight" in warnings[0]


class TestUpgradeServiceImage:
    def test_acr_image_untouched(self, az, azd):
        image = f"ngraptordev.azurecr.io/raptor/frontend-dev@{DIGEST}"
        azd.values["SERVICE_FRONTEND_IMAGE_NAME"] = image
        r = upgrade_service_image(Registry(az, "ngraptordev"), azd, "frontend", "dev")
        assert r.image == image
        assert r.skip_acr_pull is False
        assert az.calls == []

    def test_unset_uses_latest(self, az, azd):
        az.on("show-manifests", stdout=DIGEST)
        r = upgrade_service_image(Registry(az, "ngraptordev"), azd, "backend", "dev")
        assert r.source is ImageSource.REGISTRY
        assert azd.values["SERVICE_BACKEND_IMAGE_NAME"] == f"ngraptordev.azurecr.io/raptor/backend-dev@{DIGEST}"
        assert azd.values["SKIP_BACKEND_ACR_PULL_ROLE_ASSIGNMENT"] == "false"

    def test_unset_and_empty_repository_falls_back(self, az, azd):
        r = upgrade_service_image(Registry(az, "ngraptordev"), azd, "frontend", "dev")
        assert r.source is ImageSource.FALLBACK
        assert azd.values["SERVICE_FRONTEND_IMAGE_NAME"] == FALLBACK_IMAGE
        assert azd.values["SKIP_FRONTEND_ACR_PULL_ROLE_ASSIGNMENT"] == "true"

    def test_public_image_switched_when_acr_has_one(self, az, azd):
        azd.values["SERVICE_FRONTEND_IMAGE_NAME"] = FALLBACK_IMAGE
        az.on("show-manifests", stdout=DIGEST)
        r = upgrade_service_image(Registry(az, "ngraptordev"), azd, "frontend", "dev")
        assert r.previous_image == FALLBACK_IMAGE
        assert r.message == "switched to latest ACR image"

    def test_public_image_kept_when_acr_empty(self, az, azd):
        azd.values["SERVICE_FRONTEND_IMAGE_NAME"] = FALLBACK_IMAGE
        r = upgrade_service_image(Registry(az, "ngraptordev"), azd, "frontend", "dev")
        assert r.image == FALLBACK_IMAGE
        assert "SKIP_FRONTEND_ACR_PULL_ROLE_ASSIGNMENT" not in azd.values


class TestEnsureAcr:
    @pytest.fixture
    def ready(self, az):
        az.on("group show -n rg-raptor-dev", stdout="eastus2")
        _signed_in(az)
        return az

    def test_existing_registry(self, ready, azd, settings):
        ready.on("acr show -n ngraptordev", stdout=json.dumps({"resourceGroup": "rg-raptor-dev"}))
        ready.on("show-manifests", stdout=DIGEST)
        result = ensure_acr(settings, ready, azd)
        assert result.created is False
        assert result.resource_group == "rg-raptor-dev"
        assert azd.values["AZURE_ACR_RESOURCE_GROUP"] == "rg-raptor-dev"
        assert [i.service for i in result.images] == ["frontend", "backend"]
        assert not ready.called("acr create")

    def test_switch_to_acr_clears_aggregate_flag(self, ready, azd, settings):
        azd.values.update({
            "SERVICE_FRONTEND_IMAGE_NAME": FALLBACK_IMAGE,
            "SERVICE_BACKEND_IMAGE_NAME": FALLBACK_IMAGE,
            "SKIP_ACR_PULL_ROLE_ASSIGNMENT": "true",
        })
        ready.on("acr show -n ngraptordev", stdout=json.dumps({"resourceGroup": "rg-raptor-dev"}))
        ready.on("show-manifests", stdout=DIGEST)
        ensure_acr(settings, ready, azd)
        assert azd.values["SERVICE_FRONTEND_IMAGE_NAME"] == f"ngraptordev.azurecr.io/raptor/frontend-dev@{DIGEST}"
        assert azd.values["SKIP_FRONTEND_ACR_PULL_ROLE_ASSIGNMENT"] == "false"
        assert azd.values["SKIP_ACR_PULL_ROLE_ASSIGNMENT"] == "false"

    def test_fallback_everywhere_keeps_aggregate_flag(self, ready, azd, settings):
        ready.on("acr show -n ngraptordev", stdout=json.dumps({"resourceGroup": "rg-raptor-dev"}))
        ensure_acr(settings, ready, azd)
        assert azd.values["SKIP_ACR_PULL_ROLE_ASSIGNMENT"] == "true"

    def test_existing_registry_in_other_group_rechecks_roles(self, ready, azd, settings):
        registry_id = "/subscriptions/s/resourceGroups/rg-shared/providers/Microsoft.ContainerRegistry/registries/ngraptordev"
        ready.on("acr show -n ngraptordev", stdout=json.dumps({"id": registry_id}))
        result = ensure_acr(settings, ready, azd)
        assert result.resource_group == "rg-shared"
        assert ready.count("role assignment list") == 2

    def test_creates_when_name_available(self, ready, azd, settings):
        ready.on("acr check-name", stdout=json.dumps({"nameAvailable": True}))
        ready.on("acr create")
        result = ensure_acr(settings, ready, azd)
        assert result.created is True
        assert ready.called("acr create -n ngraptordev -g rg-raptor-dev -l eastus2")
        assert azd.values["SERVICE_FRONTEND_IMAGE_NAME"] == FALLBACK_IMAGE

    def test_creates_in_shared_resource_group(self, ready, azd, settings):
        settings.acr_resource_group = "rg-shared"
        ready.on("group show -n rg-shared", stdout="westus3")
        ready.on("acr check-name", stdout=json.dumps({"nameAvailable": True}))
        ready.on("acr create")
        result = ensure_acr(settings, ready, azd)
        assert result.resource_group == "rg-shared"
        assert ready.called("acr create -n ngraptordev -g rg-shared -l westus3")
        assert azd.values["AZURE_ACR_RESOURCE_GROUP"] == "rg-shared"

    def test_name_taken_elsewhere(self, ready, azd, settings):
        ready.on("acr check-name", stdout=json.dumps({"nameAvailable": False, "reason": "AlreadyExists"}))
        with pytest.raises(RegistryError, match="not accessible"):
            ensure_acr(settings, ready, azd)

    def test_name_invalid(self, ready, azd, settings):
        ready.on("acr check-name", stdout=json.dumps({"nameAvailable": False, "reason": "Invalid", "message": "bad"}))
        with pytest.raises(RegistryError, match="bad"):
            ensure_acr(settings, ready, azd)

    def test_defaults_names_from_environment(self, ready, azd):
        ready.on("acr check-name", stdout=json.dumps({"nameAvailable": True}))
        ready.on("acr create")
        ensure_acr(DeploySettings(environment="dev"), ready, azd)
        assert azd.values["AZURE_RESOURCE_GROUP"] == "rg-raptor-dev"
        assert azd.values["AZURE_ACR_NAME"] == "devrapacr"

    def test_missing_environment(self, az, azd):
        with pytest.raises(MissingConfigError, match="AZURE_RESOURCE_GROUP"):
            ensure_acr(DeploySettings(), az, azd)

    def test_missing_resource_group(self, az, azd, settings):
        with pytest.raises(PreconditionError, match="Could not resolve location"):
            ensure_acr(settings, az, azd)

    def test_missing_acr_resource_group(self, ready, azd, settings):
        settings.acr_resource_group = "rg-missing"
        with pytest.raises(PreconditionError, match="rg-missing"):
            ensure_acr(settings, ready, azd)

    def test_preflight_failure_stops_before_create(self, az, azd, settings):
        az.on("group show -n rg-raptor-dev", stdout="eastus2")
        _signed_in(az, "Reader")
        with pytest.raises(PermissionPreflightError):
            ensure_acr(settings, az, azd)
        assert not az.called("acr check-name")
