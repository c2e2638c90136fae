"""Tests for the fast-path deploy and promotion workflows (``didFastPath``)."""

from __future__ import annotations

import json

import pytest

from raptor_deploy.config import DeploySettings
from raptor_deploy.results import UpdateStrategy
from raptor_deploy.workflows.deploy import deploy_service_image, promote_service_image, promotion_tag

DIGEST = "sha256:" + "a" * 64
DEV = "ngraptordev.azurecr.io"
PROD = "ngraptorprod.azurecr.io"
FRONTEND_IMAGE = f"{DEV}/raptor/frontend-dev@{DIGEST}"


def _no_sleep(_: float) -> None:
    pass


def _bound_app(server: str) -> str:
    return json.dumps({"properties": {"configuration": {"registries": [{"server": server}]}}})


class TestPromotionTag:
    def test_millisecond_timestamp(self):
        assert promotion_tag(lambda: 1700000000.123) == "promoted-1700000000123"


class TestDeployServiceImage:
    @pytest.fixture
    def deployable(self, az, azd):
        azd.values["SERVICE_FRONTEND_IMAGE_NAME"] = FRONTEND_IMAGE
        az.on("containerapp show -n dev-rap-fe -g rg-raptor-dev", stdout=_bound_app(DEV))
        az.on("properties.template.containers[0].image", stdout="")
        az.on("containerapp update")
        return az

    def test_success(self, deployable, azd, settings, github_output):
        result = deploy_service_image("frontend", settings, deployable, azd, sleep=_no_sleep)
        assert result.did_fast_path is True
        assert result.app_name == "dev-rap-fe"
        assert result.update.strategy is UpdateStrategy.DIRECT_UPDATE
        assert deployable.called(f"containerapp update -n dev-rap-fe -g rg-raptor-dev --image {FRONTEND_IMAGE}")
        assert github_output.read_text() == "didFastPath=true\n"

    def test_missing_settings(self, az, azd, github_output):
        result = deploy_service_image("frontend", DeploySettings(environment="dev"), az, azd)
        assert result.did_fast_path is False
        assert "AZURE_RESOURCE_GROUP" in result.reason
        assert github_output.read_text() == "didFastPath=false\n"

    def test_no_image(self, az, azd, settings, github_output):
        result = deploy_service_image("frontend", settings, az, azd)
        assert result.reason == "No image configured in SERVICE_FRONTEND_IMAGE_NAME"
        assert az.calls == []

    def test_tag_image(self, az, azd, settings, github_output):
        azd.values["SERVICE_FRONTEND_IMAGE_NAME"] = "mcr.microsoft.com/azuredocs/containerapps-helloworld:latest"
        result = deploy_service_image("frontend", settings, az, azd)
        assert result.did_fast_path is False
        assert "digest" in result.reason

    def test_app_missing(self, az, azd, settings, github_output):
        azd.values["SERVICE_FRONTEND_IMAGE_NAME"] = FRONTEND_IMAGE
        result = deploy_service_image("frontend", settings, az, azd)
        assert result.reason == "Container App 'dev-rap-fe' does not exist"

    def test_update_failure_is_reported(self, deployable, azd, settings, github_output):
        deployable.on("containerapp update", returncode=1, stderr="ERROR: image not found")
        result = deploy_service_image("frontend", settings, deployable, azd, sleep=_no_sleep)
        assert result.did_fast_path is False
        assert "containerapp update" in result.reason
        assert github_output.read_text() == "didFastPath=false\n"

    def test_no_report(self, az, azd, settings, github_output):
        deploy_service_image("frontend", settings, az, azd, report=False)
        assert github_output.read_text() == ""


class TestPromoteServiceImage:
    @pytest.fixture
    def prod(self) -> DeploySettings:
        return DeploySettings(
            environment="prod",
            resource_group="rg-raptor-prod",
            acr_name="ngraptorprod",
            rbac_propagation_seconds=0,
        )

    @pytest.fixture
    def promotable(self, az):
        az.on("acr import")
        az.on("acr repository untag")
        az.on("containerapp show -n prod-rap-be -g rg-raptor-prod", stdout=_bound_app(PROD))
        az.on("properties.template.containers[0].image", stdout="")
        az.on("containerapp update")
        return az

    def _promote(self, az, settings, **kwargs):
        return promote_service_image(
            "backend",
            f"{DEV}/raptor/backend-dev@{DIGEST}",
            "prod",
            settings,
            az,
            now=lambda: 1700000000.0,
            sleep=_no_sleep,
            **kwargs,
        )

    def test_success(self, promotable, prod, github_output):
        result = self._promote(promotable, prod)
        assert result.did_fast_path is True
        assert result.image == f"{PROD}/raptor/backend-prod@{DIGEST}"
        assert result.promotion_tag == "promoted-1700000000000"
        assert promotable.called(
            f"acr import --name ngraptorprod --source {DEV}/raptor/backend-dev@{DIGEST} "
            f"--image raptor/backend-prod@{DIGEST} --force"
        )
        assert promotable.called("acr repository untag --name ngraptorprod --image raptor/backend-prod:promoted-1700000000000")
        assert promotable.called(
            f"--source {PROD}/raptor/backend-prod@{DIGEST} --image raptor/backend-prod:promoted-1700000000000 --no-wait"
        )
        assert promotable.called(f"containerapp update -n prod-rap-be -g rg-raptor-prod --image {result.image}")
        assert github_output.read_text() == "didFastPath=true\n"

    def test_source_registry_override(self, promotable, prod, github_output):
        prod.source_acr_name = "ngraptortest"
        self._promote(promotable, prod)
        assert promotable.called("--source ngraptortest.azurecr.io/raptor/backend-dev@")

    def test_tag_import_failure_only_warns(self, promotable, prod, github_output):
        promotable.on("--no-wait", returncode=1, stderr="ERROR: tag import failed")
        result = self._promote(promotable, prod)
        assert result.did_fast_path is True

    def test_import_failure(self, promotable, prod, github_output):
        promotable.on("--force", returncode=1, stderr="ERROR: denied")
        result = self._promote(promotable, prod)
        assert result.did_fast_path is False
        assert "acr import" in result.reason
        assert not promotable.called("containerapp update")
        assert github_output.read_text() == "didFastPath=false\n"

    def test_source_must_be_digest(self, az, prod, github_output):
        result = promote_service_image("backend", f"{DEV}/raptor/backend-dev:latest", "prod", prod, az)
        assert result.did_fast_path is False
        assert "not a digest reference" in result.reason
        assert az.calls == []

    def test_missing_target_registry(self, az, github_output):
        result = promote_service_image("backend", f"{DEV}/raptor/backend-dev@{DIGEST}", "prod", DeploySettings(), az)
        assert "AZURE_ACR_NAME" in result.reason
