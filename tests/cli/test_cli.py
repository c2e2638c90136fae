"""Tests for raptor_deploy.cli - command smoke tests via CliRunner.

Workflow functions and the az/azd/settings factories are patched so no
Azure CLI is needed.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from raptor_deploy.cli.app import app
from raptor_deploy.errors import CommandNotFoundError, MissingConfigError
from raptor_deploy.results import FastPathResult, HookRunResult, StepResult, StepStatus

runner = CliRunner()

DIGEST = "sha256:" + "c" * 64


@pytest.fixture(autouse=True)
def _no_logging_setup():
    with patch("raptor_deploy.logging.configure_logging") as configure:
        yield configure


@pytest.fixture
def factories(az, azd, settings):
    with (
        patch("raptor_deploy.cli.utils.get_az", return_value=az),
        patch("raptor_deploy.cli.utils.get_azd", return_value=azd),
        patch("raptor_deploy.cli.utils.get_settings", side_effect=lambda **kw: settings) as get_settings,
    ):
        yield get_settings


def _hook(status: StepStatus) -> HookRunResult:
    run = HookRunResult(hook="preprovision", steps=[StepResult(name="keyvault", status=status, message="kv")])
    run.mark_complete()
    return run


# ─── Root ────────────────────────────────────────────────────────────────


class TestRoot:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "raptor-deploy 0.1.0" in result.output

    def test_help_lists_groups(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for group in ("hooks", "images", "acr", "service", "keyvault", "sql", "release"):
            assert group in result.output

    def test_logging_options(self, factories, _no_logging_setup):
        with patch("raptor_deploy.workflows.hooks.run_postprovision", return_value=_hook(StepStatus.OK)):
            result = runner.invoke(app, ["--log-level", "debug", "--log-format", "json", "hooks", "postprovision"])
        assert result.exit_code == 0
        _no_logging_setup.assert_called_once_with(level="DEBUG", format="json")


# ─── Hooks ───────────────────────────────────────────────────────────────


class TestHooks:
    def test_preprovision_ok_json(self, factories):
        with patch("raptor_deploy.workflows.hooks.run_preprovision", return_value=_hook(StepStatus.OK)):
            result = runner.invoke(app, ["hooks", "preprovision", "--json"])
        assert result.exit_code == 0
        assert '"hook": "preprovision"' in result.output

    def test_preprovision_failure_exits_1(self, factories):
        with patch("raptor_deploy.workflows.hooks.run_preprovision", return_value=_hook(StepStatus.FAILED)):
            result = runner.invoke(app, ["hooks", "preprovision"])
        assert result.exit_code == 1
        assert "FAILED" in result.output


# ─── Service ─────────────────────────────────────────────────────────────


class TestService:
    def test_deploy_unavailable_exits_0(self, factories):
        fp = FastPathResult(service="frontend", did_fast_path=False, reason="No image recorded")
        with patch("raptor_deploy.workflows.deploy.deploy_service_image", return_value=fp) as deploy:
            result = runner.invoke(app, ["service", "deploy", "--service", "frontend", "--no-report", "--json"])
        assert result.exit_code == 0
        assert '"did_fast_path": false' in result.output
        assert deploy.call_args.kwargs["report"] is False

    def test_deploy_config_error_exits_1(self, factories):
        with patch(
            "raptor_deploy.workflows.deploy.deploy_service_image",
            side_effect=MissingConfigError(["AZURE_ENV_NAME"]),
        ):
            result = runner.invoke(app, ["service", "deploy", "-s", "frontend"])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_deploy_missing_az_reports_no_fast_path(self, azd, settings, github_output):
        missing = CommandNotFoundError("az not found on PATH.", command=["az"])
        with (
            patch("raptor_deploy.cli.utils.get_az", side_effect=missing),
            patch("raptor_deploy.cli.utils.get_azd", return_value=azd),
            patch("raptor_deploy.cli.utils.get_settings", return_value=settings),
            patch("raptor_deploy.workflows.deploy.deploy_service_image") as deploy,
        ):
            result = runner.invoke(app, ["service", "deploy", "-s", "frontend"])
        assert result.exit_code == 1
        deploy.assert_not_called()
        assert github_output.read_text() == "didFastPath=false\n"

    def test_promote_missing_az_reports_no_fast_path(self, settings, github_output):
        with (
            patch("raptor_deploy.cli.utils.get_az", side_effect=CommandNotFoundError("az not found on PATH.")),
            patch("raptor_deploy.cli.utils.get_settings", return_value=settings),
        ):
            result = runner.invoke(app, [
                "service", "promote",
                "-s", "backend",
                "--source-image", f"ngraptordev.azurecr.io/raptor/backend-dev@{DIGEST}",
                "--target-env", "prod",
            ])
        assert result.exit_code == 1
        assert github_output.read_text() == "didFastPath=false\n"

    def test_no_report_skips_output_on_error(self, settings, github_output):
        with (
            patch("raptor_deploy.cli.utils.get_az", side_effect=CommandNotFoundError("az not found on PATH.")),
            patch("raptor_deploy.cli.utils.get_settings", return_value=settings),
        ):
            result = runner.invoke(app, ["service", "deploy", "-s", "frontend", "--no-report"])
        assert result.exit_code == 1
        assert github_output.read_text() == ""

    def test_promote_overrides_settings(self, factories):
        fp = FastPathResult(service="backend", environment="prod", did_fast_path=True, app_name="ca-rap-prod-be")
        with patch("raptor_deploy.workflows.deploy.promote_service_image", return_value=fp) as promote:
            result = runner.invoke(app, [
                "service", "promote",
                "-s", "backend",
                "--source-image", f"ngraptordev.azurecr.io/raptor/backend-dev@{DIGEST}",
                "--target-env", "prod",
                "--acr", "ngraptorprod",
            ])
        assert result.exit_code == 0
        assert promote.call_args.args[2] == "prod"
        factories.assert_called_once_with(
            environment="prod", resource_group=None, acr_name="ngraptorprod", source_acr_name=None
        )


# ─── SQL ─────────────────────────────────────────────────────────────────


class TestSql:
    def test_script(self, factories, az):
        az.on("[?contains(name, 'backend')]", stdout="id-be")
        result = runner.invoke(app, ["sql", "script", "--database", "raptordb"])
        assert result.exit_code == 0
        assert "CREATE USER [id-be] FROM EXTERNAL PROVIDER" in result.output

    def test_script_without_identities(self, factories):
        result = runner.invoke(app, ["sql", "script", "-d", "raptordb"])
        assert result.exit_code == 1
        assert "Error" in result.output


# ─── ACR ─────────────────────────────────────────────────────────────────


class TestAcrCommit:
    def test_rejects_non_digest(self):
        result = runner.invoke(app, ["acr", "commit", "docker.io/library/nginx:latest"])
        assert result.exit_code == 1
        assert "Not an ACR digest reference" in result.output

    def test_prints_commit(self, factories):
        with patch("raptor_deploy.registry.get_commit_from_image", return_value="a" * 40) as lookup:
            result = runner.invoke(app, ["acr", "commit", f"ngraptordev.azurecr.io/raptor/frontend-dev@{DIGEST}"])
        assert result.exit_code == 0
        assert result.output.strip() == "a" * 40
        assert lookup.call_args.args[:3] == ("ngraptordev", "raptor/frontend-dev", DIGEST)

    def test_no_label(self, factories):
        with patch("raptor_deploy.registry.get_commit_from_image", return_value=None):
            result = runner.invoke(app, ["acr", "commit", f"ngraptordev.azurecr.io/raptor/frontend-dev@{DIGEST}"])
        assert result.exit_code == 1


# ─── Release ─────────────────────────────────────────────────────────────


class TestReleaseEmail:
    def test_skips_without_smtp(self):
        result = runner.invoke(app, ["release", "email"])
        assert result.exit_code == 0
        assert "prereqs_ok=false" in result.output
        assert "Email skipped" in result.output
