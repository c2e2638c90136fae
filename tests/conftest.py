"""
Shared pytest fixtures for raptor-deploy tests.

This module provides:
- FakeAz: an ``az`` double answering by command pattern, recording calls
- FakeAzd: an in-memory azd environment
- GitHub Actions output/summary files under tmp_path

Usage:
    def test_something(az, azd):
        az.on("acr show", stdout='{"id": "..."}')
        azd.values["AZURE_ENV_NAME"] = "dev"
"""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from raptor_deploy.azure.runner import AzdEnvironment, AzureCli
from raptor_deploy.config import DeploySettings
from raptor_deploy.errors import AzureCliError
from raptor_deploy.logging import clear_context


class FakeAz(AzureCli):
    """Scripted ``az``.

    Rules match when their pattern is a substring of the joined arguments;
    the most recently added rule wins. Unmatched calls exit 1, so probes read
    as "not found" and mutations raise.
    """

    def __init__(self) -> None:  # noqa: D107 - no PATH lookup
        self.binary = "az"
        self.timeout = 600
        self._path = "az"
        self.rules: list[tuple[str, str, int, str]] = []
        self.calls: list[str] = []
        self.inputs: list[str | None] = []
        self.envs: list[dict[str, str] | None] = []

    def on(self, pattern: str, stdout: str = "", returncode: int = 0, stderr: str = "") -> FakeAz:
        self.rules.insert(0, (pattern, stdout, returncode, stderr))
        return self

    def run(self, args, *, check=True, input=None, timeout=None, env=None):
        line = " ".join(args)
        self.calls.append(line)
        self.inputs.append(input)
        self.envs.append(env)
        stdout, returncode, stderr = "", 1, "ERROR: not scripted"
        for pattern, out, rc, err in self.rules:
            if pattern in line:
                stdout, returncode, stderr = out, rc, err
                break
        if check and returncode != 0:
            raise AzureCliError(
                f"{self.binary} failed (exit {returncode}): {line}",
                command=[self.binary, *args],
                returncode=returncode,
                stderr=stderr,
            )
        return subprocess.CompletedProcess([self.binary, *args], returncode, stdout, stderr)

    def called(self, pattern: str) -> bool:
        return any(pattern in call for call in self.calls)

    def count(self, pattern: str) -> int:
        return sum(1 for call in self.calls if pattern in call)


class FakeAzd(AzdEnvironment):
    """In-memory azd environment."""

    def __init__(self, values: dict[str, str] | None = None) -> None:  # noqa: D107
        self.binary = "azd"
        self.timeout = 60
        self._path = "azd"
        self.values: dict[str, str] = dict(values or {})

    def get_value(self, key: str, default: str = "") -> str:
        return self.values.get(key) or default

    def set_value(self, key: str, value: str | bool) -> None:
        if isinstance(value, bool):
            value = "true" if value else "false"
        self.values[key] = value


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch):
    """Keep the developer's Azure/GitHub environment out of tests."""
    for var in (
        "AZURE_ENV_NAME",
        "AZURE_RESOURCE_GROUP",
        "AZURE_ACR_NAME",
        "AZURE_ACR_NAME_SRC",
        "AZURE_ACR_RESOURCE_GROUP",
        "AZURE_LOCATION",
        "AZURE_SUBSCRIPTION_ID",
        "KEY_VAULT_NAME",
        "RAPTOR_SERVICES",
        "GITHUB_ACTIONS",
        "GITHUB_OUTPUT",
        "GITHUB_STEP_SUMMARY",
        "GITHUB_TOKEN",
        "GITHUB_REPOSITORY",
        "OIDC_CLIENT_SECRET",
        "JWT_SECRET",
        "AZURE_AD_CLIENT_SECRET",
        "SRC_IMAGE",
        "SRC_REPO",
        "TARGET_ENV",
        "SERVICE",
        "REPO_READ_TOKEN",
        "FRONTEND_REPO_READ_TOKEN",
        "MAIL_SERVER",
        "MAIL_USERNAME",
        "MAIL_PASSWORD",
        "MAIL_TO",
        "SUBJECT_PREFIX",
        "RELEASE_HTML",
        "RELEASE_BODY",
    ):
        monkeypatch.delenv(var, raising=False)
    yield
    clear_context()


@pytest.fixture
def az() -> FakeAz:
    return FakeAz()


@pytest.fixture
def azd() -> FakeAzd:
    return FakeAzd()


@pytest.fixture
def settings() -> DeploySettings:
    return DeploySettings(
        environment="dev",
        resource_group="rg-raptor-dev",
        acr_name="ngraptordev",
        location="eastus2",
        subscription_id="00000000-0000-0000-0000-000000000000",
        rbac_propagation_seconds=0,
    )


@pytest.fixture
def github_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "github_output"
    path.touch()
    monkeypatch.setenv("GITHUB_OUTPUT", str(path))
    return path


@pytest.fixture
def github_summary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "github_summary"
    path.touch()
    monkeypatch.setenv("GITHUB_STEP_SUMMARY", str(path))
    return path
