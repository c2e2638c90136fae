"""Subprocess wrappers for the ``az`` and ``azd`` CLIs.

All Azure access goes through the CLIs the operator (or the GitHub runner)
is already signed in to: no Azure SDK credentials to configure, and every
call is reproducible by copy-pasting the logged command.

Key Concepts:
    CommandRunner: Locates a binary on PATH and runs it with captured output.
        ``run(check=True)`` raises :class:`AzureCliError` on non-zero exit.
    AzureCli: ``az`` with output-shaped helpers. ``tsv()`` and ``json()``
        return empty values when the call fails, which is how every
        existence probe ("does this registry have that digest?") is written.
    AzdEnvironment: ``azd env get-value`` / ``azd env set``.

Architecture Decisions:
    - subprocess, not the Azure SDK: the commands are exactly what an
      operator would type, and ``az`` already handles auth and clouds.
    - Probe helpers never raise; mutating calls go through ``run()`` with
      ``check=True`` so failures stop the workflow.

Tags:
    azure-cli, azd, subprocess, runner
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
from typing import Any

from raptor_deploy.errors import AzureCliError, CommandNotFoundError
from raptor_deploy.logging import get_logger

logger = get_logger(__name__)

_INSTALL_HINTS = {
    "az": "https://learn.microsoft.com/cli/azure/install-azure-cli",
    "azd": "https://aka.ms/azd-install",
    "sqlcmd": "https://learn.microsoft.com/sql/tools/sqlcmd/sqlcmd-utility",
}


class CommandRunner:
    """Runs a CLI binary via subprocess.

    Parameters
    ----------
    binary
        Executable name looked up on PATH.
    timeout
        Default per-call timeout in seconds.
    """

    def __init__(self, binary: str, timeout: int = 300) -> None:
        self.binary = binary
        self.timeout = timeout
        self._path = self._find(binary)

    @staticmethod
    def _find(binary: str) -> str:
        path = shutil.which(binary)
        if path is None:
            hint = _INSTALL_HINTS.get(binary, "")
            raise CommandNotFoundError(
                f"{binary} not found on PATH." + (f" Install it: {hint}" if hint else ""),
                command=[binary],
            )
        return path

    @staticmethod
    def is_available(binary: str) -> bool:
        return shutil.which(binary) is not None

    def run(
        self,
        args: list[str],
        *,
        check: bool = True,
        input: str | None = None,
        timeout: int | None = None,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run the binary with ``args``.

        ``env`` entries are added to the inherited environment; use it for
        secrets so they never appear in the logged command line.
        """
        cmd = [self._path, *args]
        timeout = timeout or self.timeout
        logger.debug("cli.exec", cmd=" ".join([self.binary, *args]))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                input=input,
                timeout=timeout,
                env={**os.environ, **env} if env else None,
            )
        except subprocess.TimeoutExpired as exc:
            raise AzureCliError(
                f"{self.binary} timed out after {timeout}s: {' '.join(args)}",
                command=[self.binary, *args],
                cause=exc,
            ) from exc
        if check and result.returncode != 0:
            raise AzureCliError(
                f"{self.binary} failed (exit {result.returncode}): {' '.join(args)}\n"
                f"{result.stderr.strip()}",
                command=[self.binary, *args],
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result


class AzureCli(CommandRunner):
    """Wrapper for the ``az`` CLI.

    Example::

        az = AzureCli()
        location = az.tsv(["group", "show", "-n", "rg-raptor-dev", "--query", "location"])
    """

    def __init__(self, timeout: int = 600) -> None:
        super().__init__("az", timeout=timeout)

    def tsv(self, args: list[str]) -> str:
        """Run with ``-o tsv``; stripped stdout, or ``""`` if the call failed."""
        result = self.run([*args, "-o", "tsv"], check=False)
        if result.returncode != 0:
            logger.debug("cli.probe_failed", args=" ".join(args), stderr=result.stderr.strip())
            return ""
        return result.stdout.strip()

    def json(self, args: list[str]) -> Any:
        """Run with ``-o json``; parsed output, or ``None`` if the call failed."""
        result = self.run([*args, "-o", "json"], check=False)
        if result.returncode != 0 or not result.stdout.strip():
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning("cli.invalid_json", args=" ".join(args))
            return None

    def succeeds(self, args: list[str]) -> bool:
        """Run and report only whether the call exited 0."""
        return self.run(args, check=False).returncode == 0

    def combined(self, args: list[str]) -> str:
        """Run without raising; stdout and stderr joined."""
        result = self.run(args, check=False)
        return "\n".join(part for part in (result.stdout, result.stderr) if part).strip()

    def execute(self, args: list[str]) -> str:
        """Run a mutating command; raises on failure, returns stdout."""
        return self.run(args, check=True).stdout


class AzdEnvironment(CommandRunner):
    """Key/value access to the current azd environment."""

    def __init__(self, timeout: int = 60) -> None:
        super().__init__("azd", timeout=timeout)

    def get_value(self, key: str, default: str = "") -> str:
        """Value of ``key``; ``default`` when unset.

        ``azd env get-value`` prints ``ERROR: key ... not found`` for unset
        keys on some versions, so such output counts as unset.
        """
        result = self.run(["env", "get-value", key], check=False)
        value = result.stdout.strip()
        if result.returncode != 0 or not value or "ERROR:" in value:
            return default
        return value

    def set_value(self, key: str, value: str | bool) -> None:
        if isinstance(value, bool):
            value = "true" if value else "false"
        self.run(["env", "set", key, value])
        logger.debug("azd.env.set", key=key)
