"""azd lifecycle hooks.

``azure.yaml`` points ``preprovision`` and ``postprovision`` at
``raptor-deploy hooks ...``; these functions are what those commands run.

Key Concepts:
    run_preprovision: Key Vault -> resolve images -> validate ACR binding
        -> ensure ACR. Fails fast: the first failed step stops the hook,
        and later steps are not run.
    run_postprovision: Local-only SQL permission grants. Under GitHub
        Actions a dedicated workflow job does this instead.

Architecture Decisions:
    - Each step returns its own result model; the hook records a
      :class:`StepResult` per step and ``mark_complete()`` derives the
      overall status, the same way a deploy run is summarised.

Tags:
    azd, hooks, preprovision, postprovision, orchestration
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from raptor_deploy import github
from raptor_deploy.azure.acr import ensure_acr
from raptor_deploy.azure.keyvault import ensure_keyvault, secrets_from_env
from raptor_deploy.azure.runner import AzdEnvironment, AzureCli
from raptor_deploy.azure.sql import ensure_sql_permissions
from raptor_deploy.config import DeploySettings
from raptor_deploy.errors import DeployError
from raptor_deploy.logging import get_logger, log_scope
from raptor_deploy.results import HookRunResult, StepResult, StepStatus
from raptor_deploy.workflows.images import resolve_images, validate_acr_binding

logger = get_logger(__name__)


def _status_of(outcome: Any) -> StepStatus:
    status = getattr(outcome, "status", None)
    if isinstance(status, StepStatus):
        return status
    warnings = getattr(outcome, "warnings", None)
    return StepStatus.WARNING if warnings else StepStatus.OK


def run_step(run: HookRunResult, name: str, fn: Callable[[], Any]) -> StepResult:
    """Run one hook step and append its :class:`StepResult` to ``run``."""
    step = StepResult(name=name)
    started = time.monotonic()
    with log_scope(step=name):
        try:
            outcome = fn()
            step.status = _status_of(outcome)
            step.message = getattr(outcome, "message", "") or ""
        except DeployError as exc:
            step.status = StepStatus.FAILED
            step.message = exc.message
            logger.error("hook.step.failed", **exc.to_dict())
        finally:
            step.duration_seconds = round(time.monotonic() - started, 3)
    run.steps.append(step)
    logger.info("hook.step.done", step=name, status=step.status.value)
    return step


def run_preprovision(
    settings: DeploySettings,
    az: AzureCli,
    azd: AzdEnvironment,
) -> HookRunResult:
    run = HookRunResult(hook="preprovision")
    steps: list[tuple[str, Callable[[], Any]]] = [
        ("keyvault", lambda: ensure_keyvault(settings, az, azd, secrets_from_env())),
        ("resolve-images", lambda: resolve_images(az, azd, settings.services)),
        ("validate-acr-binding", lambda: validate_acr_binding(azd, settings.services)),
        ("ensure-acr", lambda: ensure_acr(settings, az, azd)),
    ]
    for index, (name, fn) in enumerate(steps, start=1):
        logger.info("hook.step.start", step=name, position=f"{index}/{len(steps)}")
        if run_step(run, name, fn).status == StepStatus.FAILED:
            break
    run.mark_complete()
    return run


def run_postprovision(az: AzureCli, azd: AzdEnvironment) -> HookRunResult:
    run = HookRunResult(hook="postprovision")
    if github.running_in_actions():
        run.steps.append(StepResult(
            name="sql-permissions",
            status=StepStatus.SKIPPED,
            message="GitHub Actions: SQL permissions are granted by the workflow job",
        ))
    elif azd.get_value("ENABLE_SQL_DATABASE", "true") != "true":
        run.steps.append(StepResult(name="sql-permissions", status=StepStatus.SKIPPED, message="SQL Database is disabled"))
    else:
        run_step(run, "sql-permissions", lambda: ensure_sql_permissions(az, azd))
    run.mark_complete()
    return run
