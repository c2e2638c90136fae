"""
Fast-path deploy and promotion commands.

Both commands always exit 0 when the fast path is merely unavailable: the
``didFastPath`` output tells the workflow to fall back to ``azd deploy``.
Errors before the fast path starts (no ``az`` on PATH, say) exit 1 and
still report ``didFastPath=false``.

Examples::

    raptor-deploy service deploy --service frontend
    raptor-deploy service promote --service backend --target-env prod \\
        --source-image ngraptordev.azurecr.io/raptor/backend-dev@sha256:abc
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import typer

from raptor_deploy import github
from raptor_deploy.cli import utils
from raptor_deploy.errors import DeployError
from raptor_deploy.results import FastPathResult

app = typer.Typer(no_args_is_help=True)


def _show(result: FastPathResult, json_out: bool) -> None:
    if json_out:
        utils.output_model(result, as_json=True)
    elif result.did_fast_path:
        utils.console.print(f"[green]✓[/green] {result.app_name} now runs {result.image}")
    else:
        utils.console.print(f"[yellow]Fast path unavailable[/yellow]: {result.reason}")


@contextmanager
def _fast_path_boundary(report: bool) -> Iterator[None]:
    """Record ``didFastPath=false`` when setup fails before the workflow runs."""
    try:
        yield
    except DeployError:
        if report:
            github.write_output("didFastPath", False)
        raise


@app.command("deploy")
def deploy(
    service: str = typer.Option(..., "--service", "-s", help="Service key (frontend, backend, processes)."),
    report: bool = typer.Option(True, "--report/--no-report", help="Write didFastPath to GITHUB_OUTPUT."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Point the service's Container App at the image recorded in azd."""
    from raptor_deploy.workflows.deploy import deploy_service_image

    with utils.handle_errors(), _fast_path_boundary(report):
        result = deploy_service_image(service, utils.get_settings(), utils.get_az(), utils.get_azd(), report=report)
    _show(result, json_out)


@app.command("promote")
def promote(
    service: str = typer.Option(..., "--service", "-s", help="Service key (frontend, backend, processes)."),
    source_image: str = typer.Option(..., "--source-image", help="Digest reference in the source registry."),
    target_env: str = typer.Option(..., "--target-env", help="Target azd environment name."),
    resource_group: str = typer.Option(None, "--resource-group", "-g", help="Default: AZURE_RESOURCE_GROUP."),
    acr_name: str = typer.Option(None, "--acr", help="Target registry (default: AZURE_ACR_NAME)."),
    source_acr: str = typer.Option(None, "--source-acr", help="Source registry (default: AZURE_ACR_NAME_SRC)."),
    report: bool = typer.Option(True, "--report/--no-report", help="Write didFastPath to GITHUB_OUTPUT."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Import a digest into the target registry and deploy it."""
    from raptor_deploy.workflows.deploy import promote_service_image

    with utils.handle_errors(), _fast_path_boundary(report):
        settings = utils.get_settings(
            environment=target_env,
            resource_group=resource_group,
            acr_name=acr_name,
            source_acr_name=source_acr,
        )
        result = promote_service_image(service, source_image, target_env, settings, utils.get_az(), report=report)
    _show(result, json_out)
