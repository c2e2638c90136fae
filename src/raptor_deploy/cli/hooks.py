"""
azd hook commands.

Examples::

    raptor-deploy hooks preprovision
    raptor-deploy hooks postprovision --json
"""

from __future__ import annotations

import typer

from raptor_deploy.cli import utils
from raptor_deploy.results import HookRunResult

app = typer.Typer(no_args_is_help=True)


def _report(run: HookRunResult, json_out: bool) -> None:
    if json_out:
        utils.output_model(run, as_json=True)
    else:
        utils.output_rows(run.steps, ["name", "status", "message", "duration_seconds"], title=f"{run.hook} hook")
        utils.console.print(f"{utils.status_text(run.overall_status.value)} {run.summary}")
    if run.failed:
        raise typer.Exit(code=1)


@app.command("preprovision")
def preprovision(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Key Vault, image resolution, ACR binding validation and ACR setup."""
    from raptor_deploy.workflows.hooks import run_preprovision

    with utils.handle_errors():
        run = run_preprovision(utils.get_settings(), utils.get_az(), utils.get_azd())
    _report(run, json_out)


@app.command("postprovision")
def postprovision(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Grant SQL permissions to service identities (local runs only)."""
    from raptor_deploy.workflows.hooks import run_postprovision

    with utils.handle_errors():
        run = run_postprovision(utils.get_az(), utils.get_azd())
    _report(run, json_out)
