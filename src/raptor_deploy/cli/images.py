"""
Image resolution commands.

Examples::

    raptor-deploy images resolve
    raptor-deploy images validate --service frontend --json
"""

from __future__ import annotations

import typer

from raptor_deploy.cli import utils
from raptor_deploy.results import StepStatus

app = typer.Typer(no_args_is_help=True)


@app.command("resolve")
def resolve(
    service: list[str] = typer.Option(None, "--service", "-s", help="Service key (repeatable). Default: all."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Pick an image per service and write it back to the azd environment."""
    from raptor_deploy.workflows.images import resolve_images

    with utils.handle_errors():
        result = resolve_images(utils.get_az(), utils.get_azd(), service or None)

    if json_out:
        utils.output_model(result, as_json=True)
        return
    utils.output_rows(result.services, ["service", "image", "source", "skip_acr_pull", "message"], title="Images")
    utils.console.print(f"{utils.status_text(result.status.value)} {result.message}")


@app.command("validate")
def validate(
    service: list[str] = typer.Option(None, "--service", "-s", help="Service key (repeatable). Default: all."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Check that ACR images and skip-pull flags agree."""
    from raptor_deploy.workflows.images import validate_acr_binding

    with utils.handle_errors():
        result = validate_acr_binding(utils.get_azd(), service or None)

    if json_out:
        utils.output_model(result, as_json=True)
    else:
        utils.output_rows(result.checks, ["service", "image", "uses_acr", "skip_flag", "status", "message"])
        utils.console.print(f"{utils.status_text(result.status.value)} {result.message}")
    if result.status == StepStatus.FAILED:
        raise typer.Exit(code=1)
