"""
Container registry commands.

Examples::

    raptor-deploy acr ensure
    raptor-deploy acr bind --app ca-rap-dev-fe --resource-group rg-raptor-dev
    raptor-deploy acr commit ngraptordev.azurecr.io/raptor/frontend-dev@sha256:abc
"""

from __future__ import annotations

import json

import typer

from raptor_deploy.cli import utils

app = typer.Typer(no_args_is_help=True)


@app.command("ensure")
def ensure(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Create or adopt the environment's registry after a role preflight."""
    from raptor_deploy.azure.acr import ensure_acr

    with utils.handle_errors():
        result = ensure_acr(utils.get_settings(), utils.get_az(), utils.get_azd())

    if json_out:
        utils.output_model(result, as_json=True)
        return
    utils.output_model(result, title=f"ACR {result.acr_name}")
    for warning in result.warnings:
        utils.err_console.print(f"[yellow]Warning[/yellow] {warning}")


@app.command("bind")
def bind(
    app_name: str = typer.Option(..., "--app", help="Container App name."),
    resource_group: str = typer.Option(..., "--resource-group", "-g", help="Container App resource group."),
    acr_name: str = typer.Option(None, "--acr", help="Registry name (default: AZURE_ACR_NAME)."),
    acr_resource_group: str = typer.Option(
        None, "--acr-resource-group", help="Registry resource group (default: search the subscription)."
    ),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Give a Container App a managed identity with AcrPull on the registry."""
    from raptor_deploy.azure.containerapp import ensure_acr_binding

    with utils.handle_errors():
        settings = utils.get_settings(acr_name=acr_name)
        settings.require("acr_name")
        result = ensure_acr_binding(
            utils.get_az(),
            app_name,
            resource_group,
            settings.acr_name,
            settings.acr_domain,
            acr_resource_group=acr_resource_group or settings.acr_resource_group or None,
            propagation_seconds=settings.rbac_propagation_seconds,
        )
    utils.output_model(result, as_json=json_out, title="Registry binding")


@app.command("commit")
def commit(
    image: str = typer.Argument(..., help="Digest reference, e.g. <acr>.azurecr.io/<repo>@sha256:..."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Print the git commit recorded in an image's OCI labels."""
    from raptor_deploy.azure.acr import Registry
    from raptor_deploy.images import ImageRef
    from raptor_deploy.registry import get_commit_from_image

    ref = ImageRef.parse(image)
    if not ref.digest or not ref.is_acr:
        utils.err_console.print(f"[bold red]Error[/bold red] Not an ACR digest reference: {image}")
        raise typer.Exit(code=1)

    with utils.handle_errors():
        token_provider = Registry(utils.get_az(), ref.registry_name).login_token
        sha = get_commit_from_image(ref.registry_name, ref.repository, ref.digest, token_provider)

    if json_out:
        typer.echo(json.dumps({"image": image, "commit": sha}, indent=2))
        return
    if not sha:
        utils.err_console.print("[yellow]No commit label found[/yellow]")
        raise typer.Exit(code=1)
    typer.echo(sha)
