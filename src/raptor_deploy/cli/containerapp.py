"""
Container App commands.

Examples::

    raptor-deploy app update --app ca-rap-dev-fe -g rg-raptor-dev \\
        --image ngraptordev.azurecr.io/raptor/frontend-dev@sha256:abc
"""

from __future__ import annotations

import typer

from raptor_deploy.cli import utils

app = typer.Typer(no_args_is_help=True)


@app.command("update")
def update(
    app_name: str = typer.Option(..., "--app", help="Container App name."),
    resource_group: str = typer.Option(None, "--resource-group", "-g", help="Default: AZURE_RESOURCE_GROUP."),
    image: str = typer.Option(..., "--image", help="New image as a digest reference."),
    acr_name: str = typer.Option(None, "--acr", help="Registry name (default: AZURE_ACR_NAME)."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Deploy an image to an existing Container App, binding the registry first."""
    from raptor_deploy.azure.containerapp import update_container_app_image

    with utils.handle_errors():
        settings = utils.get_settings(resource_group=resource_group, acr_name=acr_name)
        settings.require("resource_group", "acr_name")
        result = update_container_app_image(
            utils.get_az(),
            app_name,
            settings.resource_group,
            image,
            settings.acr_name,
            settings.acr_domain,
            propagation_seconds=settings.rbac_propagation_seconds,
        )
    utils.output_model(result, as_json=json_out, title=f"Updated {app_name}")
