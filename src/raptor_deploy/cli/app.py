"""
Root Typer application for the raptor-deploy CLI.

azd hooks and the GitHub workflows call these commands; every sub-app
lives in its own module and is registered below.
"""

from __future__ import annotations

import typer
from typer import Typer

app = Typer(
    name="raptor-deploy",
    help="raptor-deploy: provisioning and fast-path deploys for the raptor Container Apps.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from raptor_deploy import __version__

        typer.echo(f"raptor-deploy {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(
        None, "--log-level", help="DEBUG, INFO, WARNING or ERROR (default: RAPTOR_LOG_LEVEL or INFO)."
    ),
    log_format: str | None = typer.Option(
        None, "--log-format", help="console or json (default: RAPTOR_LOG_FORMAT or console)."
    ),
) -> None:
    """raptor-deploy CLI: azd hooks, image resolution, ACR and Container App updates."""
    from raptor_deploy.logging import configure_logging

    configure_logging(level=log_level.upper() if log_level else None, format=log_format)


# ── Sub-command registration ─────────────────────────────────────────────

from raptor_deploy.cli.acr import app as acr_app  # noqa: E402
from raptor_deploy.cli.containerapp import app as containerapp_app  # noqa: E402
from raptor_deploy.cli.hooks import app as hooks_app  # noqa: E402
from raptor_deploy.cli.images import app as images_app  # noqa: E402
from raptor_deploy.cli.keyvault import app as keyvault_app  # noqa: E402
from raptor_deploy.cli.release import app as release_app  # noqa: E402
from raptor_deploy.cli.service import app as service_app  # noqa: E402
from raptor_deploy.cli.sql import app as sql_app  # noqa: E402

app.add_typer(hooks_app, name="hooks", help="azd preprovision / postprovision hooks.")
app.add_typer(images_app, name="images", help="Resolve and validate service images.")
app.add_typer(acr_app, name="acr", help="Container registry provisioning and bindings.")
app.add_typer(containerapp_app, name="app", help="Container App image updates.")
app.add_typer(service_app, name="service", help="Fast-path deploy and promotion.")
app.add_typer(keyvault_app, name="keyvault", help="Key Vault provisioning and recovery.")
app.add_typer(sql_app, name="sql", help="SQL Database identity permissions.")
app.add_typer(release_app, name="release", help="Release notes and promotion email.")


if __name__ == "__main__":
    app()
