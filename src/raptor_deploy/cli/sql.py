"""
SQL Database commands.

Examples::

    raptor-deploy sql permissions
    raptor-deploy sql directory-readers
    raptor-deploy sql script --database raptor -g rg-raptor-dev > grant.sql
"""

from __future__ import annotations

import typer

from raptor_deploy.cli import utils
from raptor_deploy.results import StepStatus

app = typer.Typer(no_args_is_help=True)


@app.command("permissions")
def permissions(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Create database users for the service identities and grant roles."""
    from raptor_deploy.azure.sql import ensure_sql_permissions

    with utils.handle_errors():
        result = ensure_sql_permissions(utils.get_az(), utils.get_azd())

    if json_out:
        utils.output_model(result, as_json=True)
        return
    utils.console.print(f"{utils.status_text(result.status.value)} {result.message}")
    if result.script:
        utils.console.print(result.script, markup=False, highlight=False)


@app.command("directory-readers")
def directory_readers(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Add the SQL server's identity to the Directory Readers role."""
    from raptor_deploy.azure.sql import grant_directory_readers

    with utils.handle_errors():
        result = grant_directory_readers(utils.get_az(), utils.get_azd())

    if json_out:
        utils.output_model(result, as_json=True)
    else:
        utils.console.print(f"{utils.status_text(result.status.value)} {result.message}")
    if result.status == StepStatus.FAILED:
        raise typer.Exit(code=1)


@app.command("script")
def script(
    database: str = typer.Option(..., "--database", "-d", help="Database name."),
    resource_group: str = typer.Option(None, "--resource-group", "-g", help="Default: AZURE_RESOURCE_GROUP."),
) -> None:
    """Print the T-SQL that grants the service identities database access."""
    from raptor_deploy.azure.sql import find_identities, render_permissions_script

    with utils.handle_errors():
        settings = utils.get_settings(resource_group=resource_group)
        settings.require("resource_group")
        identities = find_identities(utils.get_az(), settings.resource_group)
        text = render_permissions_script(database, identities)
    typer.echo(text, nl=False)
