"""
Key Vault commands.

Examples::

    raptor-deploy keyvault ensure
    raptor-deploy keyvault recover --json
"""

from __future__ import annotations

import typer

from raptor_deploy.cli import utils
from raptor_deploy.results import KeyVaultResult

app = typer.Typer(no_args_is_help=True)


def _show(result: KeyVaultResult, json_out: bool) -> None:
    if json_out:
        utils.output_model(result, as_json=True)
        return
    utils.console.print(f"[bold]{result.name}[/bold] ({result.action}) {result.message}")
    for warning in result.warnings:
        utils.err_console.print(f"[yellow]Warning[/yellow] {warning}")


@app.command("ensure")
def ensure(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Create, recover or confirm the environment's Key Vault."""
    from raptor_deploy.azure.keyvault import ensure_keyvault, secrets_from_env

    with utils.handle_errors():
        result = ensure_keyvault(utils.get_settings(), utils.get_az(), utils.get_azd(), secrets_from_env())
    _show(result, json_out)


@app.command("recover")
def recover(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Recover a soft-deleted vault. Never fails the deployment."""
    from raptor_deploy.azure.keyvault import recover_keyvault

    with utils.handle_errors():
        result = recover_keyvault(utils.get_settings(), utils.get_az())
    _show(result, json_out)
