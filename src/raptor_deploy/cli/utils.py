"""
CLI utility helpers - output formatting, error handling and CLI factories.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import typer
from pydantic import BaseModel
from rich.console import Console
from rich.table import Table

from raptor_deploy.azure.runner import AzdEnvironment, AzureCli
from raptor_deploy.config import DeploySettings
from raptor_deploy.errors import DeployError

console = Console()
err_console = Console(stderr=True)

STATUS_STYLE = {
    "OK": "green",
    "SKIPPED": "dim",
    "WARNING": "yellow",
    "FAILED": "red",
}


# ── Factories (patched in tests) ─────────────────────────────────────────


def get_az() -> AzureCli:
    return AzureCli()


def get_azd() -> AzdEnvironment:
    return AzdEnvironment()


def get_settings(**overrides: Any) -> DeploySettings:
    return DeploySettings.from_env(**overrides)


# ── Error handling ───────────────────────────────────────────────────────


@contextmanager
def handle_errors() -> Iterator[None]:
    """Map :class:`DeployError` to a red message and exit code 1."""
    try:
        yield
    except DeployError as exc:
        err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
        hint = exc.context.metadata.get("hint")
        if hint:
            err_console.print(f"[dim]Hint: {hint}[/dim]")
        raise typer.Exit(code=1) from exc


# ── Output helpers ───────────────────────────────────────────────────────


def output_model(model: BaseModel, *, as_json: bool = False, title: str = "") -> None:
    """Render a result model as JSON or as a key/value table."""
    if as_json:
        typer.echo(model.model_dump_json(indent=2))
        return
    _print_dict(model.model_dump(mode="json"), title=title)


def output_rows(rows: list[BaseModel], columns: list[str], *, title: str = "") -> None:
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None)
    for col in columns:
        table.add_column(col.replace("_", " ").title())
    for row in rows:
        data = row.model_dump(mode="json")
        table.add_row(*(_cell(data.get(col)) for col in columns))
    console.print(table)


def status_text(status: str) -> str:
    style = STATUS_STYLE.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, str) and value in STATUS_STYLE:
        return status_text(value)
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    table = Table(title=title or None, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, list) and value and isinstance(value[0], dict):
            value = f"{len(value)} item(s)"
        table.add_row(key, _cell(value))
    console.print(table)
