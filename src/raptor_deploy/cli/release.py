"""
Release notes and promotion email commands.

Inputs come from the workflow environment (``SRC_IMAGE``, ``TARGET_ENV``,
``MAIL_SERVER`` ...); options override them.

Examples::

    raptor-deploy release notes --out-dir .
    raptor-deploy release email
"""

from __future__ import annotations

from pathlib import Path

import typer

from raptor_deploy.cli import utils

app = typer.Typer(no_args_is_help=True)


@app.command("notes")
def notes(
    source_image: str = typer.Option(None, "--source-image", help="Image being promoted (default: SRC_IMAGE)."),
    source_repo: str = typer.Option(None, "--source-repo", help="GitHub owner/name (default: SRC_REPO)."),
    target_env: str = typer.Option(None, "--target-env", help="Target environment (default: TARGET_ENV)."),
    service: str = typer.Option(None, "--service", "-s", help="Service key (default: SERVICE or frontend)."),
    out_dir: Path = typer.Option(Path("."), "--out-dir", help="Where to write release-notes.md/.html."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Build Markdown and HTML release notes for a promotion."""
    from raptor_deploy.relnotes import ReleaseNotesRequest, build_release_notes, write_release_notes

    with utils.handle_errors():
        request = ReleaseNotesRequest.from_env(
            source_image=source_image,
            source_repo=source_repo,
            target_environment=target_env,
            service=service,
        )
        result = build_release_notes(request, az=utils.get_az())
        md_path, html_path = write_release_notes(result, out_dir)

    if json_out:
        utils.output_model(result, as_json=True)
        return
    utils.console.print(f"[green]✓[/green] Wrote {md_path} and {html_path}")


@app.command("email")
def email(
    target_env: str = typer.Option(None, "--target-env", help="Target environment (default: TARGET_ENV)."),
    service: str = typer.Option(None, "--service", "-s", help="Service key (default: SERVICE or frontend)."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Check settings and compose the subject only."),
) -> None:
    """Mail the rendered release notes. Skips when SMTP is not configured."""
    from raptor_deploy.notify import EmailSettings, check_prereqs, compose_subject, emit_summary, send_email

    with utils.handle_errors():
        settings = EmailSettings.from_env(target_environment=target_env, service=service)
        missing = check_prereqs(settings)
        if missing:
            utils.err_console.print(f"[yellow]Email skipped[/yellow]: missing {', '.join(missing)}")
            return
        subject = compose_subject(settings)
        emit_summary(settings)
        if dry_run:
            utils.console.print(f"[dim]Dry run[/dim]: would send '{subject}' to {', '.join(settings.recipients)}")
            return
        send_email(settings, subject)
    utils.console.print(f"[green]✓[/green] Sent '{subject}' to {len(settings.recipients)} recipient(s)")
