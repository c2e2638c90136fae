"""Promotion notification email.

The promote workflow mails the rendered release notes. Each step reports
to GitHub Actions so the workflow can skip mail when SMTP is not
configured instead of failing the promotion.
"""

from __future__ import annotations

import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel

from raptor_deploy import github
from raptor_deploy.errors import NotificationError
from raptor_deploy.logging import get_logger
from raptor_deploy.relnotes import HTML_FILE, NOTES_FILE

logger = get_logger(__name__)

REQUIRED_SETTINGS = ("MAIL_SERVER", "MAIL_USERNAME", "MAIL_PASSWORD", "MAIL_TO")
SMTP_TIMEOUT = 30.0


class EmailSettings(BaseModel):
    """SMTP and message settings, normally from the workflow environment."""

    target_environment: str = ""
    service: str = "frontend"
    server: str = ""
    username: str = ""
    password: str = ""
    to: str = ""
    release_html: Path = Path(HTML_FILE)
    release_body: Path = Path(NOTES_FILE)
    subject_prefix: str = ""

    @property
    def recipients(self) -> list[str]:
        return [r.strip() for r in self.to.split(",") if r.strip()]

    @classmethod
    def from_env(cls, **overrides: Any) -> EmailSettings:
        values: dict[str, Any] = {}
        for field_name, env_var in EMAIL_ENV_MAP.items():
            env_val = os.environ.get(env_var)
            if env_val:
                values[field_name] = env_val
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


EMAIL_ENV_MAP: dict[str, str] = {
    "target_environment": "TARGET_ENV",
    "service": "SERVICE",
    "server": "MAIL_SERVER",
    "username": "MAIL_USERNAME",
    "password": "MAIL_PASSWORD",
    "to": "MAIL_TO",
    "release_html": "RELEASE_HTML",
    "release_body": "RELEASE_BODY",
    "subject_prefix": "SUBJECT_PREFIX",
}


def check_prereqs(settings: EmailSettings, *, report: bool = True) -> list[str]:
    """Names of missing SMTP settings; writes ``prereqs_ok``."""
    provided = {
        "MAIL_SERVER": settings.server,
        "MAIL_USERNAME": settings.username,
        "MAIL_PASSWORD": settings.password,
        "MAIL_TO": settings.to,
    }
    missing = [key for key in REQUIRED_SETTINGS if not provided[key]]
    if missing:
        logger.warning("email.prereqs.missing", missing=missing)
    if report:
        github.write_output("prereqs_ok", not missing)
    return missing


def compose_subject(settings: EmailSettings, *, report: bool = True) -> str:
    subject = f"RAP: Promote {settings.service} to {settings.target_environment}"
    if settings.subject_prefix:
        subject = f"{settings.subject_prefix} {subject}"
    if report:
        github.write_output("subject", subject)
    return subject


def emit_summary(settings: EmailSettings) -> bool:
    """Append the email summary (and the text notes) to the job summary."""
    parts = [
        "### Email summary",
        f"- Target environment: {settings.target_environment}",
        f"- Mail server: {settings.server}",
        f"- Recipients: {settings.to}",
    ]
    if settings.release_body.is_file():
        parts += [
            "",
            "<details><summary>Release notes (text)</summary>",
            "",
            settings.release_body.read_text(encoding="utf-8"),
            "</details>",
        ]
    return github.append_summary("\n".join(parts))


def parse_server(server: str) -> tuple[str, int, bool]:
    """``(host, port, implicit_tls)`` from ``smtp://``, ``smtps://`` or a bare host."""
    if "://" not in server:
        return server, 25, False
    parts = urlsplit(server)
    implicit_tls = parts.scheme == "smtps"
    if parts.scheme not in ("smtp", "smtps"):
        raise NotificationError(f"Unsupported mail server scheme: {parts.scheme}")
    return parts.hostname or "", parts.port or (465 if implicit_tls else 25), implicit_tls


def build_message(settings: EmailSettings, subject: str) -> MIMEMultipart:
    if not subject:
        raise NotificationError("Missing subject")
    if not settings.release_html.is_file():
        raise NotificationError(f"Missing HTML body: {settings.release_html}")

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.username
    msg["To"] = ", ".join(settings.recipients)

    if settings.release_body.is_file():
        text = settings.release_body.read_text(encoding="utf-8")
    else:
        text = "See HTML part."
    msg.attach(MIMEText(text, "plain", "utf-8"))
    msg.attach(MIMEText(settings.release_html.read_text(encoding="utf-8"), "html", "utf-8"))
    return msg


def send_email(settings: EmailSettings, subject: str) -> None:
    """Send the notes as multipart/alternative. TLS is required."""
    message = build_message(settings, subject)
    host, port, implicit_tls = parse_server(settings.server)
    smtp_class = smtplib.SMTP_SSL if implicit_tls else smtplib.SMTP
    try:
        with smtp_class(host, port, timeout=SMTP_TIMEOUT) as server:
            if not implicit_tls:
                server.starttls()
            server.login(settings.username, settings.password)
            server.sendmail(settings.username, settings.recipients, message.as_string())
    except (smtplib.SMTPException, OSError) as e:
        raise NotificationError(
            f"Email send failed via {host}:{port}. Check server/credentials.",
            cause=e,
        ) from e
    logger.info("email.sent", server=host, recipients=len(settings.recipients))
