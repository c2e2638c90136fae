"""Release notes for a promotion.

Given the image being promoted and what is currently deployed in the
target environment, work out the two git commits (from OCI image labels),
and render Markdown and HTML notes with a compare link and a commit table
from the GitHub compare API.

Key Concepts:
    ReleaseNotesRequest: Inputs, normally read from the workflow
        environment via ``from_env()``.
    Previous digest: Given explicitly, else resolved from a tag-based
        previous image on the target ACR, else the newest digest in the
        target repository.
    Previous commit: Looked up against the previous image's own
        registry/repository, then the target repository, then the source
        repository, since promotions import the same digest everywhere.
    GitHub token: ``GITHUB_TOKEN`` only reads the repository the workflow
        runs in; other source repositories need a read token.

Architecture Decisions:
    - Every lookup is best-effort. Missing labels or API failures reduce
      the notes to image digests; they never fail the promotion.
    - GitHub access goes through httpx, sharing a client with the OCI
      label reader so tests can mock both with one transport.

Tags:
    release-notes, github, oci, promotion, html
"""

from __future__ import annotations

import html
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from raptor_deploy import github, naming
from raptor_deploy.azure.acr import Registry
from raptor_deploy.azure.runner import AzureCli
from raptor_deploy.errors import ConfigError, ErrorContext, MissingConfigError
from raptor_deploy.images import ImageRef
from raptor_deploy.logging import get_logger
from raptor_deploy.registry import RegistryClient

logger = get_logger(__name__)

GITHUB_API = "https://api.github.com"
NOTES_FILE = "release-notes.md"
HTML_FILE = "release-notes.html"
FULL_SHA_LENGTH = 40
SHORT_SHA_LENGTH = 7


class ReleaseNotesRequest(BaseModel):
    """Inputs for :func:`build_release_notes`."""

    source_image: str
    source_repo: str = Field(description="GitHub owner/name of the service source")
    target_environment: str
    service: str = "frontend"
    subscription_id: str = ""
    target_acr: str = ""
    previous_image: str = ""
    previous_digest: str = ""
    commits_table_limit: int = 50
    build_url: str = ""
    github_repository: str = ""
    github_token: str = ""
    repo_read_token: str = ""

    @property
    def owner(self) -> str:
        return self.source_repo.split("/", 1)[0]

    @property
    def repo_name(self) -> str:
        return self.source_repo.split("/", 1)[-1]

    @property
    def repo_url(self) -> str:
        return f"https://github.com/{self.source_repo}"

    @property
    def target_repository(self) -> str:
        return naming.acr_repository(self.service, self.target_environment)

    def token(self) -> str:
        """Token able to read ``source_repo``."""
        if self.github_repository == self.source_repo:
            return self.github_token
        return self.repo_read_token

    @classmethod
    def from_env(cls, **overrides: Any) -> ReleaseNotesRequest:
        """Build from the workflow environment; kwargs win over env vars."""
        values: dict[str, Any] = {}
        for field_name, env_var in RELNOTES_ENV_MAP.items():
            env_val = os.environ.get(env_var)
            if env_val:
                values[field_name] = env_val
        if not values.get("repo_read_token") and os.environ.get("FRONTEND_REPO_READ_TOKEN"):
            values["repo_read_token"] = os.environ["FRONTEND_REPO_READ_TOKEN"]
        values.update({k: v for k, v in overrides.items() if v is not None})
        missing = [RELNOTES_ENV_MAP[f] for f in ("source_image", "source_repo", "target_environment") if not values.get(f)]
        if missing:
            raise MissingConfigError(missing)
        try:
            return cls(**values)
        except ValidationError as exc:
            bad = [RELNOTES_ENV_MAP.get(str(err["loc"][0]), str(err["loc"][0])) for err in exc.errors()]
            raise ConfigError(
                f"Invalid release notes settings: {', '.join(bad)}",
                context=ErrorContext(metadata={"keys": bad}),
                cause=exc,
            ) from exc


RELNOTES_ENV_MAP: dict[str, str] = {
    "source_image": "SRC_IMAGE",
    "source_repo": "SRC_REPO",
    "target_environment": "TARGET_ENV",
    "service": "SERVICE",
    "subscription_id": "SUB",
    "target_acr": "TGT_ACR",
    "previous_image": "PREV_IMAGE",
    "previous_digest": "PREV_DIGEST",
    "commits_table_limit": "COMMITS_TABLE_LIMIT",
    "build_url": "BUILD_URL",
    "github_repository": "GITHUB_REPOSITORY",
    "github_token": "GITHUB_TOKEN",
    "repo_read_token": "REPO_READ_TOKEN",
}


class CommitInfo(BaseModel):
    sha: str
    url: str = ""
    message: str = ""
    author: str = "n/a"
    date: str = "n/a"

    @property
    def short(self) -> str:
        return self.sha[:SHORT_SHA_LENGTH]


class ReleaseNotes(BaseModel):
    """Rendered release notes plus the facts they were built from."""

    service: str
    target_environment: str
    source_image: str
    new_digest: str = ""
    previous_digest: str = ""
    new_sha: str = ""
    previous_sha: str = ""
    commits: list[CommitInfo] = Field(default_factory=list)
    total_commits: int = 0
    commits_fetched: bool = False
    commits_error: str = ""
    markdown: str = ""
    html: str = ""

    @property
    def new_short(self) -> str:
        return self.new_sha[:SHORT_SHA_LENGTH]

    @property
    def previous_short(self) -> str:
        return self.previous_sha[:SHORT_SHA_LENGTH]


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


class GitHubClient:
    """Minimal GitHub REST client for commit lookups."""

    def __init__(self, token: str, http: httpx.Client | None = None, base_url: str = GITHUB_API) -> None:
        self.token = token
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.Client(timeout=30.0)
        self._owns_http = http is None

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _get(self, path: str) -> dict[str, Any] | None:
        if not self.token:
            return None
        try:
            resp = self._http.get(
                f"{self.base_url}{path}",
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("github.request.failed", path=path, error=str(exc))
            return None
        if resp.status_code not in (200, 201, 204):
            logger.warning("github.request.status", path=path, status=resp.status_code)
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    def resolve_full_sha(self, owner: str, repo: str, ref: str) -> str:
        """Expand an abbreviated SHA; returns ``ref`` unchanged on any failure."""
        if not ref:
            return ref
        data = self._get(f"/repos/{owner}/{repo}/commits/{ref}")
        return (data or {}).get("sha") or ref

    def compare(self, owner: str, repo: str, base: str, head: str) -> list[dict[str, Any]] | None:
        data = self._get(f"/repos/{owner}/{repo}/compare/{base}...{head}")
        if data is None:
            return None
        return data.get("commits") or []


def _commit_info(raw: dict[str, Any]) -> CommitInfo:
    commit = raw.get("commit") or {}
    author = (commit.get("author") or {}).get("name") or (raw.get("author") or {}).get("login") or "n/a"
    date = (commit.get("author") or {}).get("date") or (commit.get("committer") or {}).get("date") or "n/a"
    return CommitInfo(
        sha=raw.get("sha", ""),
        url=raw.get("html_url") or "",
        message=(commit.get("message") or "").split("\n", 1)[0],
        author=author,
        date=date,
    )


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def resolve_previous_digest(request: ReleaseNotesRequest, az: AzureCli | None) -> str:
    if request.previous_digest:
        return request.previous_digest
    if az is None or not request.target_acr:
        return ""

    target = Registry(az, request.target_acr, subscription=request.subscription_id or None)
    if request.previous_image:
        prev = ImageRef.parse(request.previous_image)
        if prev.tag and prev.registry_name == request.target_acr:
            digest = target.digest_for_tag(prev.repository, prev.tag)
            if digest:
                return digest
    # Manual dispatch with no record of the previous image.
    return target.latest_digest(request.target_repository)


def build_release_notes(
    request: ReleaseNotesRequest,
    *,
    az: AzureCli | None = None,
    http: httpx.Client | None = None,
    registry_factory: Callable[[str], RegistryClient] | None = None,
) -> ReleaseNotes:
    """Resolve commits and render both note formats.

    Registry and GitHub lookups share one ``httpx.Client``; when ``http`` is
    not given, one is opened here and closed before returning.
    """
    if http is None:
        with httpx.Client(timeout=30.0) as client:
            return build_release_notes(request, az=az, http=client, registry_factory=registry_factory)

    if az is not None and not request.subscription_id:
        request = request.model_copy(update={"subscription_id": az.tsv(["account", "show", "--query", "id"])})

    if registry_factory is None:
        def registry_factory(name: str) -> RegistryClient:
            if az is None:
                return RegistryClient(name, lambda: "", http=http)
            return RegistryClient(name, Registry(az, name).login_token, http=http)

    source = ImageRef.parse(request.source_image)
    notes = ReleaseNotes(
        service=request.service,
        target_environment=request.target_environment,
        source_image=request.source_image,
        new_digest=source.digest,
        previous_digest=resolve_previous_digest(request, az),
    )

    def commit_of(registry: str, repository: str, digest: str) -> str:
        if not registry or not repository or not digest:
            return ""
        return registry_factory(registry).get_commit(repository, digest) or ""

    notes.new_sha = commit_of(source.registry_name, source.repository, notes.new_digest)
    if notes.previous_digest:
        candidates: list[tuple[str, str]] = []
        if request.previous_image:
            prev = ImageRef.parse(request.previous_image)
            candidates.append((prev.registry_name, prev.repository))
        if request.target_acr:
            candidates.append((request.target_acr, request.target_repository))
        candidates.append((source.registry_name, source.repository))
        for registry, repository in candidates:
            notes.previous_sha = commit_of(registry, repository, notes.previous_digest)
            if notes.previous_sha:
                break

    gh = GitHubClient(request.token(), http=http)
    if notes.new_sha and len(notes.new_sha) < FULL_SHA_LENGTH:
        notes.new_sha = gh.resolve_full_sha(request.owner, request.repo_name, notes.new_sha)
    if notes.previous_sha and len(notes.previous_sha) < FULL_SHA_LENGTH:
        notes.previous_sha = gh.resolve_full_sha(request.owner, request.repo_name, notes.previous_sha)

    if notes.previous_digest and notes.new_sha and notes.previous_sha and notes.new_sha != notes.previous_sha:
        if gh.token:
            raw = gh.compare(request.owner, request.repo_name, notes.previous_sha, notes.new_sha)
            if raw is None:
                notes.commits_error = "Commit details unavailable; see the compare link above."
            else:
                notes.commits_fetched = True
                notes.total_commits = len(raw)
                notes.commits = [_commit_info(c) for c in raw[: request.commits_table_limit]]
        else:
            logger.warning("relnotes.no_token", repo=request.source_repo)

    notes.markdown = render_markdown(request, notes)
    notes.html = render_html(request, notes)
    logger.info(
        "relnotes.built",
        service=request.service,
        target=request.target_environment,
        new=notes.new_short or None,
        previous=notes.previous_short or None,
        commits=len(notes.commits),
    )
    return notes


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_markdown(request: ReleaseNotesRequest, notes: ReleaseNotes) -> str:
    lines = [
        f"## Release notes: Promote {request.service} to {request.target_environment}",
        "",
        f"- Target environment: {request.target_environment}",
        f"- New image: {request.source_image}",
        f"- Previously deployed digest: {notes.previous_digest or '(none - first promotion)'}",
        "",
    ]
    if notes.new_sha and notes.previous_sha:
        if notes.new_sha == notes.previous_sha:
            lines += ["### Changes", "", f"No code changes detected (same commit: {notes.new_short})."]
        else:
            lines += [
                f"### Changes ({notes.previous_short} → {notes.new_short})",
                "",
                f"Compare: {request.repo_url}/compare/{notes.previous_sha}...{notes.new_sha}",
            ]
    else:
        lines.append("Commit SHAs not available from image labels. Showing image digests only.")
    return "\n".join(lines) + "\n"


def _commit_row(commit: CommitInfo) -> str:
    message = html.escape(commit.message, quote=False)
    if commit.url:
        sha_cell = f'<a href="{commit.url}">{commit.short}</a>'
    else:
        sha_cell = f"<code>{commit.short}</code>"
    return f"<tr><td>{sha_cell}</td><td>{message}</td><td>{commit.author}</td><td><code>{commit.date}</code></td></tr>"


def render_html(request: ReleaseNotesRequest, notes: ReleaseNotes) -> str:
    env = request.target_environment
    out = [
        f"<h2>Release notes: Promote {request.service} to {env}</h2>",
        f"<p><strong>Target environment:</strong> {env}</p>",
        f"<p><strong>New image:</strong> {request.source_image}</p>",
        f"<p><strong>Previously deployed digest:</strong> {notes.previous_digest or '(none - first promotion)'}</p>",
    ]
    if request.build_url:
        out.append(f'<p><a href="{request.build_url}">Build details</a></p>')

    if notes.previous_digest:
        out.append("<h3>Changes</h3>")
        out.append(f"<p>Digest change: <code>{notes.previous_digest}</code> → <code>{notes.new_digest}</code></p>")
        if notes.new_sha and notes.previous_sha:
            if notes.new_sha == notes.previous_sha:
                out.append(f"<p>No code changes detected (same commit: <code>{notes.new_short}</code>).</p>")
            else:
                out.append(
                    f'<p>Compare commits: <a href="{request.repo_url}/compare/{notes.previous_sha}...{notes.new_sha}">'
                    f"{notes.previous_short} → {notes.new_short}</a></p>"
                )
                if notes.commits_fetched or notes.commits_error:
                    out.append("<details><summary>Commit log</summary>")
                    if notes.commits_error:
                        out.append(f"<p>({notes.commits_error})</p>")
                    else:
                        out.append(
                            '<table border="1" cellpadding="6" cellspacing="0"><thead><tr>'
                            '<th align="left">SHA</th><th align="left">Message</th>'
                            '<th align="left">Author</th><th align="left">Date</th>'
                            "</tr></thead><tbody>"
                        )
                        out.extend(_commit_row(c) for c in notes.commits)
                        out.append("</tbody></table>")
                        if notes.total_commits > len(notes.commits):
                            out.append(
                                f"<p>Showing first {len(notes.commits)} of {notes.total_commits} commits. "
                                "See the compare link above for the full list.</p>"
                            )
                    out.append("</details>")
        else:
            out.append("<p>Commit SHAs not available from image labels.</p>")
    return "\n".join(out) + "\n"


def write_release_notes(notes: ReleaseNotes, directory: Path = Path("."), *, outputs: bool = True) -> tuple[Path, Path]:
    """Write ``release-notes.md``/``.html`` and the ``body``/``html`` step outputs."""
    md_path = directory / NOTES_FILE
    html_path = directory / HTML_FILE
    md_path.write_text(notes.markdown, encoding="utf-8")
    html_path.write_text(notes.html, encoding="utf-8")
    if outputs:
        github.write_output("body", notes.markdown)
        github.write_output("html", notes.html)
    return md_path, html_path
