"""Read image labels from ACR through the OCI Distribution API.

Release notes need the git commit an image was built from. CI stamps it
into the image config as ``org.opencontainers.image.revision``; reading it
takes four requests: token exchange, manifest, (child manifest for
multi-platform images), config blob.

Key Concepts:
    Token exchange: ``az acr login --expose-token`` yields an ACR refresh
        token; ``POST /oauth2/token`` exchanges it for a repository-scoped
        pull token.
    Index manifests: For an OCI index or Docker manifest list every child
        manifest is tried in order until one carries a revision label.
    Failure policy: Every lookup returns ``None`` on failure and logs a
        warning. A missing commit degrades release notes; it never fails a
        promotion.

Tags:
    oci, registry, acr, labels, httpx
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx

from raptor_deploy.logging import get_logger
from raptor_deploy.naming import acr_domain

logger = get_logger(__name__)

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

INDEX_MEDIA_TYPES = (OCI_INDEX, DOCKER_MANIFEST_LIST)
MANIFEST_ACCEPT = ", ".join((OCI_MANIFEST, DOCKER_MANIFEST, OCI_INDEX, DOCKER_MANIFEST_LIST))

REVISION_LABELS = ("org.opencontainers.image.revision", "org.opencontainers.image.vcs-ref")


def revision_from_config(config: dict[str, Any]) -> str | None:
    """Commit SHA recorded in an image config blob.

    Precedence: ``config.Labels`` then ``container_config.Labels``, each
    with the OCI ``revision`` label before ``vcs-ref``; finally any label
    whose key matches one of those case-insensitively.
    """
    label_sets = [
        (config.get(section) or {}).get("Labels") or {}
        for section in ("config", "container_config")
    ]
    for labels in label_sets:
        for key in REVISION_LABELS:
            if labels.get(key):
                return labels[key]
    for labels in label_sets:
        for key, value in labels.items():
            if key.lower() in REVISION_LABELS and value:
                return value
    return None


class RegistryClient:
    """OCI Distribution client for one ACR.

    Parameters
    ----------
    registry
        ACR name (``ngraptordev``), not the login server.
    token_provider
        Returns an ACR refresh token, normally ``Registry.login_token``.
    http
        Optional ``httpx.Client``; tests pass one with a ``MockTransport``.
    """

    def __init__(
        self,
        registry: str,
        token_provider: Callable[[], str],
        http: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.registry = registry
        self.domain = acr_domain(registry)
        self.base_url = f"https://{self.domain}"
        self._token_provider = token_provider
        self._http = http or httpx.Client(timeout=timeout)
        self._owns_http = http is None

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Protocol steps
    # ------------------------------------------------------------------

    def access_token(self, repository: str) -> str | None:
        """Exchange the ACR refresh token for a pull token on ``repository``."""
        refresh = self._token_provider()
        if not refresh:
            logger.warning("registry.refresh_token.missing", registry=self.registry)
            return None
        try:
            resp = self._http.post(
                f"{self.base_url}/oauth2/token",
                data={
                    "grant_type": "refresh_token",
                    "service": self.domain,
                    "scope": f"repository:{repository}:pull",
                    "refresh_token": refresh,
                },
            )
            resp.raise_for_status()
            token = resp.json().get("access_token")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("registry.token_exchange.failed", registry=self.registry, error=str(exc))
            return None
        if not token:
            logger.warning("registry.token_exchange.empty", registry=self.registry)
        return token or None

    def _get_json(self, url: str, token: str, accept: str | None = None) -> dict[str, Any] | None:
        headers = {"Authorization": f"Bearer {token}"}
        if accept:
            headers["Accept"] = accept
        try:
            resp = self._http.get(url, headers=headers, follow_redirects=True)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("registry.fetch.failed", url=url, error=str(exc))
            return None

    def manifest(self, repository: str, reference: str, token: str) -> dict[str, Any] | None:
        return self._get_json(f"{self.base_url}/v2/{repository}/manifests/{reference}", token, MANIFEST_ACCEPT)

    def config_blob(self, repository: str, digest: str, token: str) -> dict[str, Any] | None:
        # ACR answers blob requests with a redirect to storage.
        return self._get_json(f"{self.base_url}/v2/{repository}/blobs/{digest}", token)

    def _revision_of_manifest(self, repository: str, manifest: dict[str, Any], token: str) -> str | None:
        config_digest = (manifest.get("config") or {}).get("digest")
        if not config_digest:
            logger.warning("registry.config_digest.missing", repository=repository)
            return None
        config = self.config_blob(repository, config_digest, token)
        if config is None:
            return None
        return revision_from_config(config)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_commit(self, repository: str, digest: str) -> str | None:
        """Commit SHA from the image's labels, or None."""
        if not digest:
            return None
        token = self.access_token(repository)
        if not token:
            return None
        manifest = self.manifest(repository, digest, token)
        if manifest is None:
            return None

        if manifest.get("mediaType") in INDEX_MEDIA_TYPES:
            for child in manifest.get("manifests") or []:
                child_digest = child.get("digest")
                if not child_digest:
                    continue
                child_manifest = self.manifest(repository, child_digest, token)
                if child_manifest is None:
                    continue
                revision = self._revision_of_manifest(repository, child_manifest, token)
                if revision:
                    return revision
            logger.warning("registry.index.no_revision", repository=repository, digest=digest)
            return None

        return self._revision_of_manifest(repository, manifest, token)


def get_commit_from_image(
    registry: str,
    repository: str,
    digest: str,
    token_provider: Callable[[], str],
    http: httpx.Client | None = None,
) -> str | None:
    """One-shot :meth:`RegistryClient.get_commit`."""
    with RegistryClient(registry, token_provider, http=http) as client:
        return client.get_commit(repository, digest)
