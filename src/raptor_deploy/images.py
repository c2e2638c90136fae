"""Container image reference parsing.

Splits references such as ``ngraptordev.azurecr.io/raptor/frontend-dev@sha256:abc``
into registry domain, repository, digest and tag, mirroring how the Container
Apps and ACR CLIs address images.

Examples:
    >>> ref = ImageRef.parse("ngraptordev.azurecr.io/raptor/frontend-dev@sha256:abc")
    >>> ref.registry_name, ref.repository, ref.digest
    ('ngraptordev', 'raptor/frontend-dev', 'sha256:abc')
    >>> ImageRef.parse("mcr.microsoft.com/azuredocs/containerapps-helloworld:latest").tag
    'latest'
"""

from __future__ import annotations

from dataclasses import dataclass

from raptor_deploy.naming import ACR_DOMAIN_SUFFIX


@dataclass(frozen=True)
class ImageRef:
    """A parsed image reference."""

    raw: str
    domain: str
    path: str
    repository: str
    digest: str = ""
    tag: str = ""

    @classmethod
    def parse(cls, ref: str) -> ImageRef:
        ref = ref.strip()
        domain, _, path = ref.partition("/")
        digest = ""
        tag = ""
        if "@" in path:
            repository, _, digest = path.partition("@")
        else:
            repository = path
            # a ':' in the last path segment is a tag
            last = repository.rsplit("/", 1)[-1]
            if ":" in last:
                repository, _, tag = repository.rpartition(":")
        return cls(raw=ref, domain=domain, path=path, repository=repository, digest=digest, tag=tag)

    @property
    def is_digest(self) -> bool:
        """Reference pins a digest (``repo@...``)."""
        return "@" in self.raw

    @property
    def is_sha256(self) -> bool:
        return "@sha256:" in self.raw

    @property
    def is_acr(self) -> bool:
        return self.domain.endswith(ACR_DOMAIN_SUFFIX)

    @property
    def registry_name(self) -> str:
        """ACR name (domain without ``.azurecr.io``); the domain itself otherwise."""
        if self.is_acr:
            return self.domain[: -len(ACR_DOMAIN_SUFFIX)]
        return self.domain

    def short_digest(self, length: int = 19) -> str:
        return self.digest[:length]

    def with_registry(self, domain: str, repository: str) -> str:
        """The same digest addressed in another registry/repository."""
        return f"{domain}/{repository}@{self.digest}"

    def __str__(self) -> str:
        return self.raw
