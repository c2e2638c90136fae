"""Azure Container Registry operations.

Thin, typed wrappers over ``az acr`` used by image resolution, the
Container App update and promotions.

Key Concepts:
    Registry: One ACR addressed by name. Probes (``latest_digest``,
        ``has_digest``, ``find_tag``) return empty values instead of raising,
        because "not there" is an expected answer; mutations
        (``import_image``, ``create``) raise :class:`AzureCliError`.
    RepositoryState: EXISTS / MISSING / UNKNOWN. UNKNOWN means the CLI
        answered with an error, typically missing data-plane permissions,
        and callers must treat the image as possibly gone.

Tags:
    acr, registry, manifests, tags, import
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from raptor_deploy import naming
from raptor_deploy.azure.runner import AzdEnvironment, AzureCli
from raptor_deploy.config import DeploySettings
from raptor_deploy.errors import (
    ErrorContext,
    MissingConfigError,
    PermissionPreflightError,
    PreconditionError,
    RegistryError,
)
from raptor_deploy.images import ImageRef
from raptor_deploy.logging import get_logger
from raptor_deploy.naming import acr_domain
from raptor_deploy.results import AcrEnsureResult, ImageCheck, ImageResolution, ImageSource

logger = get_logger(__name__)

SHORT_COMMIT_LENGTH = 12


class RepositoryState(str, Enum):
    EXISTS = "exists"
    MISSING = "missing"
    UNKNOWN = "unknown"


class Registry:
    """An Azure Container Registry.

    Example::

        reg = Registry(AzureCli(), "ngraptordev")
        digest = reg.latest_digest("raptor/frontend-dev")
    """

    def __init__(self, az: AzureCli, name: str, subscription: str | None = None) -> None:
        self.az = az
        self.name = name
        self.subscription = subscription

    @property
    def domain(self) -> str:
        return acr_domain(self.name)

    def _scoped(self, args: list[str]) -> list[str]:
        if self.subscription:
            return [*args, "--subscription", self.subscription]
        return args

    # ------------------------------------------------------------------
    # Registry resource
    # ------------------------------------------------------------------

    def show(self) -> dict[str, Any] | None:
        """Registry resource JSON, or None when not visible to the caller."""
        return self.az.json(self._scoped(["acr", "show", "-n", self.name]))

    def resource_id(self, resource_group: str | None = None) -> str:
        args = ["acr", "show", "-n", self.name]
        if resource_group:
            args += ["-g", resource_group]
        return self.az.tsv([*args, "--query", "id"])

    def check_name(self) -> dict[str, Any]:
        return self.az.json(["acr", "check-name", "-n", self.name]) or {}

    def create(self, resource_group: str, location: str, sku: str = "Standard") -> None:
        logger.info("acr.create", registry=self.name, resource_group=resource_group, location=location)
        self.az.execute([
            "acr", "create",
            "-n", self.name,
            "-g", resource_group,
            "-l", location,
            "--sku", sku,
            "--admin-enabled", "false",
            "--only-show-errors",
        ])

    def login_token(self) -> str:
        """ACR refresh token for data-plane (OCI) access; ``""`` if unavailable."""
        return self.az.tsv(["acr", "login", "-n", self.name, "--expose-token", "--query", "accessToken"])

    # ------------------------------------------------------------------
    # Repository probes
    # ------------------------------------------------------------------

    def latest_digest(self, repository: str) -> str:
        """Digest of the most recently pushed manifest, or ``""``."""
        return self.az.tsv(self._scoped([
            "acr", "repository", "show-manifests",
            "-n", self.name,
            "--repository", repository,
            "--orderby", "time_desc",
            "--top", "1",
            "--query", "[0].digest",
        ]))

    def has_digest(self, repository: str, digest: str) -> bool:
        found = self.az.tsv(self._scoped([
            "acr", "repository", "show-manifests",
            "-n", self.name,
            "--repository", repository,
            "--query", f"[?digest=='{digest}'].digest | [0]",
        ]))
        return bool(found)

    def digest_for_tag(self, repository: str, tag: str) -> str:
        """Digest of the manifest carrying ``tag``, or ``""``."""
        return self.az.tsv(self._scoped([
            "acr", "repository", "show-manifests",
            "-n", self.name,
            "--repository", repository,
            "--query", f"[?contains(join(',', tags), '{tag}')].digest | [0]",
        ]))

    def find_tag(self, repository: str, tag: str) -> tuple[ImageCheck, str] | None:
        """Look up a commit tag: the full value first, then its 12-char prefix.

        ACR tags may carry either the full commit SHA or a short one.
        """
        exact = self.az.tsv(self._scoped([
            "acr", "repository", "show-tags",
            "-n", self.name,
            "--repository", repository,
            "--query", f"[?@=='{tag}'] | [0]",
        ]))
        if exact:
            return ImageCheck.COMMIT_TAG, exact

        short = tag[:SHORT_COMMIT_LENGTH]
        logger.debug("acr.tag.short_lookup", repository=repository, prefix=short)
        prefixed = self.az.tsv(self._scoped([
            "acr", "repository", "show-tags",
            "-n", self.name,
            "--repository", repository,
            "--query", f"[?starts_with(@, '{short}')] | [0]",
        ]))
        if prefixed:
            return ImageCheck.SHORT_COMMIT_TAG, prefixed
        return None

    def repository_state(self, repository: str) -> RepositoryState:
        output = self.az.combined(self._scoped([
            "acr", "repository", "show",
            "-n", self.name,
            "--repository", repository,
            "--query", "name",
            "-o", "tsv",
        ]))
        if "error" in output.lower():
            logger.warning("acr.repository.unverifiable", repository=repository, output=output)
            return RepositoryState.UNKNOWN
        first_line = output.splitlines()[0].strip() if output else ""
        return RepositoryState.EXISTS if first_line else RepositoryState.MISSING

    def repository_exists(self, repository: str) -> bool:
        return self.az.succeeds(self._scoped(["acr", "repository", "show", "-n", self.name, "--repository", repository]))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def import_image(
        self,
        source: str,
        image: str,
        *,
        force: bool = False,
        no_wait: bool = False,
    ) -> None:
        """Copy ``source`` (a fully-qualified reference) into this registry as ``image``."""
        args = ["acr", "import", "--name", self.name, "--source", source, "--image", image]
        if force:
            args.append("--force")
        if no_wait:
            args.append("--no-wait")
        self.az.execute(args)

    def untag(self, image: str) -> bool:
        return self.az.succeeds(["acr", "repository", "untag", "--name", self.name, "--image", image])

    def latest_image(self, repository: str) -> str:
        """``{domain}/{repository}@{digest}`` for the newest manifest, or ``""``."""
        digest = self.latest_digest(repository)
        return f"{self.domain}/{repository}@{digest}" if digest else ""


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------

_CREATE_ROLES = {"owner", "contributor"}
_ASSIGN_ROLES = ("owner", "user access administrator")


def _resource_group_scope(subscription_id: str, resource_group: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"


def _resource_group_from_id(resource_id: str) -> str:
    match = re.search(r"/resourceGroups/([^/]+)/providers/", resource_id or "", re.IGNORECASE)
    return match.group(1) if match else ""


def signed_in_roles(az: AzureCli, resource_group: str) -> tuple[str, list[str]] | None:
    """Role names held by the signed-in principal on a resource group.

    Returns ``(assignee, roles)``, or None when the subscription or principal
    cannot be determined.
    """
    subscription_id = az.tsv(["account", "show", "--query", "id"])
    assignee = az.tsv(["account", "show", "--query", "user.name"])
    if not subscription_id or not assignee:
        return None
    output = az.tsv([
        "role", "assignment", "list",
        "--assignee", assignee,
        "--scope", _resource_group_scope(subscription_id, resource_group),
        "--include-inherited",
        "--query", "[].roleDefinitionName",
    ])
    return assignee, [line.strip() for line in output.splitlines() if line.strip()]


def check_roles(
    az: AzureCli,
    resource_group: str,
    *,
    require_create: bool,
    warnings: list[str],
) -> list[str]:
    """Verify the caller may create resources and role assignments in ``resource_group``.

    Raises :class:`PermissionPreflightError` when a required role is missing.
    Unreadable assignments only add a warning.
    """
    found = signed_in_roles(az, resource_group)
    if found is None:
        warnings.append("Unable to resolve subscription or principal for role checks; skipping permission preflight.")
        logger.warning("acr.preflight.skipped", resource_group=resource_group)
        return []
    assignee, roles = found
    if not roles:
        warnings.append(
            f"Could not read role assignments for resource group '{resource_group}'. "
            "Continuing, but operations may fail due to insufficient permissions."
        )
        logger.warning("acr.preflight.unreadable", resource_group=resource_group, assignee=assignee)
        return []

    logger.info("acr.preflight.roles", resource_group=resource_group, assignee=assignee, roles=", ".join(roles))
    lowered = [r.lower() for r in roles]
    if require_create and not _CREATE_ROLES.intersection(lowered):
        raise PermissionPreflightError(
            f"Missing Contributor or Owner on resource group '{resource_group}'. "
            "This is required to create or update ACR and related resources.",
            scope=resource_group,
            hint="Grant 'Contributor' (minimum) or 'Owner' on the resource group.",
        )
    if not any(wanted in role for role in lowered for wanted in _ASSIGN_ROLES):
        raise PermissionPreflightError(
            f"Missing permission to create role assignments in resource group '{resource_group}'. "
            "The deployment assigns AcrPull to the app's managed identity.",
            scope=resource_group,
            hint="Grant 'Owner' or 'User Access Administrator' on the resource group.",
        )
    return roles


def _group_location(az: AzureCli, resource_group: str) -> str:
    return az.tsv(["group", "show", "-n", resource_group, "--query", "location"])


def upgrade_service_image(
    registry: Registry,
    azd: AzdEnvironment,
    service: str,
    environment: str,
) -> ImageResolution:
    """Point a service at the newest ACR image unless it already uses this registry.

    Unset image: latest ACR image, else the public fallback. Image on another
    registry: switched to the latest ACR image when one exists.
    """
    variable = naming.image_variable(service)
    repository = naming.acr_repository(service, environment)
    current = azd.get_value(variable)
    resolution = ImageResolution(service=service, variable=variable, image=current, previous_image=current)

    if current and ImageRef.parse(current).domain == registry.domain:
        resolution.skip_acr_pull = False
        resolution.message = "already set to ACR image"
        return resolution

    latest = registry.latest_image(repository)
    if latest:
        resolution.image = latest
        resolution.source = ImageSource.REGISTRY
        resolution.skip_acr_pull = False
        resolution.message = "switched to latest ACR image" if current else "resolved latest ACR image"
    elif not current:
        resolution.image = naming.FALLBACK_IMAGE
        resolution.source = ImageSource.FALLBACK
        resolution.message = f"no image in {repository}; using fallback"
    else:
        resolution.message = "no ACR image found; keeping existing image"
        return resolution

    azd.set_value(variable, resolution.image)
    azd.set_value(naming.skip_pull_flag(service), resolution.skip_acr_pull)
    logger.info("acr.image.resolved", service=service, image=resolution.image, source=resolution.source.value)
    return resolution


def ensure_acr(settings: DeploySettings, az: AzureCli, azd: AzdEnvironment) -> AcrEnsureResult:
    """Make sure the environment's registry exists and the caller can use it.

    Defaults and records the resource group and registry name, runs the
    role preflight, adopts an existing registry or creates a new one, and
    finally points services without an ACR image at the newest one.
    """
    resource_group = settings.resource_group
    if not resource_group:
        if not settings.environment:
            raise MissingConfigError(
                ["AZURE_RESOURCE_GROUP"],
                "AZURE_RESOURCE_GROUP not set and AZURE_ENV_NAME unavailable. "
                "Set it via 'azd env set AZURE_RESOURCE_GROUP <name>'.",
            )
        resource_group = naming.default_resource_group(settings.environment)
        azd.set_value("AZURE_RESOURCE_GROUP", resource_group)

    acr_name = settings.acr_name
    if not acr_name:
        if not settings.environment:
            raise MissingConfigError(
                ["AZURE_ACR_NAME"],
                "AZURE_ACR_NAME not set and AZURE_ENV_NAME unavailable. "
                "Set it via 'azd env set AZURE_ACR_NAME <acrName>'.",
            )
        acr_name = naming.default_acr_name(settings.environment)
        azd.set_value("AZURE_ACR_NAME", acr_name)

    if not _group_location(az, resource_group):
        raise PreconditionError(
            f"Could not resolve location for resource group '{resource_group}'. "
            "Set AZURE_RESOURCE_GROUP to an existing resource group or pre-create it.",
            context=ErrorContext(resource_group=resource_group),
        )

    target_rg = settings.acr_target_resource_group
    target_location = _group_location(az, target_rg)
    if not target_location:
        raise PreconditionError(
            f"Target ACR resource group '{target_rg}' not found. "
            "Set AZURE_ACR_RESOURCE_GROUP to an existing resource group or create it.",
            context=ErrorContext(resource_group=target_rg),
        )

    result = AcrEnsureResult(acr_name=acr_name, resource_group=target_rg)
    result.roles = check_roles(az, target_rg, require_create=True, warnings=result.warnings)

    registry = Registry(az, acr_name)
    existing = registry.show()
    if existing:
        existing_rg = existing.get("resourceGroup") or _resource_group_from_id(existing.get("id", ""))
        logger.info("acr.exists", registry=acr_name, resource_group=existing_rg or "unknown")
        if existing_rg:
            result.resource_group = existing_rg
            azd.set_value("AZURE_ACR_RESOURCE_GROUP", existing_rg)
            if existing_rg != target_rg:
                check_roles(az, existing_rg, require_create=False, warnings=result.warnings)
    else:
        check = registry.check_name()
        if check.get("nameAvailable") is True:
            registry.create(target_rg, target_location)
            azd.set_value("AZURE_ACR_RESOURCE_GROUP", target_rg)
            result.created = True
        elif check.get("reason") == "AlreadyExists":
            raise RegistryError(
                f"ACR name '{acr_name}' exists, but is not accessible in this subscription "
                "or with current credentials. Ensure your principal has "
                "Microsoft.ContainerRegistry/registries/read on the registry, or switch to "
                "the subscription where it exists.",
                context=ErrorContext(registry=acr_name),
            )
        else:
            raise RegistryError(
                f"ACR name '{acr_name}' is not valid/available: {check.get('message', '')}",
                context=ErrorContext(registry=acr_name),
            )

    if settings.environment:
        for service in settings.services:
            result.images.append(upgrade_service_image(registry, azd, service, settings.environment))
        if result.images:
            azd.set_value(naming.AGGREGATE_SKIP_FLAG, all(i.skip_acr_pull for i in result.images))
    return result
