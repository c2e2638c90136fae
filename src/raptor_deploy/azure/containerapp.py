"""Container App registry binding and image updates.

Key Concepts:
    Registry binding: A Container App pulls from ACR with a managed
        identity that holds AcrPull on the registry. ``ensure_acr_binding``
        is idempotent: an app already configured for the registry server is
        left untouched.
    Update strategy: ``az containerapp update`` validates the *currently*
        deployed image. When that image has been deleted from ACR the update
        fails, so a missing or unverifiable old image switches to
        ``az containerapp revision copy``, which only validates the new one.
    Commit tag: Deploy workflows stamp the app with ``raptor.lastCommit``.
        Looking that tag up in ACR is one call; scanning manifests for the
        digest is the slower fallback.

Architecture Decisions:
    - The wait after a new AcrPull assignment is a setting
      (``rbac_propagation_seconds``) and the sleep function is injectable.
    - Existence checks answer "unknown" conservatively: revision copy
      always works, a direct update only works when the old image exists.

Tags:
    container-apps, acr, managed-identity, rbac, deploy
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from raptor_deploy.azure.acr import Registry, RepositoryState
from raptor_deploy.azure.runner import AzureCli
from raptor_deploy.errors import ErrorContext, IdentityError, PreconditionError
from raptor_deploy.images import ImageRef
from raptor_deploy.logging import get_logger
from raptor_deploy.naming import COMMIT_TAG_KEY
from raptor_deploy.results import (
    BindingResult,
    BindingStatus,
    ImageCheck,
    ImageUpdateResult,
    UpdateStrategy,
)

logger = get_logger(__name__)

DEFAULT_RBAC_PROPAGATION_SECONDS = 15.0


def show_app(az: AzureCli, app_name: str, resource_group: str) -> dict[str, Any] | None:
    """Container App JSON, or None when it does not exist."""
    return az.json(["containerapp", "show", "-n", app_name, "-g", resource_group])


def app_exists(az: AzureCli, app_name: str, resource_group: str) -> bool:
    return az.succeeds(["containerapp", "show", "-n", app_name, "-g", resource_group])


def _require_app(az: AzureCli, app_name: str, resource_group: str) -> dict[str, Any]:
    app = show_app(az, app_name, resource_group)
    if not app:
        raise PreconditionError(
            f"Container App '{app_name}' not found in resource group '{resource_group}'",
            context=ErrorContext(app_name=app_name, resource_group=resource_group),
        )
    return app


def _identity_type(app: dict[str, Any]) -> str:
    identity = app.get("identity") or {}
    return (identity.get("type") or "None").replace(" ", "")


def _assign_acr_pull(az: AzureCli, principal_id: str, role_id: str, acr_id: str) -> None:
    # An existing assignment makes create fail; that is fine.
    ok = az.succeeds([
        "role", "assignment", "create",
        "--assignee-object-id", principal_id,
        "--assignee-principal-type", "ServicePrincipal",
        "--role", role_id,
        "--scope", acr_id,
    ])
    logger.debug("acr.binding.role_assignment", principal_id=principal_id, created=ok)


def ensure_acr_binding(
    az: AzureCli,
    app_name: str,
    resource_group: str,
    acr_name: str,
    acr_domain: str,
    *,
    acr_resource_group: str | None = None,
    propagation_seconds: float = DEFAULT_RBAC_PROPAGATION_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> BindingResult:
    """Make sure ``app_name`` can pull from ``acr_domain`` with a managed identity.

    Raises:
        PreconditionError: the app or the registry cannot be found.
        IdentityError: the app has no usable managed identity.
    """
    app = _require_app(az, app_name, resource_group)

    configuration = (app.get("properties") or {}).get("configuration") or {}
    registries = configuration.get("registries") or []
    if any(r.get("server") == acr_domain for r in registries):
        logger.info("acr.binding.exists", app=app_name, server=acr_domain)
        return BindingResult(app_name=app_name, server=acr_domain, status=BindingStatus.ALREADY_CONFIGURED)

    logger.info("acr.binding.configure", app=app_name, server=acr_domain)
    acr_id = Registry(az, acr_name).resource_id(acr_resource_group)
    if not acr_id:
        raise PreconditionError(
            f"Could not resolve ACR resource ID for '{acr_name}'",
            context=ErrorContext(app_name=app_name, registry=acr_name),
        )
    role_id = az.tsv(["role", "definition", "list", "--name", "AcrPull", "--query", "[0].name"])

    identity = app.get("identity") or {}
    if "SystemAssigned" in _identity_type(app).split(","):
        principal_id = identity.get("principalId") or ""
        if principal_id:
            _assign_acr_pull(az, principal_id, role_id, acr_id)
            _set_registry(az, app_name, resource_group, acr_domain, "system")
            sleep(propagation_seconds)
            return BindingResult(
                app_name=app_name,
                server=acr_domain,
                status=BindingStatus.SYSTEM_ASSIGNED,
                identity="system",
                principal_id=principal_id,
            )

    user_assigned = sorted((identity.get("userAssignedIdentities") or {}).keys())
    if user_assigned:
        first = user_assigned[0]
        principal_id = az.tsv(["identity", "show", "--ids", first, "--query", "principalId"])
        if principal_id:
            _assign_acr_pull(az, principal_id, role_id, acr_id)
            _set_registry(az, app_name, resource_group, acr_domain, first)
            sleep(propagation_seconds)
            return BindingResult(
                app_name=app_name,
                server=acr_domain,
                status=BindingStatus.USER_ASSIGNED,
                identity=first,
                principal_id=principal_id,
            )

    raise IdentityError(
        f"No managed identity found on '{app_name}' to bind ACR '{acr_domain}'",
        context=ErrorContext(app_name=app_name, resource_group=resource_group, registry=acr_name),
    )


def _set_registry(az: AzureCli, app_name: str, resource_group: str, server: str, identity: str) -> None:
    az.execute([
        "containerapp", "registry", "set",
        "-n", app_name,
        "-g", resource_group,
        "--server", server,
        "--identity", identity,
    ])
    logger.info("acr.binding.configured", app=app_name, server=server, identity=identity)


def _current_image(az: AzureCli, app_name: str, resource_group: str) -> str:
    return az.tsv([
        "containerapp", "show", "-n", app_name, "-g", resource_group,
        "--query", "properties.template.containers[0].image",
    ])


def _commit_tag(az: AzureCli, app_name: str, resource_group: str) -> str:
    value = az.tsv([
        "containerapp", "show", "-n", app_name, "-g", resource_group,
        "--query", f'tags."{COMMIT_TAG_KEY}"',
    ])
    return "" if value == "null" else value


def check_deployed_image(
    az: AzureCli,
    app_name: str,
    resource_group: str,
    current_image: str,
) -> tuple[ImageCheck, str | None]:
    """Decide whether the currently deployed image still exists in ACR.

    Returns the check that settled it and, for tag checks, the matched tag.
    ``DIGEST``/``COMMIT_TAG``/``SHORT_COMMIT_TAG`` mean it exists;
    ``REPOSITORY_*``/``DIGEST_MISSING`` mean a revision copy is required.
    """
    ref = ImageRef.parse(current_image)
    if not current_image or not ref.is_sha256 or not ref.is_acr:
        return ImageCheck.NOT_APPLICABLE, None

    registry = Registry(az, ref.registry_name)
    commit = _commit_tag(az, app_name, resource_group)
    if commit:
        found = registry.find_tag(ref.repository, commit)
        if found:
            logger.info("containerapp.image.found_by_tag", app=app_name, tag=found[1])
            return found
        logger.info("containerapp.image.tag_missing", app=app_name, commit=commit)

    state = registry.repository_state(ref.repository)
    if state is RepositoryState.UNKNOWN:
        return ImageCheck.REPOSITORY_UNVERIFIABLE, None
    if state is RepositoryState.MISSING:
        return ImageCheck.REPOSITORY_MISSING, None
    if not registry.has_digest(ref.repository, ref.digest):
        return ImageCheck.DIGEST_MISSING, None
    return ImageCheck.DIGEST, None


_COPY_REQUIRED = {
    ImageCheck.REPOSITORY_MISSING,
    ImageCheck.REPOSITORY_UNVERIFIABLE,
    ImageCheck.DIGEST_MISSING,
}


def update_container_app_image(
    az: AzureCli,
    app_name: str,
    resource_group: str,
    new_image: str,
    acr_name: str,
    acr_domain: str,
    *,
    propagation_seconds: float = DEFAULT_RBAC_PROPAGATION_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> ImageUpdateResult:
    """Deploy ``new_image`` (a digest reference) to an existing Container App.

    Binds the registry first when the image comes from ``acr_domain``, then
    uses a direct update or, when the old image is gone or unverifiable, a
    revision copy.
    """
    ref = ImageRef.parse(new_image)
    if not ref.is_digest:
        raise PreconditionError(
            f"Image must be in digest format (image@sha256:...): {new_image}",
            context=ErrorContext(app_name=app_name),
        )
    if not app_exists(az, app_name, resource_group):
        raise PreconditionError(
            f"Container App '{app_name}' not found in resource group '{resource_group}'",
            context=ErrorContext(app_name=app_name, resource_group=resource_group),
        )

    result = ImageUpdateResult(app_name=app_name, resource_group=resource_group, new_image=new_image)
    if ref.domain == acr_domain:
        result.binding = ensure_acr_binding(
            az,
            app_name,
            resource_group,
            acr_name,
            acr_domain,
            propagation_seconds=propagation_seconds,
            sleep=sleep,
        )
    else:
        logger.info("containerapp.binding.skipped", app=app_name, domain=ref.domain)

    result.current_image = _current_image(az, app_name, resource_group)
    result.image_check, result.matched_tag = check_deployed_image(az, app_name, resource_group, result.current_image)

    if result.image_check in _COPY_REQUIRED:
        revision = az.tsv(["containerapp", "revision", "list", "-n", app_name, "-g", resource_group, "--query", "[0].name"])
        if revision:
            logger.info("containerapp.update.revision_copy", app=app_name, from_revision=revision, check=result.image_check.value)
            az.execute([
                "containerapp", "revision", "copy",
                "-n", app_name,
                "-g", resource_group,
                "--from-revision", revision,
                "--image", new_image,
            ])
            result.strategy = UpdateStrategy.REVISION_COPY
            result.from_revision = revision
            return result
        logger.warning("containerapp.update.no_revision", app=app_name)

    logger.info("containerapp.update.direct", app=app_name, image=new_image)
    az.execute(["containerapp", "update", "-n", app_name, "-g", resource_group, "--image", new_image])
    result.strategy = UpdateStrategy.DIRECT_UPDATE
    return result
