"""Preprovision image resolution and ACR binding validation.

Before ``azd provision`` runs, every service's ``SERVICE_{X}_IMAGE_NAME``
must name an image that actually exists, and the matching
``SKIP_{X}_ACR_PULL_ROLE_ASSIGNMENT`` flag must agree with it: Bicep only
creates the AcrPull assignment when the flag is ``false``, and a Container
App pointed at ACR without that assignment cannot start.

Key Concepts:
    resolve_images: Keeps valid images, replaces stale ACR digests with the
        newest digest in the repository, and falls back to a public
        placeholder when the repository is empty.
    validate_acr_binding: ACR image with skip flag ``true`` is an error;
        public image with skip flag ``false`` is only a warning.

Tags:
    preprovision, images, acr, azd, validation
"""

from __future__ import annotations

from raptor_deploy import naming
from raptor_deploy.azure.acr import Registry
from raptor_deploy.azure.runner import AzdEnvironment, AzureCli
from raptor_deploy.images import ImageRef
from raptor_deploy.logging import get_logger
from raptor_deploy.results import (
    BindingCheck,
    BindingValidationResult,
    ImageResolution,
    ImageResolutionResult,
    ImageSource,
    StepStatus,
)

logger = get_logger(__name__)


def resolve_service_image(
    service: str,
    environment: str,
    registry: Registry,
    azd: AzdEnvironment,
) -> ImageResolution:
    """Resolve and record the image for one service."""
    variable = naming.image_variable(service)
    repository = naming.acr_repository(service, environment)
    current = azd.get_value(variable)
    if "ERROR:" in current:
        current = ""
    resolution = ImageResolution(service=service, variable=variable, image=current, previous_image=current)

    if current:
        ref = ImageRef.parse(current)
        keep = True
        if ref.is_sha256 and ref.domain == registry.domain:
            if registry.has_digest(repository, ref.digest):
                resolution.message = "current digest is valid in ACR"
            else:
                logger.warning("images.digest_missing", service=service, image=current)
                keep = False
        elif ref.is_sha256:
            resolution.message = "image from a different registry"
        else:
            resolution.message = "image is not a digest reference"

        if keep:
            resolution.skip_acr_pull = registry.domain not in current
            azd.set_value(naming.skip_pull_flag(service), resolution.skip_acr_pull)
            logger.info("images.kept", service=service, image=current)
            return resolution

    latest = registry.latest_image(repository)
    if latest:
        resolution.image = latest
        resolution.source = ImageSource.REGISTRY
        resolution.skip_acr_pull = False
        resolution.message = f"latest image in {repository}"
    else:
        resolution.image = naming.FALLBACK_IMAGE
        resolution.source = ImageSource.FALLBACK
        resolution.skip_acr_pull = True
        resolution.message = f"no images in {repository}; using fallback"

    azd.set_value(variable, resolution.image)
    azd.set_value(naming.skip_pull_flag(service), resolution.skip_acr_pull)
    logger.info("images.resolved", service=service, image=resolution.image, source=resolution.source.value)
    return resolution


def resolve_images(
    az: AzureCli,
    azd: AzdEnvironment,
    services: list[str] | None = None,
) -> ImageResolutionResult:
    """Resolve images for every service and set the aggregate skip flag.

    Reads ``AZURE_ENV_NAME`` and ``AZURE_ACR_NAME`` from the azd
    environment; without both the step is skipped.
    """
    environment = azd.get_value("AZURE_ENV_NAME")
    acr_name = azd.get_value("AZURE_ACR_NAME")
    if not environment or not acr_name:
        logger.warning("images.resolve.skipped", reason="AZURE_ENV_NAME or AZURE_ACR_NAME not set")
        return ImageResolutionResult(
            status=StepStatus.SKIPPED,
            message="AZURE_ENV_NAME or AZURE_ACR_NAME not set",
        )

    registry = Registry(az, acr_name)
    result = ImageResolutionResult(registry=registry.domain)
    for service in services or naming.DEFAULT_SERVICES:
        result.services.append(resolve_service_image(service, environment, registry, azd))

    result.skip_acr_pull = all(r.skip_acr_pull for r in result.services)
    azd.set_value(naming.AGGREGATE_SKIP_FLAG, result.skip_acr_pull)
    result.message = f"resolved {len(result.services)} service image(s)"
    return result


def validate_acr_binding(
    azd: AzdEnvironment,
    services: list[str] | None = None,
) -> BindingValidationResult:
    """Check each service's image against its skip-pull flag."""
    acr_name = azd.get_value("AZURE_ACR_NAME")
    if not acr_name:
        return BindingValidationResult(status=StepStatus.SKIPPED, message="AZURE_ACR_NAME not set")

    domain = naming.acr_domain(acr_name)
    result = BindingValidationResult()
    for service in services or naming.DEFAULT_SERVICES:
        flag = naming.skip_pull_flag(service)
        image = azd.get_value(naming.image_variable(service))
        skip = azd.get_value(flag, default="true")
        check = BindingCheck(service=service, image=image, uses_acr=domain in image, skip_flag=skip)
        if check.uses_acr and skip == "true":
            check.status = StepStatus.FAILED
            check.message = (
                f"{service} uses ACR but {flag}=true; the Container App won't be able to pull the image"
            )
        elif not check.uses_acr and skip == "false":
            check.status = StepStatus.WARNING
            check.message = f"{service} uses a public image but {flag}=false; creates an unnecessary role assignment"
        else:
            check.message = f"{flag}={skip} (correct)"
        result.checks.append(check)

    if result.has_errors:
        result.status = StepStatus.FAILED
        result.message = "Validation failed; run image resolution to recalculate skip flags."
        logger.error("images.validate.failed", errors=[c.service for c in result.checks if c.status == StepStatus.FAILED])
    elif any(c.status == StepStatus.WARNING for c in result.checks):
        result.status = StepStatus.WARNING
        result.message = "Validation passed with warnings."
    else:
        result.message = "Per-service image vs ACR binding validation passed."
    return result
