"""Fast-path service deploys and cross-environment promotions.

A fast path updates only the Container App image instead of running a full
``azd provision``. Both workflows always report ``didFastPath`` to GitHub
Actions; ``false`` tells the calling workflow to fall back to ``azd up``.

Key Concepts:
    deploy_service_image: Deploy the digest recorded in the azd
        environment (``SERVICE_{X}_IMAGE_NAME``) to ``{env}-rap-{suffix}``.
    promote_service_image: Import a digest from the source environment's
        repository into ``raptor/{service}-{target}`` on the target ACR, add
        a ``promoted-{epoch_ms}`` tag, then deploy it.

Architecture Decisions:
    - Every :class:`DeployError` below this boundary becomes
      ``did_fast_path=False`` with the reason; nothing is re-raised, so the
      workflow step can decide on its own fallback.

Tags:
    deploy, promote, fast-path, container-apps, github-actions
"""

from __future__ import annotations

import time
from collections.abc import Callable

from raptor_deploy import github, naming
from raptor_deploy.azure.acr import Registry
from raptor_deploy.azure.containerapp import app_exists, update_container_app_image
from raptor_deploy.azure.runner import AzdEnvironment, AzureCli
from raptor_deploy.config import DeploySettings
from raptor_deploy.errors import DeployError
from raptor_deploy.images import ImageRef
from raptor_deploy.logging import get_logger, log_scope
from raptor_deploy.results import FastPathResult

logger = get_logger(__name__)

FAST_PATH_OUTPUT = "didFastPath"


def _finish(result: FastPathResult, report: bool) -> FastPathResult:
    if report:
        github.write_output(FAST_PATH_OUTPUT, result.did_fast_path)
    if result.did_fast_path:
        logger.info("deploy.fast_path.done", service=result.service, app=result.app_name, image=result.image)
    else:
        logger.warning("deploy.fast_path.unavailable", service=result.service, reason=result.reason)
    return result


def promotion_tag(now: Callable[[], float] = time.time) -> str:
    return f"promoted-{int(now() * 1000)}"


def deploy_service_image(
    service: str,
    settings: DeploySettings,
    az: AzureCli,
    azd: AzdEnvironment,
    *,
    report: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> FastPathResult:
    """Deploy the service's recorded image to its existing Container App."""
    result = FastPathResult(service=service, environment=settings.environment)
    with log_scope(service=service, environment=settings.environment, step="deploy"):
        try:
            settings.require("environment", "resource_group", "acr_name")
            result.app_name = settings.app_name(service)

            result.image = azd.get_value(naming.image_variable(service))
            if not result.image:
                result.reason = f"No image configured in {naming.image_variable(service)}"
                return _finish(result, report)
            if not ImageRef.parse(result.image).is_digest:
                result.reason = "Image is not in digest form (no @sha256:...)"
                return _finish(result, report)
            if not app_exists(az, result.app_name, settings.resource_group):
                result.reason = f"Container App '{result.app_name}' does not exist"
                return _finish(result, report)

            result.update = update_container_app_image(
                az,
                result.app_name,
                settings.resource_group,
                result.image,
                settings.acr_name,
                settings.acr_domain,
                propagation_seconds=settings.rbac_propagation_seconds,
                sleep=sleep,
            )
            result.did_fast_path = True
        except DeployError as exc:
            result.reason = exc.message
        return _finish(result, report)


def promote_service_image(
    service: str,
    source_image: str,
    target_environment: str,
    settings: DeploySettings,
    az: AzureCli,
    *,
    report: bool = True,
    now: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> FastPathResult:
    """Promote ``source_image`` (a digest reference) into ``target_environment``."""
    result = FastPathResult(service=service, environment=target_environment)
    with log_scope(service=service, environment=target_environment, step="promote"):
        try:
            settings.require("resource_group", "acr_name")

            source = ImageRef.parse(source_image)
            if not source.is_digest:
                result.reason = f"Source image is not a digest reference: {source_image}"
                return _finish(result, report)

            source_acr = settings.source_acr_name or source.registry_name
            target_repo = settings.repository(service, target_environment)
            target = Registry(az, settings.acr_name)
            result.promotion_tag = promotion_tag(now)
            result.image = source.with_registry(target.domain, target_repo)
            result.app_name = settings.app_name(service, target_environment)

            if not target.repository_exists(target_repo):
                logger.info("promote.repository.new", repository=target_repo)
            logger.info(
                "promote.import",
                source=f"{source_acr}/{source.repository}@{source.short_digest()}",
                target=f"{settings.acr_name}/{target_repo}",
            )
            target.import_image(
                f"{naming.acr_domain(source_acr)}/{source.repository}@{source.digest}",
                f"{target_repo}@{source.digest}",
                force=True,
            )

            tagged = f"{target_repo}:{result.promotion_tag}"
            target.untag(tagged)
            try:
                target.import_image(result.image, tagged, no_wait=True)
            except DeployError as exc:
                logger.warning("promote.tag_failed", tag=result.promotion_tag, error=exc.message)

            result.update = update_container_app_image(
                az,
                result.app_name,
                settings.resource_group,
                result.image,
                settings.acr_name,
                target.domain,
                propagation_seconds=settings.rbac_propagation_seconds,
                sleep=sleep,
            )
            result.did_fast_path = True
        except DeployError as exc:
            result.reason = exc.message
        return _finish(result, report)
