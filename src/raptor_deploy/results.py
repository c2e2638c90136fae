"""Result models for raptor-deploy.

Pydantic v2 models capturing the outcome of every helper: which image a
service resolved to, how a Container App was updated, whether a fast-path
deploy happened, what a hook run did step by step. Nothing here is
persisted; the models exist so the CLI can print a table or ``--json`` and
so CI can branch on a field instead of parsing log output.

Key Concepts:
    StepStatus: Enum for a single step - OK, SKIPPED, WARNING, FAILED.
    ImageResolution: Per-service outcome of image resolution.
    BindingResult / ImageUpdateResult: Container App registry binding and
        image update, including the chosen update strategy.
    FastPathResult: ``didFastPath`` outcome of deploy/promote.
    HookRunResult: Ordered step results of an azd hook;
        ``mark_complete()`` finalises timestamps and overall status.

Architecture Decisions:
    - Pydantic v2 BaseModel: ``model_dump_json(indent=2)`` backs ``--json``.
    - ``mark_complete()`` pattern: caller invokes when done; duration is
      computed from ISO timestamps.

Tags:
    results, models, pydantic, status, reporting
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Shared enums
# ---------------------------------------------------------------------------


class StepStatus(str, Enum):
    """Outcome of a single step."""

    OK = "OK"
    SKIPPED = "SKIPPED"
    WARNING = "WARNING"
    FAILED = "FAILED"


class ImageSource(str, Enum):
    """Where a resolved image came from."""

    CURRENT = "current"  # Existing value kept
    REGISTRY = "registry"  # Latest digest from ACR
    FALLBACK = "fallback"  # Public placeholder image


class UpdateStrategy(str, Enum):
    """How a Container App image update was applied."""

    DIRECT_UPDATE = "direct_update"
    REVISION_COPY = "revision_copy"


class ImageCheck(str, Enum):
    """How the currently deployed image was verified in ACR."""

    NOT_APPLICABLE = "not_applicable"  # New app, tag image, or non-ACR image
    COMMIT_TAG = "commit_tag"
    SHORT_COMMIT_TAG = "short_commit_tag"
    DIGEST = "digest"
    REPOSITORY_MISSING = "repository_missing"
    REPOSITORY_UNVERIFIABLE = "repository_unverifiable"
    DIGEST_MISSING = "digest_missing"


class BindingStatus(str, Enum):
    ALREADY_CONFIGURED = "already_configured"
    SYSTEM_ASSIGNED = "system_assigned"
    USER_ASSIGNED = "user_assigned"
    SKIPPED = "skipped"


def _now() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Image results
# ---------------------------------------------------------------------------


class ImageResolution(BaseModel):
    """Resolved image for one service."""

    service: str
    variable: str
    image: str = ""
    previous_image: str = ""
    source: ImageSource = ImageSource.CURRENT
    skip_acr_pull: bool = True
    message: str = ""


class ImageResolutionResult(BaseModel):
    """Outcome of resolving images for all services."""

    status: StepStatus = StepStatus.OK
    registry: str = ""
    services: list[ImageResolution] = Field(default_factory=list)
    skip_acr_pull: bool = True
    message: str = ""


class BindingCheck(BaseModel):
    """Consistency of one service's image vs. its skip-pull flag."""

    service: str
    image: str = ""
    uses_acr: bool = False
    skip_flag: str = "true"
    status: StepStatus = StepStatus.OK
    message: str = ""


class BindingValidationResult(BaseModel):
    status: StepStatus = StepStatus.OK
    checks: list[BindingCheck] = Field(default_factory=list)
    message: str = ""

    @property
    def has_errors(self) -> bool:
        return any(c.status == StepStatus.FAILED for c in self.checks)


# ---------------------------------------------------------------------------
# Container App results
# ---------------------------------------------------------------------------


class BindingResult(BaseModel):
    """Outcome of ensuring a Container App can pull from an ACR."""

    app_name: str
    server: str
    status: BindingStatus
    identity: str | None = None
    principal_id: str | None = None


class ImageUpdateResult(BaseModel):
    """Outcome of updating a Container App's image."""

    app_name: str
    resource_group: str
    new_image: str
    current_image: str = ""
    strategy: UpdateStrategy = UpdateStrategy.DIRECT_UPDATE
    image_check: ImageCheck = ImageCheck.NOT_APPLICABLE
    matched_tag: str | None = None
    from_revision: str | None = None
    binding: BindingResult | None = None


class FastPathResult(BaseModel):
    """Outcome of a fast-path deploy or promotion (``didFastPath``)."""

    service: str
    environment: str = ""
    did_fast_path: bool = False
    app_name: str = ""
    image: str = ""
    promotion_tag: str | None = None
    reason: str = ""
    update: ImageUpdateResult | None = None


# ---------------------------------------------------------------------------
# Provisioning results
# ---------------------------------------------------------------------------


class AcrEnsureResult(BaseModel):
    acr_name: str
    resource_group: str
    created: bool = False
    roles: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    images: list[ImageResolution] = Field(default_factory=list)


class KeyVaultResult(BaseModel):
    name: str
    resource_group: str = ""
    action: str = "exists"  # exists | recovered | created | none | skipped
    retention_days: int | None = None
    secrets_set: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    message: str = ""


class SqlPermissionResult(BaseModel):
    status: StepStatus = StepStatus.OK
    server: str | None = None
    database: str | None = None
    identities: list[str] = Field(default_factory=list)
    executed: bool = False
    script: str | None = None
    firewall_rule_created: bool = False
    message: str = ""


class DirectoryReadersResult(BaseModel):
    status: StepStatus = StepStatus.OK
    server: str = ""
    principal_id: str = ""
    role_id: str = ""
    action: str = ""  # already_member | granted | denied
    message: str = ""


# ---------------------------------------------------------------------------
# Hook results
# ---------------------------------------------------------------------------


class StepResult(BaseModel):
    name: str
    status: StepStatus = StepStatus.OK
    message: str = ""
    duration_seconds: float = 0.0


class HookRunResult(BaseModel):
    """Result of running an azd hook (preprovision/postprovision)."""

    hook: str
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0
    steps: list[StepResult] = Field(default_factory=list)
    overall_status: StepStatus = StepStatus.OK
    summary: str = ""

    @property
    def failed(self) -> bool:
        return self.overall_status == StepStatus.FAILED

    def mark_complete(self) -> None:
        """Compute duration, overall status and summary."""
        self.completed_at = _now()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()
        statuses = [s.status for s in self.steps]
        if StepStatus.FAILED in statuses:
            self.overall_status = StepStatus.FAILED
        elif StepStatus.WARNING in statuses:
            self.overall_status = StepStatus.WARNING
        elif statuses and all(s == StepStatus.SKIPPED for s in statuses):
            self.overall_status = StepStatus.SKIPPED
        else:
            self.overall_status = StepStatus.OK
        done = sum(1 for s in statuses if s in (StepStatus.OK, StepStatus.WARNING))
        self.summary = f"{done}/{len(statuses)} steps completed"
