"""Bootstrapper data models — all Pydantic v2, all frozen (immutable)."""

from bootstrapper.models.artifacts import (
    ArtifactKey,
    ArtifactKind,
    ArtifactStatus,
    KeyArtifact,
    ProverMode,
    VerifierContractArtifact,
)
from bootstrapper.models.config import (
    DeploymentConfig,
    GroupConfig,
    MiscConfig,
    load_config,
    parse_config,
)
from bootstrapper.models.record import (
    DeploymentRecord,
    EventKind,
    PendingSubmission,
    StepEvent,
    StepRecord,
)
from bootstrapper.models.steps import (
    DeploymentPlan,
    DeploymentStep,
    Registration,
    StepKind,
    StepOutcome,
    StepStatus,
)

__all__ = [
    # artifacts
    "ArtifactKey",
    "ArtifactKind",
    "ArtifactStatus",
    "KeyArtifact",
    "ProverMode",
    "VerifierContractArtifact",
    # config
    "DeploymentConfig",
    "GroupConfig",
    "MiscConfig",
    "load_config",
    "parse_config",
    # record
    "DeploymentRecord",
    "EventKind",
    "PendingSubmission",
    "StepEvent",
    "StepRecord",
    # steps
    "DeploymentPlan",
    "DeploymentStep",
    "Registration",
    "StepKind",
    "StepOutcome",
    "StepStatus",
]
