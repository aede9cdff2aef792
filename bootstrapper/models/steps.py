"""Deployment step and plan models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from bootstrapper.core.hasher import fingerprint
from bootstrapper.models.artifacts import ArtifactKey, ProverMode


class StepKind(str, Enum):
    """The fixed step taxonomy."""

    DEPLOY_VERIFIER = "deploy_verifier"
    REGISTER_GROUP = "register_group"
    DEPLOY_SEMAPHORE_VERIFIER = "deploy_semaphore_verifier"
    DEPLOY_IDENTITY_MANAGER = "deploy_identity_manager"
    DEPLOY_ROUTER = "deploy_router"


class StepStatus(str, Enum):
    """Lifecycle of a step within one deployment."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# COMPLETED is terminal; IN_PROGRESS -> IN_PROGRESS covers multi-transaction
# steps checkpointing between submissions.
VALID_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.IN_PROGRESS, StepStatus.COMPLETED, StepStatus.FAILED},
    StepStatus.IN_PROGRESS: {
        StepStatus.IN_PROGRESS,
        StepStatus.COMPLETED,
        StepStatus.FAILED,
    },
    StepStatus.FAILED: {StepStatus.IN_PROGRESS, StepStatus.COMPLETED, StepStatus.FAILED},
    StepStatus.COMPLETED: set(),
}


# ---------------------------------------------------------------------------
# Checkpoint labels
# ---------------------------------------------------------------------------

DISPATCHER_PREFIX = "dispatcher:"
ENTRY_PREFIX = "entry:"
ROUTE_PREFIX = "route:"


def dispatcher_label(mode: ProverMode) -> str:
    return f"{DISPATCHER_PREFIX}{mode.value}"


def entry_label(mode: ProverMode, batch_size: int) -> str:
    return f"{ENTRY_PREFIX}{mode.value}:{batch_size}"


def route_label(group_id: int) -> str:
    return f"{ROUTE_PREFIX}{group_id}"


# Completes the step it is recorded under
VERIFIER_LABEL = "verifier"

PAIRING_LABEL = "pairing"
UPDATE_TABLE_LABEL = "table:update"
IMPL_V1_LABEL = "impl_v1"
IMPL_V2_LABEL = "impl_v2"
PROXY_LABEL = "proxy"
UPGRADE_LABEL = "upgrade"
ROUTER_IMPL_LABEL = "impl"
ROUTER_LABEL = "router"


# ---------------------------------------------------------------------------
# Step ids
# ---------------------------------------------------------------------------

SEMAPHORE_VERIFIER_STEP_ID = StepKind.DEPLOY_SEMAPHORE_VERIFIER.value


class Registration(BaseModel):
    """One (mode, batch size) -> verifier entry of a group's dispatcher."""

    model_config = ConfigDict(frozen=True)

    mode: ProverMode
    batch_size: int
    verifier_step_id: str


def verifier_step_id(key: ArtifactKey) -> str:
    return f"{StepKind.DEPLOY_VERIFIER.value}:{key.mode.value}:{key.tree_depth}:{key.batch_size}"


def register_prefix(group_id: int) -> str:
    return f"{StepKind.REGISTER_GROUP.value}:{group_id}:"


def register_step_id(
    group_id: int,
    registrations: tuple[Registration, ...],
    *,
    all_modes: bool = False,
    revision: int = 0,
) -> str:
    """Step id for a group registration.

    The suffix fingerprints the registration set: an unchanged group keeps
    its id (and is skipped once completed); a changed batch-size set yields
    a new step that extends the existing dispatcher.  *revision* is bumped
    when a completed registration has to be applied again because a later
    one re-pointed its entries.
    """
    payload: list = [
        [r.mode.value, r.batch_size, r.verifier_step_id]
        for r in sorted(registrations, key=lambda r: (r.mode.ordinal, r.batch_size))
    ]
    if all_modes:
        payload.append("all-modes")
    step_id = f"{register_prefix(group_id)}{fingerprint(payload)}"
    return f"{step_id}.{revision}" if revision else step_id


def identity_manager_prefix(group_id: int) -> str:
    return f"{StepKind.DEPLOY_IDENTITY_MANAGER.value}:{group_id}:"


def identity_manager_step_id(group_id: int, tree_depth: int, initial_root: str) -> str:
    """A new tree depth or initial root means a new identity manager."""
    return f"{identity_manager_prefix(group_id)}{fingerprint([tree_depth, initial_root.lower()])}"


ROUTER_PREFIX = f"{StepKind.DEPLOY_ROUTER.value}:"


def router_step_id(routes: dict[int, str]) -> str:
    return f"{ROUTER_PREFIX}{fingerprint(sorted(routes.items()))}"


# ---------------------------------------------------------------------------
# Steps and plans
# ---------------------------------------------------------------------------


class DeploymentStep(BaseModel):
    """A unit of on-chain work.

    Which optional fields are set depends on ``kind``: ``artifact_key`` for
    verifier deployments; ``group_id`` and ``registrations`` for group
    registration; ``group_id``, ``tree_depth`` and ``initial_root`` for an
    identity manager; ``routes`` (group id -> identity manager step id) for
    the router.
    """

    model_config = ConfigDict(frozen=True)

    step_id: str
    kind: StepKind
    depends_on: tuple[str, ...] = ()
    status: StepStatus = StepStatus.PENDING
    artifact_key: ArtifactKey | None = None
    group_id: int | None = None
    registrations: tuple[Registration, ...] = ()
    all_modes: bool = False
    tree_depth: int | None = None
    initial_root: str | None = None
    routes: dict[int, str] = Field(default_factory=dict)

    def describe(self) -> str:
        """Human-readable one-line description."""
        if self.kind == StepKind.DEPLOY_VERIFIER:
            return f"Deploy {self.artifact_key} verifier"
        if self.kind == StepKind.DEPLOY_SEMAPHORE_VERIFIER:
            return "Deploy semaphore verifier"
        if self.kind == StepKind.DEPLOY_IDENTITY_MANAGER:
            return f"Deploy identity manager for group {self.group_id} (depth {self.tree_depth})"
        if self.kind == StepKind.DEPLOY_ROUTER:
            groups = ", ".join(str(g) for g in sorted(self.routes))
            return f"Route groups {groups}"
        sizes = ", ".join(
            f"{r.mode.value}:{r.batch_size}" for r in self.registrations
        )
        return f"Register group {self.group_id} ({sizes})"


class DeploymentPlan(BaseModel):
    """Ordered executable steps plus what is already satisfied.

    ``satisfied`` maps completed step ids to their recorded address so later
    steps can resolve dependencies without re-executing them.  ``failures``
    lists groups that could not be planned (group id -> cause).
    """

    model_config = ConfigDict(frozen=True)

    deployment_name: str
    steps: tuple[DeploymentStep, ...] = ()
    satisfied: dict[str, str] = Field(default_factory=dict)
    failures: dict[int, str] = Field(default_factory=dict)

    @property
    def step_ids(self) -> list[str]:
        return [s.step_id for s in self.steps]

    @property
    def is_empty(self) -> bool:
        return not self.steps

    def get(self, step_id: str) -> DeploymentStep:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(step_id)

    def steps_of_kind(self, kind: StepKind) -> list[DeploymentStep]:
        return [s for s in self.steps if s.kind == kind]


class StepOutcome(BaseModel):
    """Result of executing one step."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    status: StepStatus
    address: str | None = None
    error: str | None = None
