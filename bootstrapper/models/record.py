"""Persisted deployment record — the only durable state across runs.

The record is a fold over an append-only event log.  Completion is
terminal: once a step has a completion event no later event may change it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from bootstrapper.errors import StateConflictError
from bootstrapper.models.steps import VALID_TRANSITIONS, StepStatus


class EventKind(str, Enum):
    SUBMITTED = "submitted"
    CHECKPOINT = "checkpoint"
    COMPLETED = "completed"
    FAILED = "failed"
    RESOLVED = "resolved"


_EVENT_TARGET: dict[EventKind, StepStatus] = {
    EventKind.SUBMITTED: StepStatus.IN_PROGRESS,
    EventKind.CHECKPOINT: StepStatus.IN_PROGRESS,
    EventKind.COMPLETED: StepStatus.COMPLETED,
    EventKind.FAILED: StepStatus.FAILED,
    EventKind.RESOLVED: StepStatus.FAILED,
}


class StepEvent(BaseModel):
    """A single entry in a deployment's event log."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step_id: str
    event: EventKind
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    address: str | None = None
    tx_hash: str | None = None
    nonce: int | None = None
    label: str | None = None
    value: str | None = None
    error: str | None = None
    needs_review: bool = False


class PendingSubmission(BaseModel):
    """A transaction that was handed to the chain but not yet confirmed."""

    model_config = ConfigDict(frozen=True)

    label: str
    nonce: int
    tx_hash: str | None = None
    value: str | None = None
    submitted_at: datetime


class StepRecord(BaseModel):
    """Current durable state of one step."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    status: StepStatus = StepStatus.PENDING
    address: str | None = None
    tx_hash: str | None = None
    error: str | None = None
    needs_review: bool = False
    checkpoints: dict[str, str] = Field(default_factory=dict)
    pending: PendingSubmission | None = None
    updated_at: datetime | None = None


class DeploymentRecord(BaseModel):
    """Mapping of step id -> StepRecord for one deployment name."""

    model_config = ConfigDict(frozen=True)

    deployment_name: str
    steps: dict[str, StepRecord] = Field(default_factory=dict)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, step_id: str) -> StepRecord | None:
        return self.steps.get(step_id)

    def is_completed(self, step_id: str) -> bool:
        step = self.steps.get(step_id)
        return step is not None and step.status == StepStatus.COMPLETED

    def address_of(self, step_id: str) -> str | None:
        step = self.steps.get(step_id)
        if step is None or step.status != StepStatus.COMPLETED:
            return None
        return step.address

    def completed(self) -> dict[str, str]:
        """Completed step ids mapped to their deployed address."""
        return {
            sid: rec.address or ""
            for sid, rec in self.steps.items()
            if rec.status == StepStatus.COMPLETED
        }

    def in_flight(self) -> list[StepRecord]:
        """Steps left with an unconfirmed submission."""
        return [rec for rec in self.steps.values() if rec.pending is not None]

    def needing_review(self) -> list[StepRecord]:
        return [rec for rec in self.steps.values() if rec.needs_review]

    def steps_with_prefix(self, prefix: str) -> list[StepRecord]:
        return [rec for sid, rec in sorted(self.steps.items()) if sid.startswith(prefix)]

    def merged_checkpoints(self, prefix: str) -> dict[str, str]:
        """Checkpoints of every step under *prefix*, most recently updated last.

        Successive steps acting on the same contracts (a group's lookup
        tables, the router) share labels; the latest write of a label wins.
        """
        recs = sorted(
            self.steps_with_prefix(prefix),
            key=lambda r: r.updated_at or datetime.min.replace(tzinfo=timezone.utc),
        )
        merged: dict[str, str] = {}
        for rec in recs:
            merged.update(rec.checkpoints)
        return merged

    # ------------------------------------------------------------------
    # Fold
    # ------------------------------------------------------------------

    def apply(self, event: StepEvent) -> DeploymentRecord:
        """Return the record with *event* applied.

        Raises ``StateConflictError`` if the event would alter a completed
        step.  Re-completing with the same address returns ``self``.
        """
        current = self.steps.get(event.step_id) or StepRecord(step_id=event.step_id)

        if current.status == StepStatus.COMPLETED:
            if event.event == EventKind.COMPLETED and event.address == current.address:
                return self
            raise StateConflictError(
                f"Step {event.step_id} is already completed at {current.address}; "
                f"refusing {event.event.value} event"
            )

        target = _EVENT_TARGET[event.event]
        if target not in VALID_TRANSITIONS[current.status]:
            raise StateConflictError(
                f"Cannot apply {event.event.value} to step {event.step_id} "
                f"in state {current.status.value}"
            )

        updates: dict = {"status": target, "updated_at": event.timestamp_utc}
        if event.event == EventKind.SUBMITTED:
            updates.update(
                pending=PendingSubmission(
                    label=event.label or "",
                    nonce=event.nonce if event.nonce is not None else -1,
                    tx_hash=event.tx_hash,
                    value=event.value,
                    submitted_at=event.timestamp_utc,
                ),
                error=None,
                needs_review=False,
            )
        elif event.event == EventKind.CHECKPOINT:
            checkpoints = dict(current.checkpoints)
            checkpoints[event.label or ""] = event.value or ""
            updates.update(checkpoints=checkpoints, pending=None)
        elif event.event == EventKind.COMPLETED:
            updates.update(
                address=event.address,
                tx_hash=event.tx_hash,
                error=None,
                needs_review=False,
                pending=None,
            )
        elif event.event == EventKind.FAILED:
            updates.update(
                error=event.error,
                needs_review=event.needs_review,
                pending=None,
            )
        else:  # RESOLVED
            updates.update(needs_review=False, pending=None)

        steps = dict(self.steps)
        steps[event.step_id] = current.model_copy(update=updates)
        return self.model_copy(update={"steps": steps})
