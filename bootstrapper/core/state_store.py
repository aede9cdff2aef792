"""Durable per-deployment state, backed by an append-only SQLite event log.

Layout::

    {deployments_dir}/{deployment_name}/state.db     event log
    {deployments_dir}/{deployment_name}/deploy.lock  single-writer lock

Design:
- Append-only: every change is one row in ``step_events``; nothing is
  updated or deleted.  The record is the fold of the rows in insertion order.
- Each append is validated against the current fold inside an IMMEDIATE
  transaction, so a completed step can never be rewritten.
- WAL journal with ``synchronous=FULL``: an event is on disk when
  ``record_*`` returns.
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import sqlite3
import threading
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path

from bootstrapper.errors import ConcurrentDeploymentError, StateConflictError
from bootstrapper.models.record import DeploymentRecord, EventKind, StepEvent

logger = logging.getLogger(__name__)

STATE_DB = "state.db"
LOCK_FILE = "deploy.lock"

_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_EVENTS = """
CREATE TABLE IF NOT EXISTS step_events (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id       TEXT NOT NULL UNIQUE,
    step_id        TEXT NOT NULL,
    event          TEXT NOT NULL,
    timestamp_utc  TEXT NOT NULL,
    address        TEXT,
    tx_hash        TEXT,
    nonce          INTEGER,
    label          TEXT,
    value          TEXT,
    error          TEXT,
    needs_review   INTEGER NOT NULL DEFAULT 0
);
"""

_CREATE_IDX_STEP = """
CREATE INDEX IF NOT EXISTS idx_step_events_step ON step_events(step_id, id);
"""

_COLUMNS = (
    "event_id, step_id, event, timestamp_utc, address, tx_hash, "
    "nonce, label, value, error, needs_review"
)


def validate_deployment_name(name: str) -> str:
    if not name or not _NAME_RE.match(name) or name in (".", ".."):
        raise ValueError(
            f"Invalid deployment name {name!r}: use letters, digits, '.', '_' or '-'"
        )
    return name


class DeploymentStateStore:
    """Reads and appends deployment records under a root directory.

    Parameters
    ----------
    root:
        The deployments directory; each deployment gets a subdirectory.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._write_lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def deployment_dir(self, name: str) -> Path:
        return self._root / validate_deployment_name(name)

    def db_path(self, name: str) -> Path:
        return self.deployment_dir(name) / STATE_DB

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _connect(self, name: str, *, create: bool) -> Iterator[sqlite3.Connection | None]:
        path = self.db_path(name)
        if not create and not path.exists():
            yield None
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(_CREATE_EVENTS)
            conn.execute(_CREATE_IDX_STEP)
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self, name: str) -> DeploymentRecord:
        """Return the current record (empty if the deployment has none)."""
        record = DeploymentRecord(deployment_name=validate_deployment_name(name))
        for event in self.history(name):
            record = record.apply(event)
        return record

    def history(self, name: str, step_id: str | None = None) -> list[StepEvent]:
        """Return events in the order they were recorded."""
        with self._connect(name, create=False) as conn:
            if conn is None:
                return []
            return self._read_events(conn, step_id)

    @staticmethod
    def _read_events(conn: sqlite3.Connection, step_id: str | None) -> list[StepEvent]:
        if step_id is None:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM step_events ORDER BY id ASC"
            ).fetchall()
        else:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM step_events WHERE step_id = ? ORDER BY id ASC",
                (step_id,),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_submission(
        self,
        name: str,
        step_id: str,
        *,
        nonce: int,
        label: str = "",
        tx_hash: str | None = None,
        value: str | None = None,
    ) -> DeploymentRecord:
        """Record a transaction handed to the chain (before its receipt).

        *value*, when given, is what the label's checkpoint will hold once
        the transaction is mined, instead of the created contract address.
        """
        return self._append(
            name,
            StepEvent(
                step_id=step_id,
                event=EventKind.SUBMITTED,
                nonce=nonce,
                label=label,
                tx_hash=tx_hash,
                value=value,
            ),
        )

    def record_checkpoint(
        self,
        name: str,
        step_id: str,
        label: str,
        value: str,
        *,
        tx_hash: str | None = None,
    ) -> DeploymentRecord:
        """Record a confirmed intermediate transaction of a multi-tx step."""
        return self._append(
            name,
            StepEvent(
                step_id=step_id,
                event=EventKind.CHECKPOINT,
                label=label,
                value=value,
                tx_hash=tx_hash,
            ),
        )

    def record_completion(
        self,
        name: str,
        step_id: str,
        address: str,
        *,
        tx_hash: str | None = None,
    ) -> DeploymentRecord:
        """Mark a step completed.  Re-recording the same address is a no-op."""
        return self._append(
            name,
            StepEvent(
                step_id=step_id,
                event=EventKind.COMPLETED,
                address=address,
                tx_hash=tx_hash,
            ),
        )

    def record_failure(
        self,
        name: str,
        step_id: str,
        error: str,
        *,
        needs_review: bool = False,
    ) -> DeploymentRecord:
        return self._append(
            name,
            StepEvent(
                step_id=step_id,
                event=EventKind.FAILED,
                error=error,
                needs_review=needs_review,
            ),
        )

    def record_resolution(self, name: str, step_id: str, note: str = "") -> DeploymentRecord:
        """Clear a ``needs_review`` flag so the step may be retried."""
        return self._append(
            name,
            StepEvent(step_id=step_id, event=EventKind.RESOLVED, value=note or None),
        )

    def _append(self, name: str, event: StepEvent) -> DeploymentRecord:
        with self._write_lock, self._connect(name, create=True) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                record = DeploymentRecord(deployment_name=name)
                for past in self._read_events(conn, event.step_id):
                    record = record.apply(past)
                updated = record.apply(event)
                if updated is record:
                    conn.execute("ROLLBACK")
                    logger.debug("Step %s already recorded as completed.", event.step_id)
                    return self.load(name)
                conn.execute(
                    f"INSERT INTO step_events ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        event.event_id,
                        event.step_id,
                        event.event.value,
                        event.timestamp_utc.isoformat(),
                        event.address,
                        event.tx_hash,
                        event.nonce,
                        event.label,
                        event.value,
                        event.error,
                        int(event.needs_review),
                    ),
                )
                conn.execute("COMMIT")
            except StateConflictError:
                conn.execute("ROLLBACK")
                raise
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

        logger.debug("Recorded %s for %s in %s.", event.event.value, event.step_id, name)
        return self.load(name)

    # ------------------------------------------------------------------
    # Single-writer lock
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def lock(self, name: str) -> Iterator[Path]:
        """Hold the deployment's lock file for the duration of the block.

        Raises ``ConcurrentDeploymentError`` if another run holds it.  A lock
        left behind by a crashed run must be removed by the operator.
        """
        directory = self.deployment_dir(name)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / LOCK_FILE
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            holder = _read_holder(path)
            raise ConcurrentDeploymentError(
                f"Deployment {name!r} is locked by {path} (pid {holder}). "
                "If no other run is active, remove the lock file and retry."
            ) from exc
        try:
            with os.fdopen(fd, "w") as f:
                f.write(f"{os.getpid()}\n")
            logger.debug("Acquired deployment lock %s.", path)
            yield path
        finally:
            path.unlink(missing_ok=True)
            logger.debug("Released deployment lock %s.", path)


def _read_holder(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8").strip() or "unknown"
    except OSError:
        return "unknown"


def _row_to_event(row: tuple) -> StepEvent:
    (
        event_id,
        step_id,
        event,
        timestamp_utc,
        address,
        tx_hash,
        nonce,
        label,
        value,
        error,
        needs_review,
    ) = row
    return StepEvent(
        event_id=event_id,
        step_id=step_id,
        event=EventKind(event),
        timestamp_utc=datetime.fromisoformat(timestamp_utc),
        address=address,
        tx_hash=tx_hash,
        nonce=nonce,
        label=label,
        value=value,
        error=error,
        needs_review=bool(needs_review),
    )
