"""report.yml export — the human-readable summary of a deployment.

The report is derived from the config and the state record; it is never
read back, so losing or editing it cannot affect resumption.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from bootstrapper.models.artifacts import ArtifactKey, ProverMode
from bootstrapper.models.config import DeploymentConfig
from bootstrapper.models.record import DeploymentRecord
from bootstrapper.models.steps import (
    IMPL_V2_LABEL,
    PAIRING_LABEL,
    ROUTE_PREFIX,
    ROUTER_IMPL_LABEL,
    ROUTER_LABEL,
    ROUTER_PREFIX,
    SEMAPHORE_VERIFIER_STEP_ID,
    UPDATE_TABLE_LABEL,
    StepStatus,
    dispatcher_label,
    entry_label,
    identity_manager_step_id,
    register_prefix,
    verifier_step_id,
)

logger = logging.getLogger(__name__)

REPORT_FILE = "report.yml"


def build_report(config: DeploymentConfig, record: DeploymentRecord) -> dict[str, Any]:
    """Assemble the report mapping from a config and its record.

    Lookup-table entries and router routes are read from the checkpoints,
    i.e. what the contracts were last told on chain.
    """
    verifiers: dict[str, dict[int, dict[int, dict[str, Any]]]] = {}
    for key in config.artifact_keys():
        step = record.get(verifier_step_id(key))
        if step is None or step.status != StepStatus.COMPLETED:
            continue
        by_depth = verifiers.setdefault(key.mode.value, {}).setdefault(key.tree_depth, {})
        by_depth[key.batch_size] = {"address": step.address, "tx_hash": step.tx_hash}

    groups: dict[int, dict[str, Any]] = {}
    for group_id in config.group_ids:
        group = config.groups[group_id]
        checkpoints = record.merged_checkpoints(register_prefix(group_id))

        lookup_tables: dict[str, Any] = {}
        wired = []
        for mode in ProverMode:
            for batch_size in group.batch_sizes(mode):
                key = ArtifactKey(mode=mode, tree_depth=group.tree_depth, batch_size=batch_size)
                wired.append(
                    checkpoints.get(entry_label(mode, batch_size))
                    == record.address_of(verifier_step_id(key))
                )
            dispatcher = checkpoints.get(dispatcher_label(mode))
            if not dispatcher:
                continue
            entries = {
                batch_size: checkpoints[entry_label(mode, batch_size)]
                for batch_size in group.batch_sizes(mode)
                if entry_label(mode, batch_size) in checkpoints
            }
            lookup_tables[mode.value] = {"address": dispatcher, "entries": entries}

        entry: dict[str, Any] = {
            "tree_depth": group.tree_depth,
            "registered": bool(lookup_tables) and all(wired),
            "lookup_tables": lookup_tables,
        }
        if group.initial_root:
            entry["initial_root"] = group.initial_root
        groups[group_id] = entry

    report: dict[str, Any] = {
        "deployment_name": record.deployment_name,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "misc": config.misc.model_dump(mode="json"),
        "verifiers": verifiers,
        "groups": groups,
    }
    if config.misc.deploy_world_id:
        report.update(_world_id_sections(config, record))
    return report


def _world_id_sections(config: DeploymentConfig, record: DeploymentRecord) -> dict[str, Any]:
    sections: dict[str, Any] = {}

    semaphore = record.get(SEMAPHORE_VERIFIER_STEP_ID)
    if semaphore is not None and semaphore.status == StepStatus.COMPLETED:
        sections["semaphore_verifier"] = {
            "address": semaphore.address,
            "pairing": semaphore.checkpoints.get(PAIRING_LABEL),
        }

    managers: dict[int, dict[str, Any]] = {}
    for group_id in config.group_ids:
        group = config.groups[group_id]
        rec = record.get(
            identity_manager_step_id(group_id, group.tree_depth, group.initial_root)
        )
        if rec is None or rec.status != StepStatus.COMPLETED:
            continue
        managers[group_id] = {
            "address": rec.address,
            "implementation": rec.checkpoints.get(IMPL_V2_LABEL),
            "update_table": rec.checkpoints.get(UPDATE_TABLE_LABEL),
        }
    if managers:
        sections["identity_managers"] = managers

    routing = record.merged_checkpoints(ROUTER_PREFIX)
    if routing.get(ROUTER_LABEL):
        routes = {
            int(label[len(ROUTE_PREFIX):]): target
            for label, target in routing.items()
            if label.startswith(ROUTE_PREFIX) and target
        }
        sections["world_id_router"] = {
            "address": routing[ROUTER_LABEL],
            "implementation": routing.get(ROUTER_IMPL_LABEL),
            "routes": dict(sorted(routes.items())),
        }
    return sections


def write_report(path: Path, report: dict[str, Any]) -> Path:
    """Write *report* as YAML, replacing any previous file atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            yaml.safe_dump(report, tmp, sort_keys=False)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    finally:
        Path(tmp_name).unlink(missing_ok=True)
    logger.info("Wrote deployment report to %s.", path)
    return path
