"""Deployment planner — config + record in, ordered step plan out.

Planning materializes every missing artifact (keys and verifier sources)
before any chain work, so execution never waits on key generation.  Steps
already completed in the record are left out of the executable list and
reported in ``plan.satisfied`` with their addresses.

Ordering is a topological sort with ties broken by ascending group id, then
batch size, then mode (insertion before deletion); a group's verifiers come
before its registration step.  With ``misc.deploy_world_id`` the semaphore
verifier, one identity manager per group and the router follow every
group's own steps.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed

from bootstrapper.core.contract_synthesizer import ContractSynthesizer
from bootstrapper.core.step_graph import StepGraph
from bootstrapper.errors import BootstrapperError
from bootstrapper.models.artifacts import ArtifactKey, VerifierContractArtifact
from bootstrapper.models.config import DeploymentConfig, check_config
from bootstrapper.models.record import DeploymentRecord
from bootstrapper.models.steps import (
    SEMAPHORE_VERIFIER_STEP_ID,
    DeploymentPlan,
    DeploymentStep,
    Registration,
    StepKind,
    StepStatus,
    entry_label,
    identity_manager_step_id,
    register_prefix,
    register_step_id,
    router_step_id,
    verifier_step_id,
)

logger = logging.getLogger(__name__)


class DeploymentPlanner:
    """Builds deterministic, de-duplicated deployment plans.

    Parameters
    ----------
    synthesizer:
        Provides verifier sources (and, through it, keys).
    workers:
        Size of the thread pool used to provision artifacts across keys.
    """

    def __init__(self, synthesizer: ContractSynthesizer, *, workers: int = 4) -> None:
        self._synthesizer = synthesizer
        self._workers = max(1, workers)

    def build_plan(self, config: DeploymentConfig, record: DeploymentRecord) -> DeploymentPlan:
        config = check_config(config)

        # Which groups reference each key; the lowest one decides ordering.
        users: dict[ArtifactKey, list[int]] = {}
        for group_id in config.group_ids:
            for key in config.groups[group_id].artifact_keys():
                users.setdefault(key, []).append(group_id)

        missing = [
            key for key in sorted(users, key=lambda k: k.sort_key)
            if not record.is_completed(verifier_step_id(key))
        ]
        _, errors = self.provision(missing)

        failures: dict[int, str] = {}
        for key, message in errors.items():
            for group_id in users[key]:
                failures.setdefault(group_id, f"{key}: {message}")
        for group_id, message in sorted(failures.items()):
            logger.error("Group %d cannot be planned: %s", group_id, message)

        satisfied: dict[str, str] = {}
        candidates: dict[str, DeploymentStep] = {}
        order_keys: dict[str, tuple[int, int, int, int]] = {}
        register_ids: dict[int, str] = {}
        all_modes = config.misc.deploy_world_id

        for key, group_ids in users.items():
            live = [g for g in group_ids if g not in failures]
            if not live:
                continue
            step_id = verifier_step_id(key)
            if record.is_completed(step_id):
                satisfied[step_id] = record.address_of(step_id) or ""
                continue
            candidates[step_id] = DeploymentStep(
                step_id=step_id,
                kind=StepKind.DEPLOY_VERIFIER,
                status=self._recorded_status(record, step_id),
                artifact_key=key,
            )
            order_keys[step_id] = (min(live), 0, key.batch_size, key.mode.ordinal)

        for group_id in config.group_ids:
            if group_id in failures:
                continue
            keys = config.groups[group_id].artifact_keys()
            registrations = tuple(
                Registration(
                    mode=key.mode,
                    batch_size=key.batch_size,
                    verifier_step_id=verifier_step_id(key),
                )
                for key in keys
            )
            step_id = self._register_step_id(record, group_id, registrations, all_modes)
            if record.is_completed(step_id):
                satisfied[step_id] = record.address_of(step_id) or ""
                register_ids[group_id] = step_id
                continue
            candidates[step_id] = DeploymentStep(
                step_id=step_id,
                kind=StepKind.REGISTER_GROUP,
                depends_on=tuple(r.verifier_step_id for r in registrations),
                status=self._recorded_status(record, step_id),
                group_id=group_id,
                registrations=registrations,
                all_modes=all_modes,
            )
            order_keys[step_id] = (group_id, 1, 0, 0)
            register_ids[group_id] = step_id

        if all_modes:
            self._plan_world_id(config, record, register_ids, failures, candidates, satisfied, order_keys)

        graph = StepGraph({sid: step.depends_on for sid, step in candidates.items()})
        ordered = graph.ordered(sort_key=order_keys.__getitem__)

        plan = DeploymentPlan(
            deployment_name=record.deployment_name,
            steps=tuple(candidates[sid] for sid in ordered),
            satisfied=satisfied,
            failures=failures,
        )
        logger.info(
            "Planned %d step(s) for %s; %d already satisfied, %d group(s) failed.",
            len(plan.steps),
            record.deployment_name,
            len(satisfied),
            len(failures),
        )
        return plan

    def provision(
        self, keys: list[ArtifactKey]
    ) -> tuple[dict[ArtifactKey, VerifierContractArtifact], dict[ArtifactKey, str]]:
        """Ensure a verifier source exists for every key, in parallel.

        Returns the artifacts produced and, separately, the keys that failed
        with their error messages.
        """
        artifacts: dict[ArtifactKey, VerifierContractArtifact] = {}
        errors: dict[ArtifactKey, str] = {}
        if not keys:
            return artifacts, errors

        with ThreadPoolExecutor(
            max_workers=min(self._workers, len(keys)),
            thread_name_prefix="provision",
        ) as pool:
            futures = {
                pool.submit(
                    self._synthesizer.ensure_verifier_contract,
                    key.mode,
                    key.tree_depth,
                    key.batch_size,
                ): key
                for key in keys
            }
            for future in as_completed(futures):
                key = futures[future]
                try:
                    artifacts[key] = future.result()
                except (BootstrapperError, OSError) as exc:
                    logger.error("Provisioning %s failed: %s", key, exc)
                    errors[key] = str(exc)
        return artifacts, errors

    @staticmethod
    def _register_step_id(
        record: DeploymentRecord,
        group_id: int,
        registrations: tuple[Registration, ...],
        all_modes: bool,
    ) -> str:
        """Registration step id, bumped past completed steps whose entries
        were since re-pointed at other verifiers (a reverted config change).
        """
        wiring = record.merged_checkpoints(register_prefix(group_id))

        def stale() -> bool:
            for registration in registrations:
                label = entry_label(registration.mode, registration.batch_size)
                if label in wiring and wiring[label] != record.address_of(
                    registration.verifier_step_id
                ):
                    return True
            return False

        revision = 0
        step_id = register_step_id(group_id, registrations, all_modes=all_modes)
        while record.is_completed(step_id) and stale():
            revision += 1
            step_id = register_step_id(
                group_id, registrations, all_modes=all_modes, revision=revision
            )
        return step_id

    def _plan_world_id(
        self,
        config: DeploymentConfig,
        record: DeploymentRecord,
        register_ids: dict[int, str],
        failures: dict[int, str],
        candidates: dict[str, DeploymentStep],
        satisfied: dict[str, str],
        order_keys: dict[str, tuple[int, int, int, int]],
    ) -> None:
        # After every group's own steps
        tail = max(config.group_ids) + 1

        def add(step: DeploymentStep, order_key: tuple[int, int, int, int]) -> None:
            if record.is_completed(step.step_id):
                satisfied[step.step_id] = record.address_of(step.step_id) or ""
                return
            candidates[step.step_id] = step.model_copy(
                update={"status": self._recorded_status(record, step.step_id)}
            )
            order_keys[step.step_id] = order_key

        add(
            DeploymentStep(
                step_id=SEMAPHORE_VERIFIER_STEP_ID,
                kind=StepKind.DEPLOY_SEMAPHORE_VERIFIER,
            ),
            (tail, 0, 0, 0),
        )

        routes: dict[int, str] = {}
        for group_id in config.group_ids:
            if group_id in failures:
                continue
            group = config.groups[group_id]
            step_id = identity_manager_step_id(group_id, group.tree_depth, group.initial_root)
            routes[group_id] = step_id
            add(
                DeploymentStep(
                    step_id=step_id,
                    kind=StepKind.DEPLOY_IDENTITY_MANAGER,
                    depends_on=(register_ids[group_id], SEMAPHORE_VERIFIER_STEP_ID),
                    group_id=group_id,
                    tree_depth=group.tree_depth,
                    initial_root=group.initial_root,
                ),
                (tail, 1, group_id, 0),
            )

        if failures:
            logger.warning(
                "Router not planned: %d group(s) could not be planned.", len(failures)
            )
            return
        add(
            DeploymentStep(
                step_id=router_step_id(routes),
                kind=StepKind.DEPLOY_ROUTER,
                depends_on=tuple(routes.values()),
                routes=routes,
            ),
            (tail, 2, 0, 0),
        )

    @staticmethod
    def _recorded_status(record: DeploymentRecord, step_id: str) -> StepStatus:
        step = record.get(step_id)
        return step.status if step is not None else StepStatus.PENDING
