"""Chain deployer — executes planned steps as transactions, durably.

Every transaction goes through the same sequence:

1. Take the next local nonce (fetched from the chain once, then counted).
2. Build and sign; record the submission (nonce + hash) in the state store.
3. Broadcast and wait for the receipt, retrying transient RPC failures with
   bounded exponential backoff.  Retries re-send the *same* signed
   transaction, so a retry can never consume a second nonce.
4. Record the checkpoint or completion before moving on.

A run interrupted between steps 2 and 4 leaves a pending submission in the
record; :meth:`ChainDeployer.reconcile` settles those at the start of the
next run.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from bootstrapper.core.artifact_cache import ArtifactCache
from bootstrapper.core.chain import ChainClient, SignedTransaction, TxReceipt
from bootstrapper.core.forge import (
    IDENTITY_MANAGER_CONTRACT,
    IDENTITY_MANAGER_IMPL_V1,
    IDENTITY_MANAGER_IMPL_V2,
    LOOKUP_TABLE_CONTRACT,
    PAIRING_CONTRACT,
    PAIRING_SOURCE,
    ROUTER_CONTRACT,
    ROUTER_IMPL_V1,
    SEMAPHORE_VERIFIER_CONTRACT,
    VERIFIER_CONTRACT,
    CompiledContract,
    ContractCompiler,
    ContractSpec,
)
from bootstrapper.core.state_store import DeploymentStateStore
from bootstrapper.core.step_graph import StepGraph
from bootstrapper.errors import DeploymentFailed, TransientChainError
from bootstrapper.models.artifacts import ArtifactKind, ProverMode
from bootstrapper.models.record import DeploymentRecord, PendingSubmission, StepRecord
from bootstrapper.models.steps import (
    ENTRY_PREFIX,
    IMPL_V1_LABEL,
    IMPL_V2_LABEL,
    PAIRING_LABEL,
    PROXY_LABEL,
    ROUTE_PREFIX,
    ROUTER_IMPL_LABEL,
    ROUTER_LABEL,
    ROUTER_PREFIX,
    SEMAPHORE_VERIFIER_STEP_ID,
    UPDATE_TABLE_LABEL,
    UPGRADE_LABEL,
    VERIFIER_LABEL,
    DeploymentPlan,
    DeploymentStep,
    StepKind,
    StepOutcome,
    StepStatus,
    dispatcher_label,
    entry_label,
    register_prefix,
    route_label,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

UPDATE_VERIFIER_FN = "updateVerifier"


class ChainDeployer:
    """Runs planned steps against a chain.

    Parameters
    ----------
    chain:
        Signing client for the target network.
    compiler:
        Produces ABI and bytecode for every contract deployed.
    cache:
        Source of the verifier contract files.
    store, deployment_name:
        Where progress is recorded.
    max_attempts, backoff_base, backoff_max:
        Retry policy for transient RPC errors.
    receipt_timeout:
        Seconds to wait for one receipt before treating it as transient.
    pipelined:
        Submit all verifier deployments of a dependency wave before waiting
        for any receipt.
    """

    def __init__(
        self,
        chain: ChainClient,
        compiler: ContractCompiler,
        cache: ArtifactCache,
        store: DeploymentStateStore,
        deployment_name: str,
        *,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        receipt_timeout: float = 300.0,
        pipelined: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._chain = chain
        self._compiler = compiler
        self._cache = cache
        self._store = store
        self._name = deployment_name
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._receipt_timeout = receipt_timeout
        self._pipelined = pipelined
        self._sleep = sleep

        self._record: DeploymentRecord = store.load(deployment_name)
        self._satisfied: dict[str, str] = {}
        self._next_nonce: int | None = None

    @property
    def record(self) -> DeploymentRecord:
        return self._record

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self) -> list[str]:
        """Settle submissions left unconfirmed by an earlier run.

        Returns the ids of the steps that were touched.
        """
        touched = []
        for rec in self._record.in_flight():
            logger.info(
                "Reconciling %s: %s transaction with nonce %d left unconfirmed.",
                rec.step_id,
                rec.pending.label,
                rec.pending.nonce,
            )
            self._reconcile_step(rec)
            touched.append(rec.step_id)
        return touched

    def _reconcile_step(self, rec: StepRecord) -> None:
        pending = rec.pending
        receipt = self._settle(rec)
        if receipt is not None:
            self._apply_receipt(rec.step_id, pending, receipt)

    def _settle(self, rec: StepRecord) -> TxReceipt | None:
        """Look up the receipt of *rec*'s pending submission.

        Returns the receipt when the transaction was mined.  Otherwise the
        step is marked failed: retryable when the nonce is still free,
        needing review when it was consumed or the chain cannot be asked.
        """
        pending = rec.pending
        receipt: TxReceipt | None = None
        chain_nonce = -1
        try:
            if pending.tx_hash:
                receipt = self._chain.get_receipt(pending.tx_hash)
            if receipt is None:
                chain_nonce = self._chain.get_nonce()
        except TransientChainError as exc:
            self._record = self._store.record_failure(
                self._name,
                rec.step_id,
                f"cannot determine outcome of {pending.label} transaction {pending.tx_hash}: {exc}",
                needs_review=True,
            )
            return None

        if receipt is not None:
            return receipt
        if chain_nonce <= pending.nonce:
            logger.warning(
                "Transaction %s for %s was never mined; the step will be retried.",
                pending.tx_hash,
                rec.step_id,
            )
            self._record = self._store.record_failure(
                self._name,
                rec.step_id,
                f"{pending.label} transaction {pending.tx_hash} was dropped before mining",
            )
        else:
            logger.error(
                "Nonce %d of %s was consumed but transaction %s has no receipt.",
                pending.nonce,
                rec.step_id,
                pending.tx_hash,
            )
            self._record = self._store.record_failure(
                self._name,
                rec.step_id,
                f"nonce {pending.nonce} was used by an unknown transaction; "
                f"check {pending.tx_hash} and resolve the step manually",
                needs_review=True,
            )
        return None

    def _apply_receipt(
        self, step_id: str, pending: PendingSubmission, receipt: TxReceipt
    ) -> None:
        if not receipt.succeeded:
            self._record = self._store.record_failure(
                self._name, step_id, f"{pending.label} transaction {receipt.tx_hash} reverted"
            )
        elif pending.label == VERIFIER_LABEL:
            self._complete(step_id, receipt.contract_address or "", receipt.tx_hash)
        else:
            value = pending.value
            if value is None:
                value = receipt.contract_address or receipt.tx_hash
            self._checkpoint(step_id, pending.label, value, receipt.tx_hash)

    # ------------------------------------------------------------------
    # Plan execution
    # ------------------------------------------------------------------

    def execute_plan(self, plan: DeploymentPlan) -> list[StepOutcome]:
        """Execute *plan* in order, stopping at the first failed step."""
        self._satisfied = dict(plan.satisfied)
        if self._pipelined:
            return self._execute_pipelined(plan)

        outcomes: list[StepOutcome] = []
        for step in plan.steps:
            outcome = self._run(step)
            outcomes.append(outcome)
            if outcome.status == StepStatus.FAILED:
                break
        return outcomes

    def _run(self, step: DeploymentStep) -> StepOutcome:
        try:
            address = self.execute(step)
        except DeploymentFailed as exc:
            return StepOutcome(step_id=step.step_id, status=StepStatus.FAILED, error=exc.cause)
        return StepOutcome(step_id=step.step_id, status=StepStatus.COMPLETED, address=address)

    def _execute_pipelined(self, plan: DeploymentPlan) -> list[StepOutcome]:
        graph = StepGraph({s.step_id: s.depends_on for s in plan.steps})
        outcomes: list[StepOutcome] = []

        for wave in graph.waves(plan.step_ids):
            steps = [plan.get(sid) for sid in wave]
            verifiers = [s for s in steps if s.kind == StepKind.DEPLOY_VERIFIER]
            others = [s for s in steps if s.kind != StepKind.DEPLOY_VERIFIER]

            wave_outcomes = self._deploy_verifiers_pipelined(verifiers)
            outcomes.extend(wave_outcomes)
            if any(o.status == StepStatus.FAILED for o in wave_outcomes):
                return outcomes

            for step in others:
                outcome = self._run(step)
                outcomes.append(outcome)
                if outcome.status == StepStatus.FAILED:
                    return outcomes
        return outcomes

    def _deploy_verifiers_pipelined(self, steps: list[DeploymentStep]) -> list[StepOutcome]:
        """Submit every verifier of a wave, then collect receipts in plan order."""
        submitted: list[tuple[DeploymentStep, SignedTransaction]] = []
        outcomes: dict[str, StepOutcome] = {}

        for step in steps:
            existing = self._record.get(step.step_id)
            if existing is not None and existing.pending is not None:
                self._reconcile_step(existing)
                existing = self._record.get(step.step_id)
            if existing is not None and existing.status == StepStatus.COMPLETED:
                self._satisfied[step.step_id] = existing.address or ""
                outcomes[step.step_id] = StepOutcome(
                    step_id=step.step_id, status=StepStatus.COMPLETED, address=existing.address
                )
                continue
            try:
                self._check_runnable(step)
                compiled = self._compile_verifier(step)
                signed = self._sign_and_record(
                    step.step_id,
                    VERIFIER_LABEL,
                    lambda nonce, c=compiled: self._chain.build_deploy(c, (), nonce),
                )
                self._broadcast(step.step_id, signed)
            except DeploymentFailed as exc:
                self._next_nonce = None
                outcomes[step.step_id] = StepOutcome(
                    step_id=step.step_id, status=StepStatus.FAILED, error=exc.cause
                )
                break
            except Exception as exc:
                self._next_nonce = None
                failure = self._fail(step.step_id, f"{type(exc).__name__}: {exc}")
                outcomes[step.step_id] = StepOutcome(
                    step_id=step.step_id, status=StepStatus.FAILED, error=failure.cause
                )
                break
            submitted.append((step, signed))
            logger.info("Submitted %s (nonce %d).", step.describe(), signed.nonce)

        # Transactions already broadcast must be settled even if a later one failed.
        for step, signed in submitted:
            try:
                receipt = self._confirm(step.step_id, signed)
                address = self._finish(step, receipt)
            except DeploymentFailed as exc:
                self._next_nonce = None
                outcomes[step.step_id] = StepOutcome(
                    step_id=step.step_id, status=StepStatus.FAILED, error=exc.cause
                )
                continue
            outcomes[step.step_id] = StepOutcome(
                step_id=step.step_id, status=StepStatus.COMPLETED, address=address
            )

        return [outcomes[s.step_id] for s in steps if s.step_id in outcomes]

    # ------------------------------------------------------------------
    # Single step
    # ------------------------------------------------------------------

    def execute(self, step: DeploymentStep) -> str:
        """Execute one step and return the address it produced.

        A step already completed in the record returns its recorded address
        without touching the chain.  Raises ``DeploymentFailed`` after the
        failure has been recorded.
        """
        existing = self._record.get(step.step_id)
        if existing is not None and existing.pending is not None:
            self._reconcile_step(existing)
            existing = self._record.get(step.step_id)
        if existing is not None and existing.status == StepStatus.COMPLETED:
            logger.info("%s already completed at %s.", step.step_id, existing.address)
            self._satisfied[step.step_id] = existing.address or ""
            return existing.address or ""

        self._check_runnable(step)
        handlers: dict[StepKind, Callable[[DeploymentStep], str]] = {
            StepKind.DEPLOY_VERIFIER: self._deploy_verifier,
            StepKind.REGISTER_GROUP: self._register_group,
            StepKind.DEPLOY_SEMAPHORE_VERIFIER: self._deploy_semaphore_verifier,
            StepKind.DEPLOY_IDENTITY_MANAGER: self._deploy_identity_manager,
            StepKind.DEPLOY_ROUTER: self._deploy_router,
        }
        logger.info("Executing %s.", step.describe())
        try:
            address = handlers[step.kind](step)
        except DeploymentFailed:
            self._next_nonce = None
            raise
        except Exception as exc:
            self._next_nonce = None
            raise self._fail(step.step_id, f"{type(exc).__name__}: {exc}") from exc
        return address

    def _check_runnable(self, step: DeploymentStep) -> None:
        existing = self._record.get(step.step_id)
        if existing is not None and existing.needs_review:
            raise DeploymentFailed(
                step.step_id,
                f"needs review: {existing.error}. "
                f"Run 'bootstrapper resolve {self._name} {step.step_id}' once the outcome is known",
            )

    def _deploy_verifier(self, step: DeploymentStep) -> str:
        compiled = self._compile_verifier(step)
        receipt = self._transact(
            step.step_id,
            VERIFIER_LABEL,
            lambda nonce: self._chain.build_deploy(compiled, (), nonce),
        )
        return self._finish(step, receipt)

    def _compile_verifier(self, step: DeploymentStep) -> CompiledContract:
        key = step.artifact_key
        if key is None:
            raise DeploymentFailed(step.step_id, "verifier step has no artifact key")
        if not self._cache.has(key, ArtifactKind.VERIFIER_CONTRACT):
            raise self._fail(step.step_id, f"verifier contract for {key} is not cached")
        source = self._cache.path_for(key, ArtifactKind.VERIFIER_CONTRACT)
        return self._compiler.compile(ContractSpec(name=VERIFIER_CONTRACT, source=source))

    def _finish(self, step: DeploymentStep, receipt: TxReceipt) -> str:
        """Complete a step whose last transaction deployed its contract."""
        if not receipt.succeeded:
            raise self._fail(step.step_id, f"deployment transaction {receipt.tx_hash} reverted")
        if not receipt.contract_address:
            raise self._fail(
                step.step_id, f"receipt {receipt.tx_hash} carries no contract address"
            )
        self._complete(step.step_id, receipt.contract_address, receipt.tx_hash)
        logger.info("Finished %s at %s.", step.describe(), receipt.contract_address)
        return receipt.contract_address

    def _register_group(self, step: DeploymentStep) -> str:
        """Deploy the group's lookup tables and point every entry at its verifier.

        Entries are checkpointed with the verifier they point to, so an entry
        whose verifier changed (a new tree depth) is updated rather than
        skipped.
        """
        group_id = step.group_id
        known = self._record.merged_checkpoints(register_prefix(group_id))
        lookup_table = self._compiler.compile(ContractSpec(name=LOOKUP_TABLE_CONTRACT))

        dispatchers: dict[ProverMode, str] = {}
        for mode in ProverMode:
            registrations = sorted(
                (r for r in step.registrations if r.mode == mode),
                key=lambda r: r.batch_size,
            )
            if not registrations and not step.all_modes:
                continue

            label = dispatcher_label(mode)
            dispatcher = known.get(label)
            if dispatcher:
                logger.info("Reusing %s lookup table for group %d at %s.", mode.value, group_id, dispatcher)
            else:
                dispatcher = self._deploy_contract(step.step_id, label, lookup_table)
                logger.info("Deployed %s lookup table for group %d at %s.", mode.value, group_id, dispatcher)
            dispatchers[mode] = dispatcher

            registered = {
                int(lbl.rsplit(":", 1)[1])
                for lbl in known
                if lbl.startswith(f"{ENTRY_PREFIX}{mode.value}:")
            }
            configured = {r.batch_size for r in registrations}
            for batch_size in sorted(registered - configured):
                logger.warning(
                    "%s batch size %d for group %d will not be disabled - remove it manually.",
                    mode.value.capitalize(),
                    batch_size,
                    group_id,
                )

            for registration in registrations:
                label = entry_label(mode, registration.batch_size)
                verifier = self._dependency_address(step.step_id, registration.verifier_step_id)
                current = known.get(label)
                if current == verifier:
                    continue
                if current is not None:
                    logger.info(
                        "Re-pointing %s batch size %d for group %d from %s to %s.",
                        mode.value,
                        registration.batch_size,
                        group_id,
                        current,
                        verifier,
                    )
                self._call(
                    step.step_id,
                    label,
                    dispatcher,
                    lookup_table.abi,
                    UPDATE_VERIFIER_FN,
                    (registration.batch_size, verifier),
                    value=verifier,
                )
                logger.info(
                    "Registered %s batch size %d for group %d -> %s.",
                    mode.value,
                    registration.batch_size,
                    group_id,
                    verifier,
                )

        address = dispatchers.get(ProverMode.INSERTION) or next(iter(dispatchers.values()), "")
        self._complete(step.step_id, address, None)
        return address

    def _deploy_semaphore_verifier(self, step: DeploymentStep) -> str:
        known = self._own_checkpoints(step.step_id)
        pairing = known.get(PAIRING_LABEL) or self._deploy_contract(
            step.step_id, PAIRING_LABEL, self._compiler.compile(ContractSpec(name=PAIRING_CONTRACT))
        )
        compiled = self._compiler.compile(
            ContractSpec(
                name=SEMAPHORE_VERIFIER_CONTRACT,
                libraries=(f"{PAIRING_SOURCE}:{PAIRING_CONTRACT}:{pairing}",),
            )
        )
        receipt = self._transact(
            step.step_id,
            VERIFIER_LABEL,
            lambda nonce: self._chain.build_deploy(compiled, (), nonce),
        )
        return self._finish(step, receipt)

    def _deploy_identity_manager(self, step: DeploymentStep) -> str:
        """Deploy a group's identity manager behind its proxy, then upgrade it.

        The insertion and deletion tables are the group's registered lookup
        tables; identity updates get a table of their own.
        """
        group_id = step.group_id
        known = self._own_checkpoints(step.step_id)
        wiring = self._record.merged_checkpoints(register_prefix(group_id))
        insertion = wiring.get(dispatcher_label(ProverMode.INSERTION))
        deletion = wiring.get(dispatcher_label(ProverMode.DELETION))
        if not insertion or not deletion:
            raise self._fail(
                step.step_id, f"group {group_id} has no insertion and deletion lookup tables"
            )
        semaphore = self._dependency_address(step.step_id, SEMAPHORE_VERIFIER_STEP_ID)

        update_table = known.get(UPDATE_TABLE_LABEL) or self._deploy_contract(
            step.step_id,
            UPDATE_TABLE_LABEL,
            self._compiler.compile(ContractSpec(name=LOOKUP_TABLE_CONTRACT)),
        )

        impl_v1 = self._compiler.compile(ContractSpec(name=IDENTITY_MANAGER_IMPL_V1))
        impl_v1_address = known.get(IMPL_V1_LABEL) or self._deploy_contract(
            step.step_id, IMPL_V1_LABEL, impl_v1
        )

        proxy = known.get(PROXY_LABEL)
        if not proxy:
            init = self._chain.encode_call(
                impl_v1.abi,
                "initialize",
                (step.tree_depth, int(step.initial_root, 16), insertion, update_table, semaphore),
            )
            proxy = self._deploy_contract(
                step.step_id,
                PROXY_LABEL,
                self._compiler.compile(ContractSpec(name=IDENTITY_MANAGER_CONTRACT)),
                (impl_v1_address, init),
            )
            logger.info("Deployed identity manager for group %d at %s.", group_id, proxy)

        impl_v2 = self._compiler.compile(ContractSpec(name=IDENTITY_MANAGER_IMPL_V2))
        impl_v2_address = known.get(IMPL_V2_LABEL) or self._deploy_contract(
            step.step_id, IMPL_V2_LABEL, impl_v2
        )
        if UPGRADE_LABEL not in known:
            init_v2 = self._chain.encode_call(impl_v2.abi, "initializeV2", (deletion,))
            self._call(
                step.step_id,
                UPGRADE_LABEL,
                proxy,
                impl_v2.abi,
                "upgradeToAndCall",
                (impl_v2_address, init_v2),
            )
            logger.info("Upgraded identity manager for group %d to %s.", group_id, impl_v2_address)

        self._complete(step.step_id, proxy, None)
        return proxy

    def _deploy_router(self, step: DeploymentStep) -> str:
        """Deploy the router once, then bring its routes in line with *step*.

        Routes are shared by every router step; a group no longer routed
        is disabled.
        """
        known = self._record.merged_checkpoints(ROUTER_PREFIX)
        targets = {
            group_id: self._dependency_address(step.step_id, dependency)
            for group_id, dependency in sorted(step.routes.items())
        }
        impl = self._compiler.compile(ContractSpec(name=ROUTER_IMPL_V1))
        impl_address = known.get(ROUTER_IMPL_LABEL) or self._deploy_contract(
            step.step_id, ROUTER_IMPL_LABEL, impl
        )

        router = known.get(ROUTER_LABEL)
        if not router:
            # The initializer routes group 0
            self._checkpoint(step.step_id, route_label(0), targets[0], None)
            known[route_label(0)] = targets[0]
            init = self._chain.encode_call(impl.abi, "initialize", (targets[0],))
            router = self._deploy_contract(
                step.step_id,
                ROUTER_LABEL,
                self._compiler.compile(ContractSpec(name=ROUTER_CONTRACT)),
                (impl_address, init),
            )
            logger.info("Deployed router at %s.", router)

        for group_id, target in targets.items():
            label = route_label(group_id)
            current = known.get(label)
            if current == target:
                continue
            if current is None:
                function, args = "addGroup", (target,)
            else:
                function, args = "updateGroup", (group_id, target)
            self._call(step.step_id, label, router, impl.abi, function, args, value=target)
            logger.info("Routed group %d to %s.", group_id, target)

        for label, current in sorted(known.items()):
            if not label.startswith(ROUTE_PREFIX) or not current:
                continue
            group_id = int(label[len(ROUTE_PREFIX):])
            if group_id in targets:
                continue
            self._call(step.step_id, label, router, impl.abi, "disableGroup", (group_id,), value="")
            logger.warning("Disabled group %d on the router.", group_id)

        self._complete(step.step_id, router, None)
        return router

    def _own_checkpoints(self, step_id: str) -> dict[str, str]:
        rec = self._record.get(step_id)
        return dict(rec.checkpoints) if rec is not None else {}

    def _dependency_address(self, step_id: str, dependency: str) -> str:
        address = self._satisfied.get(dependency) or self._record.address_of(dependency)
        if not address:
            raise self._fail(step_id, f"dependency {dependency} has not completed")
        return address

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _deploy_contract(
        self,
        step_id: str,
        label: str,
        compiled: CompiledContract,
        args: Sequence[Any] = (),
    ) -> str:
        """Deploy an intermediate contract of a step and checkpoint its address."""
        receipt = self._transact(
            step_id, label, lambda nonce: self._chain.build_deploy(compiled, args, nonce)
        )
        if not receipt.succeeded or not receipt.contract_address:
            raise self._fail(step_id, f"{compiled.name} deployment {receipt.tx_hash} failed")
        self._checkpoint(step_id, label, receipt.contract_address, receipt.tx_hash)
        return receipt.contract_address

    def _call(
        self,
        step_id: str,
        label: str,
        to: str,
        abi: list[dict[str, Any]],
        function: str,
        args: Sequence[Any],
        *,
        value: str | None = None,
    ) -> str:
        """Call *function* on *to*; the checkpoint holds *value*, else the hash."""
        receipt = self._transact(
            step_id,
            label,
            lambda nonce: self._chain.build_call(to, abi, function, args, nonce),
            value=value,
        )
        if not receipt.succeeded:
            raise self._fail(step_id, f"{function} transaction {receipt.tx_hash} reverted")
        self._checkpoint(
            step_id, label, value if value is not None else receipt.tx_hash, receipt.tx_hash
        )
        return receipt.tx_hash

    def _transact(
        self,
        step_id: str,
        label: str,
        build: Callable[[int], SignedTransaction],
        *,
        value: str | None = None,
    ) -> TxReceipt:
        signed = self._sign_and_record(step_id, label, build, value=value)
        self._broadcast(step_id, signed)
        return self._confirm(step_id, signed)

    def _sign_and_record(
        self,
        step_id: str,
        label: str,
        build: Callable[[int], SignedTransaction],
        *,
        value: str | None = None,
    ) -> SignedTransaction:
        nonce = self._take_nonce(step_id)
        signed = self._retry(step_id, f"building {label} transaction", lambda _: build(nonce))
        self._record = self._store.record_submission(
            self._name, step_id, nonce=nonce, label=label, tx_hash=signed.tx_hash, value=value
        )
        return signed

    def _broadcast(self, step_id: str, signed: SignedTransaction) -> None:
        try:
            self._retry(step_id, f"broadcasting {signed.tx_hash}", lambda _: self._chain.send(signed))
        except TransientChainError as exc:
            self._recover(step_id, exc)

    def _confirm(self, step_id: str, signed: SignedTransaction) -> TxReceipt:
        def attempt(n: int) -> TxReceipt:
            if n > 1:
                receipt = self._chain.get_receipt(signed.tx_hash)
                if receipt is not None:
                    return receipt
                self._chain.send(signed)
            return self._chain.wait_for_receipt(signed.tx_hash, self._receipt_timeout)

        try:
            return self._retry(step_id, f"waiting for {signed.tx_hash}", attempt)
        except TransientChainError as exc:
            return self._recover(step_id, exc)

    def _recover(self, step_id: str, exc: TransientChainError) -> TxReceipt:
        """Settle a submission whose confirmation could not be observed.

        Returns the receipt when the transaction turns out to be mined;
        otherwise the outcome has been recorded and ``DeploymentFailed`` is
        raised.
        """
        rec = self._record.get(step_id)
        receipt = self._settle(rec) if rec is not None and rec.pending is not None else None
        if receipt is None:
            self._next_nonce = None
            raise DeploymentFailed(step_id, f"lost track of submitted transaction: {exc}") from exc
        logger.info("Found receipt of %s for %s after retries ran out.", receipt.tx_hash, step_id)
        return receipt

    def _take_nonce(self, step_id: str) -> int:
        if self._next_nonce is None:
            self._next_nonce = self._retry(step_id, "fetching nonce", lambda _: self._chain.get_nonce())
            logger.debug("Starting from chain nonce %d.", self._next_nonce)
        nonce = self._next_nonce
        self._next_nonce += 1
        return nonce

    def _retry(self, step_id: str, what: str, fn: Callable[[int], T]) -> T:
        """Call ``fn(attempt)`` until it succeeds or attempts run out.

        Only ``TransientChainError`` is retried; the last one is re-raised.
        """
        for attempt in range(1, self._max_attempts + 1):
            try:
                return fn(attempt)
            except TransientChainError as exc:
                if attempt == self._max_attempts:
                    logger.error(
                        "%s for %s failed after %d attempts: %s",
                        what, step_id, attempt, exc,
                    )
                    raise
                delay = min(self._backoff_base * 2 ** (attempt - 1), self._backoff_max)
                logger.warning(
                    "%s for %s failed (attempt %d/%d): %s; retrying in %.1fs.",
                    what, step_id, attempt, self._max_attempts, exc, delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _checkpoint(self, step_id: str, label: str, value: str, tx_hash: str | None) -> None:
        self._record = self._store.record_checkpoint(
            self._name, step_id, label, value, tx_hash=tx_hash
        )

    def _complete(self, step_id: str, address: str, tx_hash: str | None) -> None:
        self._record = self._store.record_completion(
            self._name, step_id, address, tx_hash=tx_hash
        )
        self._satisfied[step_id] = address

    def _fail(self, step_id: str, cause: str, *, needs_review: bool = False) -> DeploymentFailed:
        logger.error("Step %s failed: %s", step_id, cause)
        self._record = self._store.record_failure(
            self._name, step_id, cause, needs_review=needs_review
        )
        return DeploymentFailed(step_id, cause)
