"""Bootstrapper orchestrator — wires the engine for one deployment name.

The Bootstrapper connects the ArtifactCache, KeyProvisioner,
ContractSynthesizer, DeploymentPlanner, ChainDeployer and
DeploymentStateStore.  A deploy run is:

    lock -> reconcile -> plan (materializes artifacts) -> execute -> report

Chain, compiler and key generator are injectable; by default they are
built from settings on first use.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from bootstrapper.config import BootstrapperSettings
from bootstrapper.core.artifact_cache import ArtifactCache
from bootstrapper.core.chain import ChainClient, Web3ChainClient
from bootstrapper.core.chain_deployer import ChainDeployer
from bootstrapper.core.contract_synthesizer import ContractSynthesizer
from bootstrapper.core.forge import ContractCompiler, ForgeCompiler
from bootstrapper.core.key_provisioner import KeyProvisioner
from bootstrapper.core.keygen import KeyGenerator, MtbKeyGenerator
from bootstrapper.core.planner import DeploymentPlanner
from bootstrapper.core.report import REPORT_FILE, build_report, write_report
from bootstrapper.core.state_store import DeploymentStateStore, validate_deployment_name
from bootstrapper.core.tool_fetcher import ToolFetcher
from bootstrapper.errors import BootstrapperError
from bootstrapper.models.config import DeploymentConfig
from bootstrapper.models.record import DeploymentRecord
from bootstrapper.models.steps import DeploymentPlan, StepOutcome, StepStatus

logger = logging.getLogger(__name__)


class DeployResult(BaseModel):
    """What one ``deploy`` run did."""

    model_config = ConfigDict(frozen=True)

    plan: DeploymentPlan
    outcomes: list[StepOutcome]
    reconciled: list[str] = []
    report_path: Path | None = None

    @property
    def failed(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status == StepStatus.FAILED]

    @property
    def succeeded(self) -> bool:
        return (
            not self.failed
            and not self.plan.failures
            and len(self.outcomes) == len(self.plan.steps)
        )


class Bootstrapper:
    """Entry point to the engine for one deployment name.

    Parameters
    ----------
    settings:
        Runtime settings.  Uses environment defaults if not provided.
    deployment_name:
        Overrides ``settings.deployment_name``.
    generator, chain, compiler:
        Injected backends.  Built from settings when omitted.
    """

    def __init__(
        self,
        settings: BootstrapperSettings | None = None,
        deployment_name: str | None = None,
        *,
        generator: KeyGenerator | None = None,
        chain: ChainClient | None = None,
        compiler: ContractCompiler | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or BootstrapperSettings()
        self.deployment_name = validate_deployment_name(
            deployment_name or self.settings.deployment_name
        )
        self._sleep = sleep

        # Core subsystems
        self.store = DeploymentStateStore(self.settings.deployments_dir)
        self.cache = ArtifactCache(self.settings.resolved_cache_dir(self.deployment_name))
        self.keys = KeyProvisioner(self.cache, generator or self._default_generator())
        self.synthesizer = ContractSynthesizer(self.keys)
        self.planner = DeploymentPlanner(
            self.synthesizer, workers=self.settings.provisioning_workers
        )

        self._chain = chain
        self._compiler = compiler

    @property
    def deployment_dir(self) -> Path:
        return self.store.deployment_dir(self.deployment_name)

    @property
    def report_path(self) -> Path:
        return self.deployment_dir / REPORT_FILE

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def status(self) -> DeploymentRecord:
        return self.store.load(self.deployment_name)

    def plan(self, config: DeploymentConfig) -> DeploymentPlan:
        """Build a plan against the current record without touching the chain.

        Missing keys and verifier sources are still generated.
        """
        return self.planner.build_plan(config, self.status())

    def deploy(self, config: DeploymentConfig) -> DeployResult:
        """Plan and execute under the deployment lock, then write the report."""
        with self.store.lock(self.deployment_name):
            deployer = self.deployer()
            reconciled = deployer.reconcile()
            plan = self.planner.build_plan(config, deployer.record)

            if plan.is_empty:
                logger.info("Nothing to deploy for %s.", self.deployment_name)
                outcomes: list[StepOutcome] = []
            else:
                outcomes = deployer.execute_plan(plan)

            record = self.store.load(self.deployment_name)
            report_path = write_report(self.report_path, build_report(config, record))

        return DeployResult(
            plan=plan,
            outcomes=outcomes,
            reconciled=reconciled,
            report_path=report_path,
        )

    def resolve(self, step_id: str, *, address: str | None = None) -> DeploymentRecord:
        """Settle a step flagged for review.

        With *address* the step is recorded as completed there; without it
        the review flag is cleared and the next run retries the step.
        """
        with self.store.lock(self.deployment_name):
            record = self.store.load(self.deployment_name)
            if record.get(step_id) is None:
                raise BootstrapperError(
                    f"Step {step_id} has no record in deployment {self.deployment_name!r}"
                )
            if address:
                logger.info("Marking %s completed at %s by operator.", step_id, address)
                return self.store.record_completion(self.deployment_name, step_id, address)
            logger.info("Clearing review flag of %s; it will be retried.", step_id)
            return self.store.record_resolution(
                self.deployment_name, step_id, "cleared for retry by operator"
            )

    def deployer(self) -> ChainDeployer:
        s = self.settings
        return ChainDeployer(
            self._chain_client(),
            self._contract_compiler(),
            self.cache,
            self.store,
            self.deployment_name,
            max_attempts=s.max_attempts,
            backoff_base=s.backoff_base_seconds,
            backoff_max=s.backoff_max_seconds,
            receipt_timeout=s.receipt_timeout_seconds,
            pipelined=s.pipelined,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Default backends
    # ------------------------------------------------------------------

    def _default_generator(self) -> KeyGenerator:
        s = self.settings
        fetcher = ToolFetcher(
            self.cache.base_path,
            s.mtb_releases_url,
            s.mtb_version,
            sha256=s.mtb_sha256,
            attempts=s.download_attempts,
            timeout=s.download_timeout_seconds,
            sleep=self._sleep,
        )
        return MtbKeyGenerator(fetcher)

    def _chain_client(self) -> ChainClient:
        if self._chain is None:
            self._chain = Web3ChainClient(self.settings.rpc_url, self.settings.private_key)
        return self._chain

    def _contract_compiler(self) -> ContractCompiler:
        if self._compiler is None:
            self._compiler = ForgeCompiler(self.settings.contracts_dir)
        return self._compiler
