"""Shared test fixtures for the bootstrapper.

The fakes stand in for the three injected backends: key generation (mtb),
compilation (forge) and the chain (JSON-RPC).  The fake chain mines every
broadcast transaction immediately and can inject transient failures,
reverts and simulated crashes.
"""

from __future__ import annotations

import hashlib
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from bootstrapper.config import BootstrapperSettings
from bootstrapper.core.artifact_cache import ArtifactCache
from bootstrapper.core.chain import SignedTransaction, TxReceipt
from bootstrapper.core.contract_synthesizer import ContractSynthesizer
from bootstrapper.core.forge import CompiledContract, ContractSpec
from bootstrapper.core.key_provisioner import KeyProvisioner
from bootstrapper.core.orchestrator import Bootstrapper
from bootstrapper.core.planner import DeploymentPlanner
from bootstrapper.core.state_store import DeploymentStateStore
from bootstrapper.errors import KeyGenerationError, TransientChainError
from bootstrapper.models.artifacts import ArtifactKey
from bootstrapper.models.config import DeploymentConfig, parse_config

DEPLOYMENT = "test-deploy"

LOOKUP_TABLE_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "updateVerifier",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "batchSize", "type": "uint256"},
            {"name": "verifier", "type": "address"},
        ],
        "outputs": [],
    }
]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeKeyGenerator:
    """Deterministic in-memory key generator with call accounting."""

    def __init__(self) -> None:
        self.delay = 0.0
        self.fail_for: set[ArtifactKey] = set()
        self.ready_calls = 0
        self.generated: list[ArtifactKey] = []
        self.exported: list[ArtifactKey] = []
        self._lock = threading.Lock()

    def ensure_ready(self) -> None:
        with self._lock:
            self.ready_calls += 1

    def generate_keys(self, key: ArtifactKey) -> bytes:
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.generated.append(key)
        if key in self.fail_for:
            raise KeyGenerationError(f"mtb setup failed for {key}")
        return f"keys:{key.label}".encode()

    def export_solidity(self, key: ArtifactKey, keys_file: Path) -> bytes:
        assert keys_file.exists()
        with self._lock:
            self.exported.append(key)
        return (
            "// SPDX-License-Identifier: MIT\n"
            "pragma solidity ^0.8.4;\n\n"
            f"contract Verifier {{\n    // {key.label}\n}}\n"
        ).encode()


class FakeCompiler:
    """Returns a fixed ABI and a bytecode derived from the contract spec."""

    def __init__(self) -> None:
        self.compiled: list[ContractSpec] = []

    def compile(self, spec: ContractSpec) -> CompiledContract:
        self.compiled.append(spec)
        digest = hashlib.sha256(str(spec).encode()).hexdigest()[:16]
        abi = LOOKUP_TABLE_ABI if spec.name == "VerifierLookupTable" else []
        return CompiledContract(name=spec.name, abi=abi, bytecode=f"0x6080{digest}")


class SimulatedCrash(BaseException):
    """Stands in for the process dying (not caught by ``except Exception``)."""


class FakeChainClient:
    """A single-account chain that mines each transaction on broadcast."""

    address = "0x" + "ab" * 20

    def __init__(self) -> None:
        self.nonce = 0
        self.fail_next: dict[str, int] = {}
        self.revert_names: set[str] = set()
        self.crash_after_sends: int | None = None
        self.log: list[tuple[str, str]] = []
        self.deployments: list[dict[str, Any]] = []
        self.calls: list[dict[str, Any]] = []
        self.receipts: dict[str, TxReceipt] = {}
        self._built: dict[str, dict[str, Any]] = {}
        self._sends = 0
        self._counter = 0

    def _maybe_fail(self, method: str) -> None:
        remaining = self.fail_next.get(method, 0)
        if remaining > 0:
            self.fail_next[method] = remaining - 1
            raise TransientChainError(f"{method}: connection reset")

    def _hash(self, *parts: Any) -> str:
        self._counter += 1
        text = ":".join(str(p) for p in (*parts, self._counter))
        return "0x" + hashlib.sha256(text.encode()).hexdigest()

    def get_nonce(self) -> int:
        self._maybe_fail("get_nonce")
        return self.nonce

    def build_deploy(
        self, contract: CompiledContract, args: Sequence[Any], nonce: int
    ) -> SignedTransaction:
        self._maybe_fail("build")
        tx_hash = self._hash("deploy", contract.name, nonce)
        self._built[tx_hash] = {"kind": "deploy", "name": contract.name, "args": tuple(args)}
        return SignedTransaction(tx_hash=tx_hash, raw=tx_hash.encode(), nonce=nonce)

    def build_call(
        self,
        to: str,
        abi: list[dict[str, Any]],
        function: str,
        args: Sequence[Any],
        nonce: int,
    ) -> SignedTransaction:
        self._maybe_fail("build")
        tx_hash = self._hash("call", to, function, nonce)
        self._built[tx_hash] = {
            "kind": "call",
            "to": to,
            "function": function,
            "args": tuple(args),
        }
        return SignedTransaction(tx_hash=tx_hash, raw=tx_hash.encode(), nonce=nonce)

    def encode_call(
        self, abi: list[dict[str, Any]], function: str, args: Sequence[Any]
    ) -> str:
        return f"{function}({', '.join(str(a) for a in args)})"

    def send(self, tx: SignedTransaction) -> str:
        self._maybe_fail("send")
        self.log.append(("send", tx.tx_hash))
        if tx.tx_hash in self.receipts:
            return tx.tx_hash
        if tx.nonce != self.nonce:
            raise ValueError(f"nonce mismatch: expected {self.nonce}, got {tx.nonce}")

        meta = self._built[tx.tx_hash]
        self.nonce += 1
        status = 1
        contract_address = None
        if meta["kind"] == "deploy":
            status = 0 if meta["name"] in self.revert_names else 1
            if status:
                contract_address = "0x" + f"{tx.nonce + 1:040x}"
                self.deployments.append(
                    {
                        "name": meta["name"],
                        "nonce": tx.nonce,
                        "address": contract_address,
                        "args": meta["args"],
                    }
                )
        else:
            status = 0 if meta["function"] in self.revert_names else 1
            if status:
                self.calls.append({**meta, "nonce": tx.nonce})
        self.receipts[tx.tx_hash] = TxReceipt(
            tx_hash=tx.tx_hash,
            status=status,
            block_number=tx.nonce + 1,
            contract_address=contract_address,
        )

        self._sends += 1
        if self.crash_after_sends is not None and self._sends >= self.crash_after_sends:
            self.crash_after_sends = None
            raise SimulatedCrash(f"crashed after broadcasting {tx.tx_hash}")
        return tx.tx_hash

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        self._maybe_fail("wait")
        self.log.append(("wait", tx_hash))
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            raise TransientChainError(f"timed out waiting for {tx_hash}")
        return receipt

    def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        self._maybe_fail("get_receipt")
        return self.receipts.get(tx_hash)

    # Helpers for assertions

    def used_nonces(self) -> list[int]:
        return sorted(r.block_number - 1 for r in self.receipts.values())

    def deployed(self, name: str) -> list[dict[str, Any]]:
        return [d for d in self.deployments if d["name"] == name]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def cache(tmp_dir: Path) -> ArtifactCache:
    return ArtifactCache(tmp_dir / "cache")


@pytest.fixture
def store(tmp_dir: Path) -> DeploymentStateStore:
    """Provide a state store rooted in a temp deployments directory."""
    return DeploymentStateStore(tmp_dir / "deployments")


@pytest.fixture
def fake_generator() -> FakeKeyGenerator:
    return FakeKeyGenerator()


@pytest.fixture
def fake_compiler() -> FakeCompiler:
    return FakeCompiler()


@pytest.fixture
def fake_chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def provisioner(cache: ArtifactCache, fake_generator: FakeKeyGenerator) -> KeyProvisioner:
    return KeyProvisioner(cache, fake_generator)


@pytest.fixture
def synthesizer(provisioner: KeyProvisioner) -> ContractSynthesizer:
    return ContractSynthesizer(provisioner)


@pytest.fixture
def planner(synthesizer: ContractSynthesizer) -> DeploymentPlanner:
    return DeploymentPlanner(synthesizer, workers=4)


@pytest.fixture
def scenario_config() -> DeploymentConfig:
    """Group 0 {30, [100]} and group 1 {30, [10, 100, 1000]}."""
    return parse_config(
        {
            "groups": {
                0: {"tree_depth": 30, "batch_sizes": [100]},
                1: {"tree_depth": 30, "batch_sizes": [10, 100, 1000]},
            }
        }
    )


@pytest.fixture
def settings(tmp_dir: Path) -> BootstrapperSettings:
    return BootstrapperSettings(
        _env_file=None,
        deployments_dir=tmp_dir / "deployments",
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        provisioning_workers=4,
    )


@pytest.fixture
def make_bootstrapper(
    settings: BootstrapperSettings,
    fake_generator: FakeKeyGenerator,
    fake_chain: FakeChainClient,
    fake_compiler: FakeCompiler,
) -> Callable[..., Bootstrapper]:
    """Factory fixture: a Bootstrapper wired to the shared fakes."""

    def _factory(name: str = DEPLOYMENT, **overrides: Any) -> Bootstrapper:
        s = settings.model_copy(update=overrides) if overrides else settings
        return Bootstrapper(
            s,
            name,
            generator=fake_generator,
            chain=fake_chain,
            compiler=fake_compiler,
            sleep=lambda _: None,
        )

    return _factory
