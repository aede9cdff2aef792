"""Contract compilation via Foundry's ``forge inspect``.

The verifier sources live in the cache, outside the contracts project, so
they are compiled with ``-C <source dir>`` from inside the project directory
to keep its remappings and compiler settings.
"""

from __future__ import annotations

import json
import logging
import subprocess
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from bootstrapper.errors import CompilationError

logger = logging.getLogger(__name__)

LOOKUP_TABLE_CONTRACT = "VerifierLookupTable"
VERIFIER_CONTRACT = "Verifier"

PAIRING_CONTRACT = "Pairing"
PAIRING_SOURCE = "lib/semaphore/packages/contracts/contracts/base/Pairing.sol"
SEMAPHORE_VERIFIER_CONTRACT = "SemaphoreVerifier"
IDENTITY_MANAGER_CONTRACT = "WorldIDIdentityManager"
IDENTITY_MANAGER_IMPL_V1 = "WorldIDIdentityManagerImplV1"
IDENTITY_MANAGER_IMPL_V2 = "WorldIDIdentityManagerImplV2"
ROUTER_CONTRACT = "WorldIDRouter"
ROUTER_IMPL_V1 = "WorldIDRouterImplV1"


class ContractSpec(BaseModel):
    """A contract by name, optionally pinned to a source file.

    ``libraries`` are ``path:Name:address`` links for external libraries.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    source: Path | None = None
    libraries: tuple[str, ...] = ()

    def __str__(self) -> str:
        if self.source is None:
            return self.name
        return f"{self.source}:{self.name}"


class CompiledContract(BaseModel):
    """ABI and creation bytecode of a compiled contract."""

    model_config = ConfigDict(frozen=True)

    name: str
    abi: list[dict[str, Any]]
    bytecode: str


@runtime_checkable
class ContractCompiler(Protocol):
    def compile(self, spec: ContractSpec) -> CompiledContract:
        """Return ABI and bytecode for *spec*."""
        ...


class ForgeCompiler:
    """Runs ``forge inspect`` in the contracts project, memoizing results."""

    def __init__(self, project_dir: Path, *, forge_bin: str = "forge") -> None:
        self._project_dir = Path(project_dir)
        self._forge_bin = forge_bin
        self._lock = threading.Lock()
        self._compiled: dict[ContractSpec, CompiledContract] = {}

    def compile(self, spec: ContractSpec) -> CompiledContract:
        with self._lock:
            cached = self._compiled.get(spec)
            if cached is not None:
                return cached

            logger.info("Compiling %s with forge.", spec)
            abi_text = self._inspect(spec, "abi")
            try:
                abi = json.loads(abi_text)
            except json.JSONDecodeError as exc:
                raise CompilationError(f"forge returned a malformed ABI for {spec}: {exc}") from exc
            bytecode = self._inspect(spec, "bytecode").strip()
            if not bytecode.startswith("0x") or len(bytecode) <= 2:
                raise CompilationError(f"forge returned no bytecode for {spec}")

            compiled = CompiledContract(name=spec.name, abi=abi, bytecode=bytecode)
            self._compiled[spec] = compiled
            return compiled

    def _inspect(self, spec: ContractSpec, field: str) -> str:
        cmd = [self._forge_bin, "inspect"]
        if spec.source is None:
            target = spec.name
        else:
            source = spec.source.resolve()
            cmd += ["-C", str(source.parent)]
            target = f"{source}:{spec.name}"
        for library in spec.libraries:
            cmd += ["--libraries", library]
        cmd += [target, field]

        logger.debug("Running %s in %s", " ".join(cmd), self._project_dir)
        try:
            result = subprocess.run(
                cmd,
                cwd=self._project_dir,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise CompilationError(f"Cannot run forge for {spec}: {exc}") from exc
        if result.returncode != 0:
            raise CompilationError(
                f"forge inspect {field} failed for {spec}: {result.stderr.strip()}"
            )
        return result.stdout
