"""Bootstrapper: idempotent deployment of ZK verifier contracts.

Turns a YAML description of identity groups (tree depth + batch sizes) into
deployed verifier contracts and per-group lookup tables:
  - Key files and Solidity verifiers generated once and cached per
    (mode, tree depth, batch size)
  - Deterministic, de-duplicated step plans
  - Nonce-ordered execution with bounded retries and optional pipelining
  - Append-only SQLite state so interrupted runs resume safely
"""

__version__ = "0.1.0"
__description__ = "Idempotent deployment of ZK verifier contracts and group lookup tables"

from bootstrapper.core.orchestrator import Bootstrapper, DeployResult

__all__ = ["Bootstrapper", "DeployResult", "__version__"]
