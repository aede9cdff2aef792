"""Error taxonomy for the deployment bootstrapper.

Every error raised by the engine derives from ``BootstrapperError`` so the
CLI can report it uniformly.  Whether an error is retried is decided by the
component that catches it, not by the error itself:

- ``ConfigValidationError`` / ``PlanningError`` are fatal.
- ``CacheCorruption`` is fatal for the affected artifact.
- ``ToolAcquisitionError`` is raised after the bounded download retries.
- ``TransientChainError`` is retried by the ChainDeployer; once the attempt
  limit is exhausted it surfaces as ``DeploymentFailed``.
- ``ConcurrentDeploymentError`` prevents two runs sharing one state record.
"""

from __future__ import annotations


class BootstrapperError(RuntimeError):
    """Base class for all bootstrapper errors."""


class PlanningError(BootstrapperError):
    """Raised when a deployment plan cannot be built."""


class ConfigValidationError(PlanningError, ValueError):
    """Raised when the deployment configuration violates its invariants."""


class CacheCorruption(BootstrapperError):
    """Raised when a cached artifact exists but is unreadable or malformed."""

    def __init__(self, path: object, reason: str) -> None:
        super().__init__(f"Corrupt cache entry at {path}: {reason}")
        self.path = path
        self.reason = reason


class ToolAcquisitionError(BootstrapperError):
    """Raised when the key-generation tool cannot be fetched or verified."""


class KeyGenerationError(BootstrapperError):
    """Raised when the key-generation tool fails to produce an artifact."""


class CompilationError(BootstrapperError):
    """Raised when a contract cannot be compiled or inspected."""


class TransientChainError(BootstrapperError):
    """Raised by chain clients for network/RPC failures worth retrying."""


class DeploymentFailed(BootstrapperError):
    """Raised when a deployment step fails permanently."""

    def __init__(self, step_id: str, cause: str) -> None:
        super().__init__(f"Step {step_id} failed: {cause}")
        self.step_id = step_id
        self.cause = cause


class ConcurrentDeploymentError(BootstrapperError):
    """Raised when another run already holds the deployment lock."""


class StateConflictError(BootstrapperError):
    """Raised when an update would rewrite a completed step."""
