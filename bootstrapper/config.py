"""Runtime settings — env-driven, .env aware.

Centralized settings using pydantic-settings.  Reads from a .env file and
BOOTSTRAPPER_* environment variables; CLI options override both.

Examples
--------
Override via environment::

    export BOOTSTRAPPER_RPC_URL=http://localhost:8545
    export BOOTSTRAPPER_PRIVATE_KEY=0xac09...
    export BOOTSTRAPPER_DEPLOYMENT_NAME=prod-2023-04-18

Or via .env file::

    BOOTSTRAPPER_CONFIG=deployment.yml
    BOOTSTRAPPER_PIPELINED=true
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MTB_RELEASES_URL = "https://github.com/worldcoin/semaphore-mtb/releases/download"
DEFAULT_MTB_VERSION = "1.2.1"


class BootstrapperSettings(BaseSettings):
    """Settings for one bootstrapper invocation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BOOTSTRAPPER_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Deployment identity
    deployment_name: str = ""
    config: Path = Path("deployment.yml")

    # Chain access
    rpc_url: str = ""
    private_key: str = Field(default="", repr=False)
    etherscan_api_key: str | None = Field(default=None, repr=False)

    # Storage paths
    deployments_dir: Path = Path(".")
    cache_dir: Path | None = None  # defaults to <deployments_dir>/<name>/.cache
    contracts_dir: Path = Path("world-id-contracts")

    # Key-generation tool
    mtb_releases_url: str = DEFAULT_MTB_RELEASES_URL
    mtb_version: str = DEFAULT_MTB_VERSION
    mtb_sha256: str = ""  # pinned checksum of the platform binary; empty = unpinned
    download_attempts: int = 3
    download_timeout_seconds: int = 120

    # Execution
    provisioning_workers: int = 4
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    receipt_timeout_seconds: int = 300
    pipelined: bool = False

    # Observability
    log_level: str = "INFO"

    def deployment_dir(self, deployment_name: str | None = None) -> Path:
        """Directory holding state and report for a deployment."""
        return self.deployments_dir / (deployment_name or self.deployment_name)

    def resolved_cache_dir(self, deployment_name: str | None = None) -> Path:
        """The cache directory, scoped to the deployment unless overridden."""
        if self.cache_dir is not None:
            return self.cache_dir
        return self.deployment_dir(deployment_name) / ".cache"
