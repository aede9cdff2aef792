"""Deployment configuration models — the YAML file's shape and invariants.

Loaded once, frozen, and passed explicitly into the planner and the
provisioning components.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from bootstrapper.errors import ConfigValidationError
from bootstrapper.models.artifacts import ArtifactKey, ProverMode

TREE_DEPTH_MIN = 16
TREE_DEPTH_MAX = 32
HEX32_PATTERN = r"^0x[0-9a-fA-F]{64}$"
ZERO_HEX32 = "0x" + "00" * 32


def _check_batch_sizes(value: tuple[int, ...] | None) -> tuple[int, ...] | None:
    if value is None:
        return value
    if not value:
        raise ValueError("batch sizes must not be empty")
    for batch_size in value:
        if batch_size <= 0:
            raise ValueError(f"batch size must be positive, got {batch_size}")
    if len(set(value)) != len(value):
        raise ValueError(f"batch sizes must be unique, got {list(value)}")
    return value


class GroupConfig(BaseModel):
    """One identity population: its tree depth and supported batch sizes."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    tree_depth: int = Field(ge=TREE_DEPTH_MIN, le=TREE_DEPTH_MAX)
    # ``batch_sizes`` is the historical name of the insertion list
    insertion_batch_sizes: tuple[int, ...] = Field(
        validation_alias=AliasChoices("insertion_batch_sizes", "batch_sizes"),
    )
    deletion_batch_sizes: tuple[int, ...] | None = None
    initial_root: str | None = Field(default=None, pattern=HEX32_PATTERN)

    @field_validator("insertion_batch_sizes", "deletion_batch_sizes")
    @classmethod
    def _validate_batch_sizes(
        cls, value: tuple[int, ...] | None
    ) -> tuple[int, ...] | None:
        return _check_batch_sizes(value)

    def batch_sizes(self, mode: ProverMode) -> tuple[int, ...]:
        """Batch sizes configured for *mode* (empty when the mode is unused)."""
        if mode == ProverMode.INSERTION:
            return self.insertion_batch_sizes
        return self.deletion_batch_sizes or ()

    def artifact_keys(self) -> list[ArtifactKey]:
        """All artifact keys this group needs, sorted by batch size then mode."""
        keys = [
            ArtifactKey(mode=mode, tree_depth=self.tree_depth, batch_size=size)
            for mode in ProverMode
            for size in self.batch_sizes(mode)
        ]
        return sorted(keys, key=lambda k: (k.batch_size, k.mode.ordinal))


class MiscConfig(BaseModel):
    """Process-wide constants shared by every group."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    initial_leaf_value: str = Field(default=ZERO_HEX32, pattern=HEX32_PATTERN)
    # Also deploy the semaphore verifier, an identity manager per group and
    # the router in front of them.
    deploy_world_id: bool = False

    @field_validator("initial_leaf_value")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return value.lower()


class DeploymentConfig(BaseModel):
    """The full deployment description: groups plus misc constants."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    groups: dict[int, GroupConfig]
    misc: MiscConfig = MiscConfig()

    @field_validator("groups")
    @classmethod
    def _validate_groups(cls, value: dict[int, GroupConfig]) -> dict[int, GroupConfig]:
        if not value:
            raise ValueError("at least one group must be configured")
        for group_id in value:
            if group_id < 0:
                raise ValueError(f"group ids must be non-negative, got {group_id}")
        return value

    @model_validator(mode="after")
    def _validate_world_id(self) -> DeploymentConfig:
        if not self.misc.deploy_world_id:
            return self
        # The router numbers groups by insertion order
        if sorted(self.groups) != list(range(len(self.groups))):
            raise ValueError(
                f"group ids must be 0..{len(self.groups) - 1} when deploy_world_id is set, "
                f"got {sorted(self.groups)}"
            )
        missing = [g for g in sorted(self.groups) if self.groups[g].initial_root is None]
        if missing:
            raise ValueError(
                f"groups {missing} need an initial_root when deploy_world_id is set"
            )
        return self

    @property
    def group_ids(self) -> list[int]:
        return sorted(self.groups)

    def unique_artifact_keys(self, mode: ProverMode) -> set[ArtifactKey]:
        """Distinct (tree_depth, batch_size) pairs for one mode across groups."""
        return {
            ArtifactKey(mode=mode, tree_depth=group.tree_depth, batch_size=size)
            for group in self.groups.values()
            for size in group.batch_sizes(mode)
        }

    def artifact_keys(self) -> list[ArtifactKey]:
        """Distinct artifact keys across all modes, in a stable order."""
        keys: set[ArtifactKey] = set()
        for mode in ProverMode:
            keys |= self.unique_artifact_keys(mode)
        return sorted(keys, key=lambda k: k.sort_key)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def parse_config(data: Any) -> DeploymentConfig:
    """Validate an already-decoded mapping into a ``DeploymentConfig``.

    Raises ``ConfigValidationError`` with every violation listed.
    """
    if not isinstance(data, dict):
        raise ConfigValidationError(
            f"Configuration must be a mapping, got {type(data).__name__}"
        )
    try:
        return DeploymentConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigValidationError(
            f"Invalid deployment configuration: {_format_validation_error(exc)}"
        ) from exc


def check_config(config: DeploymentConfig) -> DeploymentConfig:
    """Re-validate a config instance (guards against unvalidated construction)."""
    return parse_config(config.model_dump(mode="python", by_alias=False))


def load_config(path: Path) -> DeploymentConfig:
    """Read and validate a YAML deployment configuration file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigValidationError(f"Cannot read config {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Config {path} is not valid YAML: {exc}") from exc
    return parse_config(data)


def dump_config(config: DeploymentConfig) -> str:
    """Serialize a config back to YAML (deletion sizes omitted when unset)."""
    return yaml.safe_dump(
        config.model_dump(mode="json", exclude_none=True), sort_keys=True
    )
