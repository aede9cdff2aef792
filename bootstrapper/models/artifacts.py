"""Artifact identity and metadata models (immutable once created)."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class ProverMode(str, Enum):
    """Tree operation a verifier checks proofs for."""

    INSERTION = "insertion"
    DELETION = "deletion"

    @property
    def ordinal(self) -> int:
        return list(ProverMode).index(self)


class ArtifactKind(str, Enum):
    """The two artifact families held by the cache."""

    KEYS = "keys"
    VERIFIER_CONTRACT = "verifier_contract"


class ArtifactStatus(str, Enum):
    """Three-state cache presence."""

    ABSENT = "absent"
    PRESENT = "present"
    CORRUPT = "corrupt"


class ArtifactKey(BaseModel):
    """Identifies one key file and one verifier contract.

    Groups that share ``tree_depth`` and ``batch_size`` collapse to the same
    key, so generation and deployment work is shared between them.
    """

    model_config = ConfigDict(frozen=True)

    mode: ProverMode
    tree_depth: int = Field(gt=0)
    batch_size: int = Field(gt=0)

    @property
    def keys_filename(self) -> str:
        return f"keys_{self.mode.value}_{self.tree_depth}_{self.batch_size}"

    @property
    def contract_filename(self) -> str:
        return f"{self.mode.value}_{self.tree_depth}_{self.batch_size}.sol"

    @property
    def label(self) -> str:
        return f"{self.mode.value}/{self.tree_depth}/{self.batch_size}"

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (self.tree_depth, self.batch_size, self.mode.ordinal)

    def __str__(self) -> str:
        return self.label


class KeyArtifact(BaseModel):
    """Proving/verifying key material stored in the cache."""

    model_config = ConfigDict(frozen=True)

    key: ArtifactKey
    path: Path
    sha256: str
    size_bytes: int


class VerifierContractArtifact(BaseModel):
    """Solidity verifier source stored in the cache."""

    model_config = ConfigDict(frozen=True)

    key: ArtifactKey
    path: Path
    sha256: str
    size_bytes: int
    contract_name: str = "Verifier"
