"""Verifier contract synthesis from key material.

A verifier source already present in the cache is used as-is, which is
how custom contracts are supplied.  Otherwise the key is provisioned first
and the Solidity source is exported from it.
"""

from __future__ import annotations

import logging

from bootstrapper.core.hasher import sha256_hex
from bootstrapper.core.inflight import InflightCoalescer
from bootstrapper.core.key_provisioner import KeyProvisioner
from bootstrapper.models.artifacts import (
    ArtifactKey,
    ArtifactKind,
    ProverMode,
    VerifierContractArtifact,
)

logger = logging.getLogger(__name__)


class ContractSynthesizer:
    """Ensures a verifier contract source exists per ArtifactKey."""

    def __init__(self, keys: KeyProvisioner) -> None:
        self._keys = keys
        self._cache = keys.cache
        self._coalescer: InflightCoalescer[ArtifactKey, VerifierContractArtifact] = (
            InflightCoalescer()
        )

    def ensure_verifier_contract(
        self, mode: ProverMode, tree_depth: int, batch_size: int
    ) -> VerifierContractArtifact:
        key = ArtifactKey(mode=mode, tree_depth=tree_depth, batch_size=batch_size)
        return self._coalescer.run(key, lambda: self._synthesize(key))

    def _synthesize(self, key: ArtifactKey) -> VerifierContractArtifact:
        if self._cache.has(key, ArtifactKind.VERIFIER_CONTRACT):
            logger.debug("Verifier contract for %s already cached.", key)
            return self._describe(key)

        key_artifact = self._keys.ensure_key(key.mode, key.tree_depth, key.batch_size)
        source = self._keys.generator.export_solidity(key, key_artifact.path)
        self._cache.write_if_absent(key, ArtifactKind.VERIFIER_CONTRACT, source)
        return self._describe(key)

    def _describe(self, key: ArtifactKey) -> VerifierContractArtifact:
        data = self._cache.read(key, ArtifactKind.VERIFIER_CONTRACT)
        return VerifierContractArtifact(
            key=key,
            path=self._cache.path_for(key, ArtifactKind.VERIFIER_CONTRACT),
            sha256=sha256_hex(data),
            size_bytes=len(data),
        )
