"""Key provisioning — cached key files, generated on demand.

A key already in the cache (including one the operator placed there by
hand) is returned unchanged.  Otherwise the generation tool is acquired
once per process and the key is generated into the cache.
"""

from __future__ import annotations

import logging
import threading

from bootstrapper.core.artifact_cache import ArtifactCache
from bootstrapper.core.hasher import sha256_file
from bootstrapper.core.inflight import InflightCoalescer
from bootstrapper.core.keygen import KeyGenerator
from bootstrapper.models.artifacts import ArtifactKey, ArtifactKind, KeyArtifact, ProverMode

logger = logging.getLogger(__name__)


class KeyProvisioner:
    """Ensures a key file exists for every requested ArtifactKey.

    Safe to call from many threads: concurrent requests for the same key
    share one generation, different keys proceed in parallel.
    """

    def __init__(self, cache: ArtifactCache, generator: KeyGenerator) -> None:
        self._cache = cache
        self._generator = generator
        self._coalescer: InflightCoalescer[ArtifactKey, KeyArtifact] = InflightCoalescer()
        self._tool_lock = threading.Lock()
        self._tool_ready = False

    @property
    def cache(self) -> ArtifactCache:
        return self._cache

    @property
    def generator(self) -> KeyGenerator:
        return self._generator

    def ensure_key(self, mode: ProverMode, tree_depth: int, batch_size: int) -> KeyArtifact:
        """Return the key artifact, generating and caching it if absent."""
        key = ArtifactKey(mode=mode, tree_depth=tree_depth, batch_size=batch_size)
        return self._coalescer.run(key, lambda: self._provision(key))

    def _provision(self, key: ArtifactKey) -> KeyArtifact:
        if self._cache.has(key, ArtifactKind.KEYS):
            logger.debug("Keys for %s already cached.", key)
            return self._describe(key)

        self._ensure_tool()
        data = self._generator.generate_keys(key)
        self._cache.write_if_absent(key, ArtifactKind.KEYS, data)
        return self._describe(key)

    def _ensure_tool(self) -> None:
        with self._tool_lock:
            if self._tool_ready:
                return
            self._generator.ensure_ready()
            self._tool_ready = True

    def _describe(self, key: ArtifactKey) -> KeyArtifact:
        path = self._cache.path_for(key, ArtifactKind.KEYS)
        return KeyArtifact(
            key=key,
            path=path,
            sha256=sha256_file(path),
            size_bytes=path.stat().st_size,
        )
