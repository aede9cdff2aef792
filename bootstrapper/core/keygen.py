"""Pluggable key-generation backends.

Defines the ``KeyGenerator`` Protocol consumed by the provisioning layer and
``MtbKeyGenerator``, which shells out to the semaphore-mtb binary:

- ``mtb setup --tree-depth D --batch-size B --output FILE --mode MODE``
- ``mtb export-solidity --keys-file FILE --output FILE``
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from bootstrapper.core.tool_fetcher import ToolFetcher
from bootstrapper.errors import KeyGenerationError
from bootstrapper.models.artifacts import ArtifactKey

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class KeyGenerator(Protocol):
    """Capability to produce key material and verifier sources.

    Implementations return bytes; storing them is the cache's job.
    """

    def ensure_ready(self) -> None:
        """Acquire whatever tooling generation needs.  Called once per process."""
        ...

    def generate_keys(self, key: ArtifactKey) -> bytes:
        """Return freshly generated key material for *key*."""
        ...

    def export_solidity(self, key: ArtifactKey, keys_file: Path) -> bytes:
        """Return Solidity verifier source exported from *keys_file*."""
        ...


# ---------------------------------------------------------------------------
# mtb subprocess implementation
# ---------------------------------------------------------------------------


class MtbKeyGenerator:
    """Runs the mtb binary in a scratch directory per invocation."""

    def __init__(self, fetcher: ToolFetcher) -> None:
        self._fetcher = fetcher

    def ensure_ready(self) -> None:
        self._fetcher.ensure()

    def generate_keys(self, key: ArtifactKey) -> bytes:
        binary = self._fetcher.ensure()
        with tempfile.TemporaryDirectory(prefix="mtb-setup-") as scratch:
            output = Path(scratch) / key.keys_filename
            logger.info(
                "Generating %s keys for depth %d, batch size %d.",
                key.mode.value,
                key.tree_depth,
                key.batch_size,
            )
            self._run(
                [
                    str(binary),
                    "setup",
                    "--tree-depth", str(key.tree_depth),
                    "--batch-size", str(key.batch_size),
                    "--output", str(output),
                    "--mode", key.mode.value,
                ],
                key,
            )
            return self._read_output(output, key)

    def export_solidity(self, key: ArtifactKey, keys_file: Path) -> bytes:
        binary = self._fetcher.ensure()
        with tempfile.TemporaryDirectory(prefix="mtb-export-") as scratch:
            output = Path(scratch) / key.contract_filename
            logger.info("Exporting verifier contract for %s.", key)
            self._run(
                [
                    str(binary),
                    "export-solidity",
                    "--keys-file", str(keys_file),
                    "--output", str(output),
                ],
                key,
            )
            return self._read_output(output, key)

    @staticmethod
    def _run(cmd: list[str], key: ArtifactKey) -> None:
        logger.debug("Running %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise KeyGenerationError(f"Cannot run mtb for {key}: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise KeyGenerationError(
                f"mtb {cmd[1]} for {key} exited with {result.returncode}: {detail}"
            )

    @staticmethod
    def _read_output(path: Path, key: ArtifactKey) -> bytes:
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise KeyGenerationError(f"mtb produced no output for {key}: {exc}") from exc
        if not data:
            raise KeyGenerationError(f"mtb produced an empty file for {key}")
        return data
