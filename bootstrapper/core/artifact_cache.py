"""Write-once artifact cache for key files and verifier contract sources.

Storage layout::

    {cache_dir}/keys/keys_{mode}_{tree_depth}_{batch_size}
    {cache_dir}/verifier_contracts/{mode}_{tree_depth}_{batch_size}.sol

A correctly named file is treated as provisioned regardless of where it came
from, which is how user-supplied keys and custom verifier contracts are
honoured.  There is no delete or overwrite.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from bootstrapper.errors import CacheCorruption
from bootstrapper.models.artifacts import ArtifactKey, ArtifactKind, ArtifactStatus

logger = logging.getLogger(__name__)

KEYS_DIR = "keys"
VERIFIER_CONTRACTS_DIR = "verifier_contracts"

_SUBDIRS: dict[ArtifactKind, str] = {
    ArtifactKind.KEYS: KEYS_DIR,
    ArtifactKind.VERIFIER_CONTRACT: VERIFIER_CONTRACTS_DIR,
}


class ArtifactCache:
    """Maps artifact keys to on-disk paths and guards their immutability.

    Parameters
    ----------
    cache_dir:
        Root directory of the cache.  Subdirectories are created on first use.
    """

    def __init__(self, cache_dir: Path) -> None:
        self._base = Path(cache_dir)

    @property
    def base_path(self) -> Path:
        return self._base

    def path_for(self, key: ArtifactKey, kind: ArtifactKind) -> Path:
        """Return the expected location of an artifact."""
        if kind == ArtifactKind.KEYS:
            filename = key.keys_filename
        else:
            filename = key.contract_filename
        return self._base / _SUBDIRS[kind] / filename

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def status(self, key: ArtifactKey, kind: ArtifactKind) -> ArtifactStatus:
        """Classify an artifact as absent, present or corrupt."""
        path = self.path_for(key, kind)
        if not os.path.lexists(path):
            return ArtifactStatus.ABSENT
        return ArtifactStatus.CORRUPT if self._corruption_reason(path, kind) else ArtifactStatus.PRESENT

    def has(self, key: ArtifactKey, kind: ArtifactKind) -> bool:
        """Return whether the artifact is present.

        Raises ``CacheCorruption`` when the file exists but is unusable.
        """
        path = self.path_for(key, kind)
        if not os.path.lexists(path):
            return False
        self._ensure_valid(path, kind)
        return True

    def read(self, key: ArtifactKey, kind: ArtifactKind) -> bytes:
        """Return the artifact bytes, validating them first."""
        path = self.path_for(key, kind)
        if not os.path.lexists(path):
            raise FileNotFoundError(f"Artifact not cached: {path}")
        self._ensure_valid(path, kind)
        return path.read_bytes()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def write_if_absent(self, key: ArtifactKey, kind: ArtifactKind, data: bytes) -> bool:
        """Store *data* unless the artifact already exists.

        Returns ``True`` if this call wrote the file.  An existing valid file
        is left untouched (``False``); an existing corrupt one raises
        ``CacheCorruption``.  The bytes are written to a temporary file,
        fsynced, then hard-linked into place, so the final path only ever
        holds complete content and is never replaced.
        """
        path = self.path_for(key, kind)
        if os.path.lexists(path):
            self._ensure_valid(path, kind)
            return False

        reason = self._content_problem(data, kind)
        if reason:
            raise CacheCorruption(path, f"refusing to store {kind.value}: {reason}")

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(data)
                tmp.flush()
                os.fsync(tmp.fileno())
            try:
                os.link(tmp_name, path)
            except FileExistsError:
                logger.debug("Lost write race for %s; keeping existing file.", path)
                self._ensure_valid(path, kind)
                return False
        finally:
            Path(tmp_name).unlink(missing_ok=True)

        logger.info("Cached %s for %s at %s.", kind.value, key, path)
        return True

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _ensure_valid(self, path: Path, kind: ArtifactKind) -> None:
        reason = self._corruption_reason(path, kind)
        if reason:
            raise CacheCorruption(path, reason)

    def _corruption_reason(self, path: Path, kind: ArtifactKind) -> str | None:
        if not path.is_file():
            return "not a regular file"
        try:
            if kind == ArtifactKind.KEYS:
                # Key files can be hundreds of MB; probe instead of reading.
                with path.open("rb") as f:
                    data = f.read(1)
            else:
                data = path.read_bytes()
        except OSError as exc:
            return f"unreadable ({exc})"
        return self._content_problem(data, kind)

    @staticmethod
    def _content_problem(data: bytes, kind: ArtifactKind) -> str | None:
        if not data:
            return "empty file"
        if kind == ArtifactKind.VERIFIER_CONTRACT:
            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError:
                return "verifier source is not UTF-8 text"
            if "contract " not in text:
                return "verifier source has no contract declaration"
        return None
