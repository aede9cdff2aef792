"""Acquisition of the external key-generation binary (semaphore-mtb).

The binary is downloaded once into the cache directory for the host
OS/architecture and checked against a pinned SHA-256 when one is configured.
"""

from __future__ import annotations

import logging
import os
import platform
import stat
import tempfile
import threading
import time
from collections.abc import Callable
from pathlib import Path

import requests

from bootstrapper.core.hasher import sha256_file
from bootstrapper.errors import ToolAcquisitionError

logger = logging.getLogger(__name__)

MTB_BIN = "mtb"

_OS_NAMES: dict[str, str] = {
    "linux": "linux",
    "darwin": "darwin",
    "windows": "windows",
}

_ARCH_NAMES: dict[str, str] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "x64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

_32_BIT_ARCHES = {"x86", "i386", "i486", "i586", "i686"}


def platform_slug(system: str | None = None, machine: str | None = None) -> tuple[str, str]:
    """Return the (os, arch) pair used in release asset names."""
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()

    os_name = _OS_NAMES.get(system)
    if os_name is None:
        raise ToolAcquisitionError(f"Unsupported os type: {system}")
    if machine in _32_BIT_ARCHES:
        raise ToolAcquisitionError(
            f"32 bit architectures are not supported, got: {machine}"
        )
    return os_name, _ARCH_NAMES.get(machine, machine)


class ToolFetcher:
    """Downloads and verifies the mtb binary, at most once per instance.

    Parameters
    ----------
    cache_dir:
        Directory the binary is stored in (``{cache_dir}/mtb``).
    releases_url, version:
        Asset URL is ``{releases_url}/{version}/mtb-{os}-{arch}``.
    sha256:
        Expected hex digest.  When empty the binary is accepted unverified
        and a warning is logged.
    attempts, timeout:
        Bounded download retries and per-request timeout in seconds.
    """

    def __init__(
        self,
        cache_dir: Path,
        releases_url: str,
        version: str,
        *,
        sha256: str = "",
        attempts: int = 3,
        timeout: int = 120,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cache_dir = Path(cache_dir)
        self._releases_url = releases_url.rstrip("/")
        self._version = version
        self._sha256 = sha256.lower().removeprefix("0x")
        self._attempts = max(1, attempts)
        self._timeout = timeout
        self._session = session or requests.Session()
        self._sleep = sleep
        self._lock = threading.Lock()
        self._ready: Path | None = None

    @property
    def binary_path(self) -> Path:
        return self._cache_dir / MTB_BIN

    def download_url(self) -> str:
        os_name, arch = platform_slug()
        return f"{self._releases_url}/{self._version}/mtb-{os_name}-{arch}"

    def ensure(self) -> Path:
        """Return the path of a present, verified binary, fetching it if needed."""
        with self._lock:
            if self._ready is not None:
                return self._ready

            path = self.binary_path
            if path.exists():
                logger.debug("Using cached mtb binary at %s.", path)
                self._verify(path)
            else:
                self._download(path)
            self._ready = path
            return path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _verify(self, path: Path) -> None:
        if not self._sha256:
            logger.warning(
                "No checksum pinned for mtb %s; %s is used unverified.",
                self._version,
                path,
            )
            return
        actual = sha256_file(path)
        if actual != self._sha256:
            raise ToolAcquisitionError(
                f"Checksum mismatch for {path}: expected {self._sha256}, got {actual}"
            )

    def _download(self, path: Path) -> None:
        url = self.download_url()
        path.parent.mkdir(parents=True, exist_ok=True)
        last_error: Exception | None = None

        for attempt in range(1, self._attempts + 1):
            try:
                tmp_path = self._fetch_to_temp(url, path.parent)
            except requests.RequestException as exc:
                last_error = exc
                logger.warning(
                    "mtb download attempt %d/%d failed: %s", attempt, self._attempts, exc
                )
                if attempt < self._attempts:
                    self._sleep(min(2 ** attempt, 10))
                continue

            try:
                self._verify(tmp_path)
                mode = tmp_path.stat().st_mode
                tmp_path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
                os.replace(tmp_path, path)
            finally:
                tmp_path.unlink(missing_ok=True)
            logger.info("Downloaded mtb %s from %s.", self._version, url)
            return

        raise ToolAcquisitionError(
            f"Failed to download mtb binary from {url} after {self._attempts} attempts: {last_error}"
        )

    def _fetch_to_temp(self, url: str, directory: Path) -> Path:
        response = self._session.get(url, stream=True, timeout=self._timeout)
        try:
            response.raise_for_status()
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".mtb.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as tmp:
                    for chunk in response.iter_content(chunk_size=1 << 16):
                        if chunk:
                            tmp.write(chunk)
                    tmp.flush()
                    os.fsync(tmp.fileno())
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        finally:
            response.close()
        return Path(tmp_name)
