"""Per-key coalescing of concurrent work."""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable
from concurrent.futures import Future
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class InflightCoalescer(Generic[K, V]):
    """Runs at most one computation per key at a time.

    The first caller for a key does the work; callers arriving while it is
    running wait on its future and receive the same result or exception.
    The lock is held only to look up or register the future.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inflight: dict[K, Future[V]] = {}

    def run(self, key: K, fn: Callable[[], V]) -> V:
        with self._lock:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            return future.result()

        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._inflight.pop(key, None)
