"""
Single-flight loading for CacheStore.get_with_fallback.

Only used when the store is built with coalesce_loads=True. Concurrent misses
on one key then share a single loader call and its outcome.
"""
import threading
import logging
from typing import Any, Callable, Dict, Optional, Tuple
from dataclasses import dataclass, field

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightLoad:
    """Outcome slot for a loader call other callers may wait on."""
    done: threading.Event = field(default_factory=threading.Event)
    value: Any = None
    error: Optional[BaseException] = None

    def outcome(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


class RequestCoalescer:
    """
    Per-key in-flight markers for cache loaders.

    The caller that creates the marker runs the loader; callers that find
    one wait for it, up to timeout seconds.
    """

    def __init__(self, timeout: float = 30.0):
        self._in_flight: Dict[str, InFlightLoad] = {}
        self._lock = threading.Lock()
        self._timeout = timeout

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        """
        Raises:
            TimeoutError: If another caller's load does not finish in time
            Exception: The loader's error, re-raised to every caller
        """
        load, owner = self._claim(key)
        if owner:
            self._run(key, load, loader)
        elif not load.done.wait(timeout=self._timeout):
            logger.error(f"Timed out waiting on in-flight load for {key}")
            raise TimeoutError(f"Load for {key} timed out after {self._timeout}s")
        else:
            logger.debug(f"Shared in-flight load for {key}")
        return load.outcome()

    @property
    def active_loads(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def _claim(self, key: str) -> Tuple[InFlightLoad, bool]:
        with self._lock:
            existing = self._in_flight.get(key)
            if existing is not None:
                return existing, False
            load = self._in_flight[key] = InFlightLoad()
            return load, True

    def _run(self, key: str, load: InFlightLoad, loader: Callable[[], Any]) -> None:
        try:
            load.value = loader()
        except Exception as e:
            load.error = e
        finally:
            with self._lock:
                self._in_flight.pop(key, None)
            load.done.set()
