"""Shared handle for heavy one-time initialisation (local models)."""

from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    Run ``factory`` at most once at a time.

    The first caller runs the factory; callers arriving while it runs wait for
    the same result. A successful value is cached. A failure is re-raised to
    every waiter and clears the slot so a later call can retry.
    """

    def __init__(self, factory: Callable[[], T]):
        self._factory = factory
        self._lock = threading.Lock()
        self._future: Optional["Future[T]"] = None

    @property
    def ready(self) -> bool:
        with self._lock:
            fut = self._future
        return fut is not None and fut.done() and fut.exception() is None

    def get(self, timeout: Optional[float] = None) -> T:
        with self._lock:
            fut = self._future
            owner = fut is None
            if owner:
                fut = self._future = Future()

        if not owner:
            return fut.result(timeout)

        try:
            value = self._factory()
        except BaseException as e:
            with self._lock:
                self._future = None
            fut.set_exception(e)
            raise
        fut.set_result(value)
        return value

    def reset(self):
        with self._lock:
            self._future = None
