"""Per-turn cooperative cancellation."""

from __future__ import annotations

import json
import logging
import threading
from typing import Callable, List, Optional

from handsfree.errors import CancellationUnwind


class CancelToken:
    """
    Checked by workers before every side effect of a turn.

    ``cancel()`` sets the flag once and runs the registered close callbacks
    (open HTTP responses and the like) so blocked reads return promptly.
    """

    def __init__(self, turn_id: Optional[int] = None, logger: Optional[logging.Logger] = None):
        self.turn_id = turn_id
        self.logger = logger or logging.getLogger("handsfree.voice")
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run(callback)

    def add_callback(self, callback: Callable[[], None]):
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run(callback)

    def remove_callback(self, callback: Callable[[], None]):
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise CancellationUnwind()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def _run(self, callback: Callable[[], None]):
        try:
            callback()
        except Exception as e:
            self.logger.warning("cancel_callback_failed %s", json.dumps({
                "turn": self.turn_id, "error": str(e), "type": type(e).__name__
            }))
