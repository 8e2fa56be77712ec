"""
Restartable single-slot timer.

Every ``trigger()`` cancels the pending timer and starts a new one, so
a burst of triggers produces one call, ``delay`` seconds after the last.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger("checksync.debounce")


class Debouncer:
    """Collapse bursts of triggers into one delayed call.

    Args:
        delay: Quiet period in seconds before ``action`` runs.
        action: Zero-argument callable to run.
    """

    def __init__(self, delay: float, action: Callable[[], object]) -> None:
        self.delay = delay
        self._action = action
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._token = 0

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def trigger(self) -> None:
        """(Re)start the timer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._token += 1
            timer = threading.Timer(self.delay, self._fire, args=(self._token,))
            timer.daemon = True
            timer.name = "checksync-debounce"
            self._timer = timer
            timer.start()

    def cancel(self) -> bool:
        """Drop the pending call, if any.

        Returns:
            True if a call was pending.
        """
        with self._lock:
            if self._timer is None:
                return False
            self._timer.cancel()
            self._timer = None
            self._token += 1
            return True

    def flush(self) -> bool:
        """Run the pending call now, on the calling thread.

        Returns:
            True if a call was pending and has run.
        """
        if not self.cancel():
            return False
        self._run()
        return True

    def _fire(self, token: int) -> None:
        with self._lock:
            # a cancel or re-trigger after this timer started beats it
            if token != self._token:
                return
            self._timer = None
        self._run()

    def _run(self) -> None:
        try:
            self._action()
        except Exception as exc:
            logger.error("Debounced action failed: %s", exc)
