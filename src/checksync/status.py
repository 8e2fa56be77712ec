"""
Sync Status Machine -- records what the engine reports, nothing more.

    idle ──> syncing ──> synced | error | offline
                ^                  │
                └──────────────────┘

``reset()`` returns to idle when the signed-in identity changes.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from .models import StatusSnapshot, SyncStatus, utcnow

logger = logging.getLogger("checksync.status")

StatusCallback = Callable[[StatusSnapshot], None]

_ALLOWED: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.IDLE: frozenset({SyncStatus.SYNCING}),
    SyncStatus.SYNCING: frozenset({
        SyncStatus.SYNCING, SyncStatus.SYNCED, SyncStatus.ERROR, SyncStatus.OFFLINE,
    }),
    SyncStatus.SYNCED: frozenset({SyncStatus.SYNCING}),
    SyncStatus.ERROR: frozenset({SyncStatus.SYNCING}),
    SyncStatus.OFFLINE: frozenset({SyncStatus.SYNCING}),
}


class SyncStatusMachine:
    """Thread-safe status holder with observer callbacks.

    Each transition replaces the whole snapshot under a lock, so an
    observer never sees a half-applied state. Callbacks run after the
    lock is released, in subscription order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = StatusSnapshot()
        self._observers: list[StatusCallback] = []

    @property
    def state(self) -> StatusSnapshot:
        with self._lock:
            return self._state

    @property
    def status(self) -> SyncStatus:
        return self.state.status

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register ``callback`` for every transition.

        Returns:
            A callable that removes the subscription.
        """
        with self._lock:
            self._observers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return unsubscribe

    def _apply(self, new_state: StatusSnapshot) -> StatusSnapshot:
        with self._lock:
            current = self._state.status
            if new_state.status is not SyncStatus.IDLE and (
                new_state.status not in _ALLOWED[current]
            ):
                raise ValueError(
                    f"Invalid sync status transition: {current.value} -> {new_state.status.value}"
                )
            self._state = new_state
            observers = list(self._observers)

        logger.debug("Sync status: %s -> %s", current.value, new_state.status.value)
        for callback in observers:
            try:
                callback(new_state)
            except Exception as exc:
                logger.error("Status observer %r failed: %s", callback, exc)
        return new_state

    def begin(self) -> StatusSnapshot:
        """Enter ``syncing``. Last sync time and error are kept for display."""
        prev = self.state
        return self._apply(prev.model_copy(update={"status": SyncStatus.SYNCING}))

    def succeed(self) -> StatusSnapshot:
        """Enter ``synced``, stamping the sync time and clearing any error."""
        return self._apply(StatusSnapshot(status=SyncStatus.SYNCED, last_synced_at=utcnow()))

    def fail(self, message: str, auth_expired: bool = False) -> StatusSnapshot:
        """Enter ``error`` with a message for display."""
        prev = self.state
        return self._apply(StatusSnapshot(
            status=SyncStatus.ERROR,
            last_synced_at=prev.last_synced_at,
            error=message,
            auth_expired=auth_expired,
        ))

    def go_offline(
        self, message: Optional[str] = None, auth_expired: bool = False
    ) -> StatusSnapshot:
        """Enter ``offline``: no endpoint configured, or the remote was unusable."""
        prev = self.state
        return self._apply(StatusSnapshot(
            status=SyncStatus.OFFLINE,
            last_synced_at=prev.last_synced_at,
            error=message,
            auth_expired=auth_expired,
        ))

    def restore(self, previous: StatusSnapshot) -> StatusSnapshot:
        """Leave ``syncing`` for a state held before the last ``begin()``.

        Used when the operation that started syncing was abandoned and
        nothing else will settle the status.
        """
        if previous.status is SyncStatus.SYNCING:
            raise ValueError("Cannot restore to syncing")
        return self._apply(previous)

    def reset(self) -> StatusSnapshot:
        """Back to ``idle`` with no history."""
        return self._apply(StatusSnapshot())
