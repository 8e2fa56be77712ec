"""
Sync Orchestrator -- decides when to touch which store.

    mutation -> debounce -> local write (always) -> remote save (if configured)
                                               -> status transition

    load_from_cloud -> remote load -> replace memory + local (remote wins)

Local state is never rolled back because the network failed. Remote
state is never merged: a cloud load replaces the whole snapshot.

Every network operation gets a generation number. Signing in or out,
or pointing at a new endpoint, bumps the generation so results from the
old context are dropped when they finally arrive. At most one save and
one load are in flight; a request that arrives meanwhile is queued and
run once when the current call returns.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .auth import AuthSession
from .config import STORE_FILE, AppSettings, load_settings, resolve_home
from .debounce import Debouncer
from .errors import AuthExpiredError, ImportFormatError, LocalStoreError, RemoteStoreError
from .kvstore import FileKeyValueStore
from .local_store import LocalStore
from .models import (
    Snapshot,
    StatusSnapshot,
    StorageConfig,
    StorageRecord,
    SyncStatus,
    UserIdentity,
)
from .remote import AUTH_EXPIRED_MESSAGE, RemoteStoreClient
from .status import SyncStatusMachine
from .transfer import export_snapshot, read_snapshot

logger = logging.getLogger("checksync.engine")

DataCallback = Callable[[Snapshot], None]

NO_TOKEN_MESSAGE = "No access token available. Please sign in again."
LOAD_CONFLICT_MESSAGE = "Checklist changed during cloud load; cloud data was not applied."


class Operation(str, Enum):
    """Kinds of network operation, each with its own in-flight slot."""

    SYNC = "sync"
    LOAD = "load"


class SyncOrchestrator:
    """Keeps one user's checklist in step across local and cloud storage.

    The orchestrator owns the storage config and the sync status; the
    stores it is handed hold no state of their own.

    Args:
        local: Per-user local persistence.
        remote: Cloud save/load client.
        auth: Current identity and token; the orchestrator follows its
            sign-in and sign-out events.
        debounce_seconds: Quiet period before an auto-sync fires.
        status: Status machine to report to. A fresh one by default.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStoreClient,
        auth: AuthSession,
        debounce_seconds: float = 2.0,
        status: Optional[SyncStatusMachine] = None,
    ) -> None:
        self.local = local
        self.remote = remote
        self.auth = auth
        self.status = status or SyncStatusMachine()

        self._lock = threading.RLock()
        self._config = local.load_config()
        self._snapshot: Snapshot = {}
        self._data_epoch = 0
        self._generations = {op: 0 for op in Operation}
        self._inflight = {op: False for op in Operation}
        self._queued = {op: False for op in Operation}
        self._data_observers: list[DataCallback] = []
        self._resting = self.status.state
        self.last_error: Optional[str] = None

        self._debouncer = Debouncer(debounce_seconds, self.sync)
        self._unsubscribe_auth = auth.subscribe(self._on_auth_changed)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def config(self) -> StorageConfig:
        with self._lock:
            return self._config

    @property
    def snapshot(self) -> Snapshot:
        with self._lock:
            return dict(self._snapshot)

    @property
    def state(self) -> StatusSnapshot:
        return self.status.state

    @property
    def sync_pending(self) -> bool:
        return self._debouncer.pending

    def on_data_loaded(self, callback: DataCallback) -> Callable[[], None]:
        """Call ``callback`` whenever stored data replaces the in-memory snapshot."""
        with self._lock:
            self._data_observers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._data_observers:
                    self._data_observers.remove(callback)

        return unsubscribe

    def _notify_data(self, data: Snapshot) -> None:
        with self._lock:
            observers = list(self._data_observers)
        for callback in observers:
            try:
                callback(dict(data))
            except Exception as exc:
                logger.error("Data observer %r failed: %s", callback, exc)

    # ------------------------------------------------------------------
    # Generations and in-flight slots
    # ------------------------------------------------------------------

    def _acquire(self, op: Operation) -> Optional[int]:
        with self._lock:
            if self._inflight[op]:
                self._queued[op] = True
                logger.debug("%s already in flight, queued one more", op.value)
                return None
            self._inflight[op] = True
            self._generations[op] += 1
            return self._generations[op]

    def _next_or_release(self, op: Operation) -> Optional[int]:
        """Hand the slot to a queued request, or free it."""
        with self._lock:
            if self._queued[op]:
                self._queued[op] = False
                self._generations[op] += 1
                return self._generations[op]
            self._inflight[op] = False
            return None

    def _release(self, op: Operation) -> None:
        with self._lock:
            self._inflight[op] = False
            self._queued[op] = False

    def _is_current(self, op: Operation, generation: int) -> bool:
        with self._lock:
            return self._generations[op] == generation

    def _invalidate(self, *ops: Operation) -> None:
        with self._lock:
            for op in ops or tuple(Operation):
                self._generations[op] += 1

    def _run_exclusive(self, op: Operation, body: Callable[[int], Any]) -> Any:
        generation = self._acquire(op)
        if generation is None:
            return None
        result = None
        try:
            while generation is not None:
                result = body(generation)
                generation = self._next_or_release(op)
        except BaseException:
            self._release(op)
            self._settle_abandoned()
            raise
        self._settle_abandoned()
        return result

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def _begin(self) -> None:
        with self._lock:
            current = self.status.state
            if current.status is not SyncStatus.SYNCING:
                self._resting = current
            self.status.begin()

    def _finish(
        self,
        op: Operation,
        generation: int,
        transition: Callable[[], StatusSnapshot],
    ) -> Optional[StatusSnapshot]:
        """Apply a terminal transition unless the operation was superseded.

        A parallel operation of the other kind may already have settled
        the status; syncing is re-entered first so the transition is legal.
        """
        with self._lock:
            if self._generations[op] != generation:
                return None
            if self.status.status is not SyncStatus.SYNCING:
                self.status.begin()
            return transition()

    def _settle_abandoned(self) -> None:
        """Leave syncing when no operation is left to report an outcome."""
        with self._lock:
            if any(self._inflight.values()):
                return
            if self.status.status is not SyncStatus.SYNCING:
                return
            if not self._config.has_endpoint:
                logger.debug("Abandoned operation, no endpoint: going offline")
                self.status.go_offline()
            else:
                logger.debug("Abandoned operation: restoring %s", self._resting.status.value)
                self.status.restore(self._resting)

    # ------------------------------------------------------------------
    # Local persistence
    # ------------------------------------------------------------------

    def _save_local(self, user_id: str, data: Snapshot) -> bool:
        try:
            self.local.put(user_id, StorageRecord(data=data))
            return True
        except LocalStoreError as exc:
            logger.error("Failed to save to local storage: %s", exc)
            return False

    def persist_local(self) -> bool:
        """Write the in-memory snapshot to local storage, no network.

        Returns:
            True if the write landed.
        """
        identity = self.auth.identity
        if identity is None:
            return False
        return self._save_local(identity.id, self.snapshot)

    def start(self, refresh: bool = True) -> Snapshot:
        """Populate from local storage, then try the cloud.

        The local read always happens first so the checklist is usable
        before any network call returns.

        Args:
            refresh: Follow up with a cloud load when an endpoint is set.

        Returns:
            The snapshot in memory after the local read.
        """
        identity = self.auth.identity
        if identity is None:
            logger.debug("start: nobody signed in")
            return {}

        record = self.local.get(identity.id)
        with self._lock:
            self._snapshot = dict(record.data) if record else {}
            loaded = dict(self._snapshot)
        if record is not None:
            logger.info("Loaded %d item(s) from local storage", len(loaded))
            self._notify_data(loaded)

        if refresh and self.config.has_endpoint:
            self.load_from_cloud()
        return loaded

    # ------------------------------------------------------------------
    # Mutations and debounce
    # ------------------------------------------------------------------

    def update(self, snapshot: Snapshot) -> None:
        """Replace the checklist with ``snapshot`` and schedule an auto-sync."""
        with self._lock:
            self._snapshot = dict(snapshot)
            self._data_epoch += 1
            config = self._config
            empty = not self._snapshot

        if config.auto_sync and self.auth.is_authenticated and not empty:
            self._debouncer.trigger()

    def set_item(self, key: str, value: Any) -> None:
        """Set one item's completion state."""
        with self._lock:
            data = dict(self._snapshot)
        data[key] = value
        self.update(data)

    def flush(self) -> bool:
        """Run a pending auto-sync now instead of waiting out the delay."""
        return self._debouncer.flush()

    def close(self) -> None:
        """Drop any pending auto-sync and stop following the auth session."""
        self._debouncer.cancel()
        self._unsubscribe_auth()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def sync(self) -> Optional[SyncStatus]:
        """Save locally, then to the cloud if an endpoint is configured.

        Returns:
            The status the attempt ended in, or None if nobody is signed
            in, the call was queued behind one in flight, or the result
            was superseded.
        """
        if not self.auth.is_authenticated:
            logger.debug("sync skipped: not signed in")
            return None
        return self._run_exclusive(Operation.SYNC, self._sync_once)

    def _sync_once(self, generation: int) -> Optional[SyncStatus]:
        identity = self.auth.identity
        token = self.auth.access_token
        if identity is None:
            return None
        with self._lock:
            data = dict(self._snapshot)
            config = self._config

        self._begin()
        self._save_local(identity.id, data)

        if not config.has_endpoint:
            state = self._finish(Operation.SYNC, generation, self.status.go_offline)
            return state.status if state else None

        error: Optional[str] = None
        auth_expired = False
        if not token:
            error, auth_expired = NO_TOKEN_MESSAGE, True
        else:
            try:
                self.remote.save(config.endpoint, identity.id, identity.email, data, token)
            except AuthExpiredError as exc:
                error, auth_expired = str(exc) or AUTH_EXPIRED_MESSAGE, True
            except RemoteStoreError as exc:
                error = str(exc) or "Sync failed"

        def settle() -> StatusSnapshot:
            self.last_error = error
            if error is not None:
                return self.status.fail(error, auth_expired=auth_expired)
            return self.status.succeed()

        state = self._finish(Operation.SYNC, generation, settle)
        if state is None:
            logger.info("Discarding superseded sync result")
            return None
        if error is not None:
            logger.error("Sync failed: %s", error)
        return state.status

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def load_from_cloud(self) -> Optional[Snapshot]:
        """Replace local state with the cloud copy.

        Returns:
            The snapshot that was applied, or None when nothing was
            applied (not configured, no remote data, failure, queued,
            superseded).
        """
        if self.auth.identity is None or not self.config.has_endpoint:
            logger.debug("load skipped: not signed in or no endpoint")
            return None
        return self._run_exclusive(Operation.LOAD, self._load_once)

    def _load_once(self, generation: int) -> Optional[Snapshot]:
        identity = self.auth.identity
        token = self.auth.access_token
        if identity is None:
            return None
        with self._lock:
            endpoint = self._config.endpoint
            epoch = self._data_epoch
        if not endpoint:
            return None

        self._begin()
        data: Optional[Snapshot] = None
        error: Optional[str] = None
        auth_expired = False
        if not token:
            error, auth_expired = NO_TOKEN_MESSAGE, True
        else:
            try:
                data = self.remote.load(endpoint, identity.id, token)
            except AuthExpiredError as exc:
                error, auth_expired = str(exc) or AUTH_EXPIRED_MESSAGE, True
            except RemoteStoreError as exc:
                error = str(exc) or "Failed to load from cloud"

        if error is not None:
            def offline_with_error() -> StatusSnapshot:
                self.last_error = error
                return self.status.go_offline(error, auth_expired=auth_expired)

            if self._finish(Operation.LOAD, generation, offline_with_error) is None:
                logger.info("Discarding superseded cloud load")
            else:
                logger.error("Cloud load failed: %s", error)
            return None

        if data is None:
            self._finish(Operation.LOAD, generation, self.status.go_offline)
            return None

        with self._lock:
            if not self._is_current(Operation.LOAD, generation):
                logger.info("Discarding superseded cloud load")
                return None
            conflict = self._data_epoch != epoch
            if not conflict:
                self._snapshot = dict(data)
        if conflict:
            logger.warning("Local edits during cloud load, keeping local snapshot")

            def keep_local() -> StatusSnapshot:
                self.last_error = LOAD_CONFLICT_MESSAGE
                return self.status.fail(LOAD_CONFLICT_MESSAGE)

            self._finish(Operation.LOAD, generation, keep_local)
            return None

        self._save_local(identity.id, data)
        self._notify_data(data)

        def loaded() -> StatusSnapshot:
            self.last_error = None
            return self.status.succeed()

        if self._finish(Operation.LOAD, generation, loaded) is None:
            return None
        logger.info("Loaded %d item(s) from cloud", len(data))
        return dict(data)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def _store_config(self, config: StorageConfig) -> None:
        with self._lock:
            self._config = config
        try:
            self.local.save_config(config)
        except LocalStoreError as exc:
            logger.error("Failed to persist storage config: %s", exc)

    def set_endpoint(self, endpoint: str) -> Optional[Snapshot]:
        """Point at a new cloud endpoint and pull from it straight away.

        Returns:
            Whatever ``load_from_cloud`` applied.
        """
        config = StorageConfig(endpoint=endpoint, auto_sync=self.config.auto_sync)
        self._store_config(config)
        self._invalidate(Operation.LOAD)
        if config.has_endpoint and self.auth.identity is not None:
            return self.load_from_cloud()
        return None

    def save_settings(self, endpoint: str, auto_sync: bool) -> Optional[Snapshot]:
        """Apply the settings form: endpoint plus auto-sync toggle."""
        config = StorageConfig(endpoint=endpoint, auto_sync=auto_sync)
        self._store_config(config)
        if not config.auto_sync:
            self._debouncer.cancel()
        self._invalidate(Operation.LOAD)
        if config.has_endpoint and self.auth.identity is not None:
            return self.load_from_cloud()
        return None

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------

    def export_snapshot(self, target: Optional[Path] = None) -> Path:
        """Dump the current snapshot to a backup file.

        Args:
            target: File or directory. Defaults to the working directory.
        """
        return export_snapshot(self.snapshot, target or Path.cwd(), self.auth.identity)

    def import_snapshot(self, source: Path) -> Optional[SyncStatus]:
        """Replace the checklist with a backup file's contents.

        Returns:
            The status of the follow-up sync when auto-sync runs one.

        Raises:
            ImportFormatError: If the file is not a valid backup.
        """
        try:
            data = read_snapshot(source)
        except ImportFormatError as exc:
            logger.error("Import failed: %s", exc)
            with self._lock:
                self.last_error = str(exc)
            raise

        with self._lock:
            self._snapshot = dict(data)
            self._data_epoch += 1
            config = self._config

        identity = self.auth.identity
        if identity is not None:
            self._save_local(identity.id, data)
        self._notify_data(data)
        logger.info("Imported %d item(s) from %s", len(data), source)

        if config.auto_sync and identity is not None:
            self._debouncer.cancel()
            return self.sync()
        return None

    # ------------------------------------------------------------------
    # Identity changes
    # ------------------------------------------------------------------

    def sign_out(self, forget_data: bool = False) -> Optional[UserIdentity]:
        """Sign out, optionally deleting the user's local checklist.

        Returns:
            The identity that was signed out, or None if nobody was.
        """
        identity = self.auth.identity
        if identity is None:
            return None
        self.auth.sign_out()
        if forget_data:
            self.local.clear(identity.id)
            logger.info("Forgot local checklist for %s", identity.id)
        return identity

    def _on_auth_changed(self, identity: Optional[UserIdentity]) -> None:
        self._debouncer.cancel()
        self._invalidate()
        with self._lock:
            self._snapshot = {}
            self._data_epoch += 1
            self.last_error = None
        self.status.reset()
        if identity is not None:
            self.start()


def open_engine(
    home: Optional[Path] = None,
    settings: Optional[AppSettings] = None,
) -> SyncOrchestrator:
    """Build an orchestrator backed by files under the checksync home.

    Args:
        home: Checksync home. Defaults to $CHECKSYNC_HOME or ~/.checksync.
        settings: Settings to use instead of ``<home>/config.yaml``.
    """
    home_path = resolve_home(home)
    settings = settings or load_settings(home_path)
    kv = FileKeyValueStore(home_path / STORE_FILE)
    return SyncOrchestrator(
        local=LocalStore(kv, namespace=settings.namespace),
        remote=RemoteStoreClient(timeout=settings.request_timeout),
        auth=AuthSession(kv),
        debounce_seconds=settings.debounce_seconds,
    )
