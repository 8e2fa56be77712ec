"""
Tests for the sync orchestrator -- debounce, write path, read path,
settings, import/export and identity changes.
"""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path
import pytest

from conftest import ENDPOINT, wait_for

from checksync.auth import StaticIdentityProvider
from checksync.engine import LOAD_CONFLICT_MESSAGE, SyncOrchestrator
from checksync.errors import (
    AuthExpiredError,
    ImportFormatError,
    RemoteStoreError,
    TransportError,
)
from checksync.kvstore import MemoryKeyValueStore
from checksync.local_store import LocalStore
from checksync.models import StorageConfig, StorageRecord, SyncStatus, UserIdentity
from checksync.remote import AUTH_EXPIRED_MESSAGE


class TestDebouncedAutoSync:
    """Mutations collapse into one sync after the quiet period."""

    def test_single_mutation_syncs_once(self, make_engine, remote, local):
        engine = make_engine(debounce=0.05)
        engine.set_item("a", True)

        assert wait_for(lambda: engine.state.status is SyncStatus.SYNCED)
        remote.save.assert_called_once()
        args = remote.save.call_args.args
        assert args[0] == ENDPOINT
        assert args[1] == "user-1"
        assert args[2] == "ada@example.com"
        assert args[3] == {"a": True}
        assert args[4] == "token-1"
        assert local.get("user-1").data == {"a": True}

    def test_burst_collapses_to_last_state(self, make_engine, remote):
        engine = make_engine(debounce=0.2)
        for i in range(10):
            engine.set_item(f"item-{i}", True)

        assert remote.save.call_count == 0
        assert wait_for(lambda: remote.save.call_count == 1)
        time.sleep(0.3)

        assert remote.save.call_count == 1
        synced = remote.save.call_args.args[3]
        assert synced == {f"item-{i}": True for i in range(10)}

    def test_data_synced_is_current_when_timer_fires(self, make_engine, remote):
        engine = make_engine(debounce=10)
        engine.set_item("a", True)
        engine.set_item("a", False)
        engine.set_item("b", True)

        assert engine.flush() is True
        assert remote.save.call_args.args[3] == {"a": False, "b": True}

    def test_no_auto_sync_when_disabled(self, make_engine, remote):
        engine = make_engine(auto_sync=False, debounce=0.01)
        engine.set_item("a", True)

        time.sleep(0.1)
        assert not engine.sync_pending
        remote.save.assert_not_called()

    def test_no_auto_sync_when_signed_out(self, make_engine, remote, auth):
        engine = make_engine(debounce=0.01)
        auth.sign_out()
        engine.set_item("a", True)

        time.sleep(0.1)
        remote.save.assert_not_called()

    def test_empty_snapshot_does_not_schedule(self, make_engine):
        engine = make_engine(debounce=10)
        engine.update({})
        assert not engine.sync_pending

    def test_close_cancels_pending_sync(self, make_engine, remote):
        engine = make_engine(debounce=0.1)
        engine.set_item("a", True)
        engine.close()

        time.sleep(0.25)
        remote.save.assert_not_called()


class TestWritePath:
    """sync(): local first, then remote."""

    def test_success_ends_synced(self, make_engine, remote, local):
        engine = make_engine(debounce=60)
        engine.update({"a": True})

        assert engine.sync() is SyncStatus.SYNCED
        state = engine.state
        assert state.last_synced_at is not None
        assert state.error is None
        assert local.get("user-1").data == {"a": True}

    def test_no_endpoint_goes_offline_without_network(self, make_engine, remote, local):
        engine = make_engine(endpoint="", debounce=60)
        engine.update({"a": True})

        assert engine.sync() is SyncStatus.OFFLINE
        remote.save.assert_not_called()
        remote.load.assert_not_called()
        assert local.get("user-1").data == {"a": True}

    def test_auth_expired_keeps_local_value(self, make_engine, remote, local):
        remote.save.side_effect = AuthExpiredError(AUTH_EXPIRED_MESSAGE, status_code=401)
        engine = make_engine(debounce=60)
        engine.update({"a": True})

        assert engine.sync() is SyncStatus.ERROR
        state = engine.state
        assert state.auth_expired is True
        assert "Authentication expired" in state.error
        assert local.get("user-1").data == {"a": True}

    def test_transport_error_keeps_local_value(self, make_engine, remote, local):
        remote.save.side_effect = TransportError("Network error: down")
        engine = make_engine(debounce=60)
        engine.update({"a": True, "b": False})

        assert engine.sync() is SyncStatus.ERROR
        assert engine.state.auth_expired is False
        assert engine.last_error == "Network error: down"
        assert local.get("user-1").data == {"a": True, "b": False}

    def test_local_first_with_network_down(self, make_engine, remote, local):
        remote.save.side_effect = TransportError("Network error: unreachable")
        engine = make_engine(debounce=0.02)

        for value in ({"a": True}, {"a": True, "b": True}, {"a": False, "b": True}):
            engine.update(value)
            assert wait_for(lambda: engine.state.status is SyncStatus.ERROR)
            assert wait_for(lambda: local.get("user-1").data == value)

    def test_success_after_error_clears_message(self, make_engine, remote):
        remote.save.side_effect = [RemoteStoreError("HTTP error! status: 500", 500), None]
        engine = make_engine(debounce=60)
        engine.update({"a": True})

        assert engine.sync() is SyncStatus.ERROR
        assert engine.sync() is SyncStatus.SYNCED
        assert engine.state.error is None
        assert engine.last_error is None

    def test_local_store_failure_is_not_fatal(self, remote, auth):
        local = LocalStore(MemoryKeyValueStore(quota=100))
        local.save_config(StorageConfig(endpoint=ENDPOINT))
        engine = SyncOrchestrator(local, remote, auth)
        engine.update({"a-very-long-item-name": True})

        assert engine.sync() is SyncStatus.SYNCED
        remote.save.assert_called_once()
        assert local.get("user-1") is None
        engine.close()

    def test_signed_out_sync_is_noop(self, make_engine, remote, auth):
        engine = make_engine(debounce=60)
        auth.sign_out()

        assert engine.sync() is None
        remote.save.assert_not_called()

    def test_missing_token_is_auth_error(self, make_engine, remote, auth, kv):
        engine = make_engine(debounce=60)
        auth._token = None
        engine.update({"a": True})

        assert engine.sync() is SyncStatus.ERROR
        assert engine.state.auth_expired is True
        remote.save.assert_not_called()


class TestInFlightGuard:
    """At most one save on the wire; extra requests queue one rerun."""

    def test_overlapping_syncs_queue_one_rerun(self, make_engine, remote):
        entered = threading.Event()
        release = threading.Event()
        calls: list[dict] = []

        def slow_save(endpoint, user_id, email, data, token):
            calls.append(dict(data))
            if len(calls) == 1:
                entered.set()
                release.wait(2)

        remote.save.side_effect = slow_save
        engine = make_engine(debounce=60)
        engine.update({"a": True})

        first = threading.Thread(target=engine.sync)
        first.start()
        assert entered.wait(2)

        engine.update({"a": True, "b": True})
        assert engine.sync() is None
        assert engine.sync() is None
        release.set()
        first.join(2)

        assert len(calls) == 2
        assert calls[1] == {"a": True, "b": True}
        assert engine.state.status is SyncStatus.SYNCED


    def test_load_finishing_after_sync_still_applies(self, make_engine, remote):
        entered = threading.Event()
        release = threading.Event()

        def slow_load(endpoint, user_id, token):
            entered.set()
            release.wait(2)
            return {"cloud": True}

        remote.load.side_effect = slow_load
        engine = make_engine(debounce=60)
        worker = threading.Thread(target=engine.load_from_cloud)
        worker.start()
        assert entered.wait(2)

        assert engine.sync() is SyncStatus.SYNCED
        release.set()
        worker.join(2)

        assert engine.snapshot == {"cloud": True}
        assert engine.state.status is SyncStatus.SYNCED


class TestReadPath:
    """load_from_cloud(): remote wins."""

    def test_remote_replaces_local(self, make_engine, remote, local):
        engine = make_engine(debounce=60)
        engine.update({"a": True, "local-only": True})
        engine.persist_local()
        remote.load.return_value = {"b": True}

        assert engine.load_from_cloud() == {"b": True}
        assert engine.snapshot == {"b": True}
        assert local.get("user-1").data == {"b": True}
        assert engine.state.status is SyncStatus.SYNCED

    def test_data_observers_see_loaded_snapshot(self, make_engine, remote):
        engine = make_engine()
        seen: list[dict] = []
        engine.on_data_loaded(seen.append)
        remote.load.return_value = {"x": False}

        engine.load_from_cloud()
        assert seen == [{"x": False}]

    def test_null_remote_data_keeps_local(self, make_engine, remote, local):
        engine = make_engine(debounce=60)
        engine.update({"a": True})
        engine.persist_local()

        assert engine.load_from_cloud() is None
        assert engine.snapshot == {"a": True}
        assert local.get("user-1").data == {"a": True}
        assert engine.state.status is SyncStatus.OFFLINE
        assert engine.state.error is None

    def test_failure_goes_offline_and_leaves_local(self, make_engine, remote, local):
        engine = make_engine(debounce=60)
        engine.update({"a": True})
        engine.persist_local()
        remote.load.side_effect = TransportError("Network error: refused")

        assert engine.load_from_cloud() is None
        state = engine.state
        assert state.status is SyncStatus.OFFLINE
        assert state.error == "Network error: refused"
        assert engine.snapshot == {"a": True}
        assert local.get("user-1").data == {"a": True}

    def test_auth_failure_is_flagged(self, make_engine, remote):
        engine = make_engine()
        remote.load.side_effect = AuthExpiredError(AUTH_EXPIRED_MESSAGE, status_code=401)

        engine.load_from_cloud()
        assert engine.state.status is SyncStatus.OFFLINE
        assert engine.state.auth_expired is True

    def test_no_endpoint_skips(self, make_engine, remote):
        engine = make_engine(endpoint="")
        assert engine.load_from_cloud() is None
        remote.load.assert_not_called()
        assert engine.state.status is SyncStatus.IDLE

    def test_local_edit_during_load_wins(self, make_engine, remote):
        engine = make_engine(debounce=60)
        entered = threading.Event()
        release = threading.Event()

        def slow_load(endpoint, user_id, token):
            entered.set()
            release.wait(2)
            return {"remote": True}

        remote.load.side_effect = slow_load
        worker = threading.Thread(target=engine.load_from_cloud)
        worker.start()
        assert entered.wait(2)
        engine.set_item("mine", True)
        release.set()
        worker.join(2)

        assert engine.snapshot == {"mine": True}
        assert engine.state.status is SyncStatus.ERROR
        assert engine.state.error == LOAD_CONFLICT_MESSAGE


class TestStart:
    """Mount: local first, then cloud."""

    def test_local_read_happens_before_network(self, make_engine, remote, local):
        local.kv.put("checklist-user-1-data", json.dumps({"a": True}))
        engine = make_engine()
        order: list[str] = []
        engine.on_data_loaded(lambda data: order.append(f"data:{sorted(data)}"))

        def load(*args):
            order.append("network")
            return None

        remote.load.side_effect = load
        assert engine.start() == {"a": True}
        assert order == ["data:['a']", "network"]

    def test_start_without_endpoint_stays_local(self, make_engine, remote, local):
        local.kv.put("checklist-user-1-data", json.dumps({"a": True}))
        engine = make_engine(endpoint="")

        assert engine.start() == {"a": True}
        remote.load.assert_not_called()
        assert engine.state.status is SyncStatus.IDLE

    def test_corrupt_local_data_starts_empty(self, make_engine, local):
        local.kv.put("checklist-user-1-data", "{not json")
        engine = make_engine(endpoint="")
        assert engine.start() == {}


class TestSettings:
    """Endpoint and auto-sync changes persist and pull immediately."""

    def test_set_endpoint_persists_and_loads(self, make_engine, remote, local):
        engine = make_engine(endpoint="")
        remote.load.return_value = {"cloud": True}

        assert engine.set_endpoint("https://other.example.test/fn/") == {"cloud": True}
        assert local.load_config().endpoint == "https://other.example.test/fn"
        remote.load.assert_called_once_with("https://other.example.test/fn", "user-1", "token-1")

    def test_clearing_endpoint_does_not_load(self, make_engine, remote, local):
        engine = make_engine()
        assert engine.set_endpoint("") is None
        remote.load.assert_not_called()
        assert local.load_config().has_endpoint is False

    def test_clearing_endpoint_during_load_settles_status(self, make_engine, remote, local):
        engine = make_engine(debounce=60)
        entered = threading.Event()
        release = threading.Event()

        def slow_load(endpoint, user_id, token):
            entered.set()
            release.wait(2)
            return {"remote": True}

        remote.load.side_effect = slow_load
        worker = threading.Thread(target=engine.load_from_cloud)
        worker.start()
        assert entered.wait(2)
        engine.set_endpoint("")
        release.set()
        worker.join(2)

        assert engine.state.status is SyncStatus.OFFLINE
        assert engine.snapshot == {}
        assert local.get("user-1") is None

        engine.update({"a": True})
        assert engine.sync() is SyncStatus.OFFLINE

    def test_unexpected_load_error_restores_status(self, make_engine, remote):
        engine = make_engine(debounce=60)
        remote.load.side_effect = RuntimeError("client bug")

        with pytest.raises(RuntimeError):
            engine.load_from_cloud()

        assert engine.state.status is SyncStatus.IDLE
        remote.load.side_effect = None
        remote.load.return_value = {"b": True}
        assert engine.load_from_cloud() == {"b": True}
        assert engine.state.status is SyncStatus.SYNCED

    def test_unexpected_sync_error_restores_previous_result(self, make_engine, remote):
        engine = make_engine(debounce=60)
        engine.update({"a": True})
        assert engine.sync() is SyncStatus.SYNCED
        synced_at = engine.state.last_synced_at

        remote.save.side_effect = RuntimeError("client bug")
        with pytest.raises(RuntimeError):
            engine.sync()

        assert engine.state.status is SyncStatus.SYNCED
        assert engine.state.last_synced_at == synced_at

    def test_save_settings_disables_auto_sync(self, make_engine, remote, local):
        engine = make_engine(debounce=0.1)
        engine.set_item("a", True)
        engine.save_settings(endpoint=ENDPOINT, auto_sync=False)

        assert not engine.sync_pending
        assert local.load_config() == StorageConfig(endpoint=ENDPOINT, auto_sync=False)
        time.sleep(0.2)
        remote.save.assert_not_called()


class TestImportExport:
    """Backup files round-trip and import triggers the write path."""

    def test_round_trip(self, make_engine, tmp_path: Path):
        engine = make_engine(auto_sync=False)
        original = {"a": True, "b": False, "c": True}
        engine.update(original)

        path = engine.export_snapshot(tmp_path)
        engine.update({"other": True})
        engine.import_snapshot(path)

        assert engine.snapshot == original

    def test_export_default_name_and_metadata(self, make_engine, tmp_path: Path):
        engine = make_engine(auto_sync=False)
        engine.update({"a": True})
        path = engine.export_snapshot(tmp_path)

        assert path.name.startswith("design-checklist-Ada-")
        body = json.loads(path.read_text(encoding="utf-8"))
        assert body["version"] == "1.0"
        assert body["exportedBy"] == {"name": "Ada Lovelace", "email": "ada@example.com", "id": "user-1"}
        assert body["data"] == {"a": True}
        assert "exportedAt" in body

    def test_import_syncs_when_auto_sync_on(self, make_engine, remote, local, tmp_path: Path):
        engine = make_engine()
        src = tmp_path / "backup.json"
        src.write_text(json.dumps({"data": {"imported": True}}), encoding="utf-8")

        assert engine.import_snapshot(src) is SyncStatus.SYNCED
        assert remote.save.call_args.args[3] == {"imported": True}
        assert local.get("user-1").data == {"imported": True}

    def test_import_without_auto_sync_stays_local(self, make_engine, remote, local, tmp_path: Path):
        engine = make_engine(auto_sync=False)
        src = tmp_path / "backup.json"
        src.write_text(json.dumps({"data": {"imported": True}}), encoding="utf-8")

        assert engine.import_snapshot(src) is None
        remote.save.assert_not_called()
        assert local.get("user-1").data == {"imported": True}

    def test_import_rejects_missing_data(self, make_engine, tmp_path: Path):
        engine = make_engine(auto_sync=False)
        engine.update({"keep": True})
        src = tmp_path / "bad.json"
        src.write_text(json.dumps({"version": "1.0"}), encoding="utf-8")

        with pytest.raises(ImportFormatError):
            engine.import_snapshot(src)
        assert engine.last_error == "Invalid backup file format"
        assert engine.snapshot == {"keep": True}


class TestIdentityChanges:
    """Sign-in and sign-out reset the engine for the new identity."""

    def test_sign_out_resets_and_drops_pending(self, make_engine, remote, auth):
        engine = make_engine(debounce=0.1)
        engine.set_item("a", True)
        auth.sign_out()

        assert engine.snapshot == {}
        assert engine.state.status is SyncStatus.IDLE
        time.sleep(0.2)
        remote.save.assert_not_called()

    def test_sign_in_loads_new_users_data(self, make_engine, remote, auth, local):
        local.put("user-2", StorageRecord(data={"theirs": True}))
        engine = make_engine(endpoint="")
        auth.sign_in(StaticIdentityProvider(UserIdentity(id="user-2", email="b@example.com"), "token-2"))

        assert engine.snapshot == {"theirs": True}

    def test_stale_load_after_sign_out_is_discarded(self, make_engine, remote, auth, local):
        engine = make_engine()
        entered = threading.Event()
        release = threading.Event()

        def slow_load(endpoint, user_id, token):
            entered.set()
            release.wait(2)
            return {"stale": True}

        remote.load.side_effect = slow_load
        worker = threading.Thread(target=engine.load_from_cloud)
        worker.start()
        assert entered.wait(2)
        auth.sign_out()
        release.set()
        worker.join(2)

        assert engine.snapshot == {}
        assert engine.state.status is SyncStatus.IDLE
        assert local.get("user-1") is None

    def test_sign_out_forget_data_clears_local(self, make_engine, remote, local):
        engine = make_engine(endpoint="")
        engine.set_item("a", True)

        identity = engine.sign_out(forget_data=True)

        assert identity.id == "user-1"
        assert local.get("user-1") is None
        assert engine.sign_out() is None

    def test_sign_out_keeps_local_by_default(self, make_engine, remote, local):
        engine = make_engine(endpoint="")
        engine.set_item("a", True)
        engine.sign_out()

        assert local.get("user-1").data == {"a": True}
