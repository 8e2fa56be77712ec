"""Shared test fixtures for checksync."""

from __future__ import annotations

import socket
import time
from typing import Callable
from unittest.mock import MagicMock

import pytest

from checksync.auth import AuthSession, StaticIdentityProvider
from checksync.engine import SyncOrchestrator
from checksync.kvstore import MemoryKeyValueStore
from checksync.local_store import LocalStore
from checksync.models import StorageConfig, UserIdentity
from checksync.remote import RemoteStoreClient

ENDPOINT = "https://sync.example.test/api"


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    """An empty in-memory key/value store."""
    return MemoryKeyValueStore()


@pytest.fixture
def local(kv: MemoryKeyValueStore) -> LocalStore:
    return LocalStore(kv)


@pytest.fixture
def identity() -> UserIdentity:
    return UserIdentity(
        id="user-1",
        email="ada@example.com",
        name="Ada Lovelace",
        given_name="Ada",
    )


@pytest.fixture
def auth(kv: MemoryKeyValueStore, identity: UserIdentity) -> AuthSession:
    """A session already signed in as ``identity``."""
    session = AuthSession(kv)
    session.sign_in(StaticIdentityProvider(identity, "token-1"))
    return session


@pytest.fixture
def remote() -> MagicMock:
    """A remote client double: saves succeed, loads find nothing."""
    client = MagicMock(spec=RemoteStoreClient)
    client.load.return_value = None
    return client


@pytest.fixture
def make_engine(local: LocalStore, remote: MagicMock, auth: AuthSession):
    """Factory for an orchestrator wired to the fixtures above."""
    engines: list[SyncOrchestrator] = []

    def factory(
        endpoint: str = ENDPOINT,
        auto_sync: bool = True,
        debounce: float = 0.05,
    ) -> SyncOrchestrator:
        local.save_config(StorageConfig(endpoint=endpoint, auto_sync=auto_sync))
        engine = SyncOrchestrator(local, remote, auth, debounce_seconds=debounce)
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.close()


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def find_free_port() -> int:
    """Find an available port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
