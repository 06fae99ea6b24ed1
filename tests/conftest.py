"""Shared fixtures for boardsync tests."""

import pytest

from boardsync.auth import AuthState
from boardsync.client import BoardStoreClient
from boardsync.session import BoardSession
from boardsync.store import DocumentStore, QueuedDispatcher
from boardsync.sync import SyncContext, SyncLayer
from boardsync.view import ViewState


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "board.db")


@pytest.fixture
def store(db_path):
    return DocumentStore(db_path)


@pytest.fixture
def dispatcher():
    return QueuedDispatcher()


@pytest.fixture
def queued_store(db_path, dispatcher):
    """Store whose snapshots wait in `dispatcher` until drain()."""
    return DocumentStore(db_path, dispatcher=dispatcher)


@pytest.fixture
def auth():
    state = AuthState()
    state.sign_in("u1", "Ada")
    return state


@pytest.fixture
def client(store, auth):
    return BoardStoreClient(store, auth)


@pytest.fixture
def session(store):
    s = BoardSession(store)
    s.sign_in("u1", "Ada")
    yield s
    s.close()


@pytest.fixture
def make_sync():
    """Factory for started SyncLayers, each with its own auth state and view (one client each)."""
    created = []

    def _make(store, uid="u1", display_name="Ada", on_auth_lost=None):
        auth = AuthState()
        user = auth.sign_in(uid, display_name)
        sync = SyncLayer(
            SyncContext(client=BoardStoreClient(store, auth), view=ViewState()),
            on_auth_lost=on_auth_lost,
        )
        sync.start(user)
        created.append(sync)
        return sync

    yield _make
    for sync in created:
        sync.stop()
