"""
Session controller: connects the identity boundary to the sync layer.

Signing in starts a sync layer for the user; signing out (or losing auth
mid-session) stops it, clears the view and reports the signed-out state so
the UI can navigate to its sign-in view.
"""
import logging
from typing import Callable, Optional

from .auth import AuthState, User
from .client import BoardStoreClient
from .config import Config
from .store import CancelToken, DocumentStore
from .sync import SyncContext, SyncLayer
from .view import ViewState

logger = logging.getLogger(__name__)


class BoardSession:
    """One client: an identity, its view state and the sync layer feeding it."""

    def __init__(
        self,
        store: DocumentStore,
        auth: Optional[AuthState] = None,
        config: Optional[Config] = None,
        on_signed_out: Optional[Callable[[], None]] = None,
    ):
        self.auth = auth or AuthState()
        self.config = config or Config()
        self.view = ViewState()
        self.client = BoardStoreClient(store, self.auth)
        self.sync = SyncLayer(
            SyncContext(client=self.client, view=self.view, config=self.config),
            on_auth_lost=self._on_auth_lost,
        )
        self.on_signed_out = on_signed_out
        self.signed_in = False
        self._auth_token: Optional[CancelToken] = None

    def open(self) -> "BoardSession":
        """Start following auth state changes (fires at once with the current user)."""
        if self._auth_token is None:
            self._auth_token = self.auth.on_auth_state_changed(self._on_auth_state)
        return self

    def close(self) -> None:
        if self._auth_token is not None:
            self._auth_token()
            self._auth_token = None
        self.sync.stop()

    def sign_in(self, uid: str, display_name: str = "") -> User:
        self.open()
        return self.auth.sign_in(uid, display_name)

    def sign_out(self) -> None:
        self.auth.sign_out()

    def _on_auth_state(self, user: Optional[User]) -> None:
        if user is not None:
            self.signed_in = True
            self.view.reset()
            self.sync.start(user)
            return
        self._signed_out()

    def _on_auth_lost(self) -> None:
        # Sync layer has already cancelled its listeners and sits in ERROR.
        self._signed_out(stop_sync=False)

    def _signed_out(self, stop_sync: bool = True) -> None:
        was_signed_in = self.signed_in
        self.signed_in = False
        if stop_sync:
            self.sync.stop()
        self.view.reset()
        if was_signed_in:
            logger.info("Session signed out")
        if self.on_signed_out:
            self.on_signed_out()
