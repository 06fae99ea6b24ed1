"""
Identity boundary.

The sign-in UI and identity provider live outside this package; they report
the signed-in user here. Consumers observe transitions through
on_auth_state_changed(), which fires immediately with the current user and
again on every sign-in / sign-out.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import Unauthenticated
from .store import CancelToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class User:
    """Authenticated identity as reported by the identity provider."""
    uid: str
    display_name: str = ""


AuthListener = Callable[[Optional[User]], None]


class AuthState:
    """Current identity plus auth-state-change subscriptions."""

    def __init__(self, user: Optional[User] = None):
        self._user = user
        self._listeners: Dict[int, AuthListener] = {}
        self._next_id = 1

    @property
    def current_user(self) -> Optional[User]:
        return self._user

    def require_user(self) -> User:
        """Return the active identity or raise Unauthenticated."""
        if self._user is None:
            raise Unauthenticated("No authenticated user")
        return self._user

    def on_auth_state_changed(self, callback: AuthListener) -> CancelToken:
        listener_id = self._next_id
        self._next_id += 1
        self._listeners[listener_id] = callback
        callback(self._user)
        return CancelToken(lambda: self._listeners.pop(listener_id, None))

    def sign_in(self, uid: str, display_name: str = "") -> User:
        if not uid:
            raise ValueError("uid is required")
        user = User(uid=uid, display_name=display_name or "")
        if user != self._user:
            self._user = user
            logger.info(f"Signed in: {uid}")
            self._emit()
        return user

    def sign_out(self) -> None:
        if self._user is None:
            return
        logger.info(f"Signed out: {self._user.uid}")
        self._user = None
        self._emit()

    def _emit(self) -> None:
        for callback in list(self._listeners.values()):
            try:
                callback(self._user)
            except Exception:
                logger.exception("Auth state listener failed")
