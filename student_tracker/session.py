"""Session guard: authentication token and current identity."""

import logging
from typing import Callable, List, Optional

from .models import CurrentUser

logger = logging.getLogger(__name__)


class SessionGuard:
    """Holds the bearer token and signed-in user; gates all network access."""

    def __init__(self, token: Optional[str] = None, user: Optional[CurrentUser] = None):
        self._token = token or None
        self._user = user if self._token else None
        self._teardown_listeners: List[Callable[[], None]] = []

    @property
    def is_authenticated(self) -> bool:
        return bool(self._token)

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def current_user(self) -> Optional[CurrentUser]:
        return self._user

    def login(self, token: str, user: CurrentUser) -> None:
        if not token:
            raise ValueError("token must not be empty")
        if self.is_authenticated and (token != self._token or user != self._user):
            # Switching identity drops the previous user's cached records
            self.logout()
        self._token = token
        self._user = user
        logger.info("Signed in as %s (%s)", user.user_id, user.role.value)

    def logout(self) -> None:
        """End the session; teardown listeners run only on an actual transition."""
        was_authenticated = self.is_authenticated
        self._token = None
        self._user = None
        if not was_authenticated:
            return
        logger.info("Signed out, tearing down cached records")
        for listener in list(self._teardown_listeners):
            listener()

    def on_logout(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a teardown listener. Returns a function that unregisters it."""
        self._teardown_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._teardown_listeners:
                self._teardown_listeners.remove(listener)

        return unsubscribe
