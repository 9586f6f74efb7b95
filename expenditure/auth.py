"""
Authentication & Session State.

Provides an injectable ``SessionManager`` that holds the signed-in user
(``SessionUser`` model) and the token metadata of the active Supabase
session.

Usage::

    from expenditure.auth import SessionManager
    from expenditure.models.user import SessionUser

    session = SessionManager()
    session.set_current_user(SessionUser(
        id="abc-123",
        email="user@example.com",
        display_name="Jane Doe",
    ))
    user = session.get_current_user()
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from expenditure.errors import AuthenticationError
from expenditure.models.auth_models import SessionInfo
from expenditure.models.user import SessionUser


class SessionManager:
    """Injectable holder for the current authenticated user.

    Pass a single ``SessionManager`` through the composition root so
    every component shares the same session.
    """

    # Tokens this close to expiry count as expired.
    _EXPIRY_MARGIN: timedelta = timedelta(seconds=30)

    def __init__(self) -> None:
        self._lock: threading.RLock = threading.RLock()
        self._current_user: Optional[SessionUser] = None
        self._session: Optional[SessionInfo] = None

    def set_current_user(self, user: SessionUser) -> None:
        """Record *user* as the authenticated session user."""
        with self._lock:
            self._current_user = user

    def get_current_user(self) -> SessionUser:
        """Return the authenticated user.

        Raises:
            AuthenticationError: If no user is currently authenticated.
        """
        with self._lock:
            if self._current_user is None:
                raise AuthenticationError(
                    "No user is currently authenticated. Sign-in required."
                )
            return self._current_user

    def set_session(self, session: SessionInfo) -> None:
        with self._lock:
            self._session = session

    @property
    def session(self) -> Optional[SessionInfo]:
        with self._lock:
            return self._session

    @property
    def is_token_expired(self) -> bool:
        """``True`` when the access token has expired or was never set.

        A session without a reported expiry is treated as valid; the
        server remains the authority.
        """
        with self._lock:
            if self._session is None:
                return True
            if self._session.expires_at is None:
                return False
            return datetime.now(timezone.utc) >= (
                self._session.expires_at - self._EXPIRY_MARGIN
            )

    def clear(self) -> None:
        """Remove the current user and tokens, ending the session."""
        with self._lock:
            self._current_user = None
            self._session = None

    @property
    def is_authenticated(self) -> bool:
        """``True`` when a user is signed in with an unexpired token."""
        with self._lock:
            return self._current_user is not None and not self.is_token_expired

    def require(self) -> SessionUser:
        """Return the current user if the session is valid.

        Raises:
            AuthenticationError: If nobody is signed in or the token expired.
        """
        with self._lock:
            user = self.get_current_user()
            if self.is_token_expired:
                raise AuthenticationError("The session has expired. Sign in again.")
            return user
