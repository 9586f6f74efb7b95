"""
Authentication Service.

Thin orchestrator over the Supabase GoTrue client: sign-up, sign-in,
sign-out and current-session lookup.  Fields are validated client-side
before any request, Supabase errors are classified into
``AuthErrorCode`` values, and the shared ``SessionManager`` is kept in
step with the server session.

All methods return typed ``AuthResult`` or ``ValidationResult`` models;
callers never inspect raw exceptions.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from expenditure.auth import SessionManager
from expenditure.client import ClientHandle
from expenditure.errors import AuthenticationError
from expenditure.logger import StructuredLogger
from expenditure.models.auth_models import (
    AuthErrorCode,
    AuthResult,
    SUPABASE_ERROR_MAP,
    SessionInfo,
    ValidationResult,
)
from expenditure.models.user import SessionUser
from expenditure.services.base_service import BaseService


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_RE: re.Pattern[str] = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

# Matches C0 controls (U+0000-U+001F), DEL (U+007F), and C1 controls (U+0080-U+009F).
_CONTROL_CHAR_RE: re.Pattern[str] = re.compile(r"[\x00-\x1f\x7f-\x9f]")

_MIN_PASSWORD_LENGTH: int = 8


class AuthService(BaseService):
    """Authentication boundary for the data layer.

    Parameters
    ----------
    client:
        Shared Supabase client handle.
    session:
        Injectable session holder updated on every auth transition.
    logger:
        Structured JSON logger.
    """

    def __init__(
        self,
        client: ClientHandle,
        session: SessionManager,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._client: ClientHandle = client
        self._session: SessionManager = session

    # ==================================================================
    # Validation helpers
    # ==================================================================

    @staticmethod
    def validate_email(email: str) -> ValidationResult:
        """Validate an email address against a simplified RFC 5322 regex."""
        if not email or not email.strip():
            return ValidationResult(
                is_valid=False,
                error_message="Email address is required.",
            )
        if not _EMAIL_RE.match(email.strip()):
            return ValidationResult(
                is_valid=False,
                error_message="Please enter a valid email address.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_password(password: str) -> ValidationResult:
        """Enforce the sign-up password policy.

        Policy: minimum 8 characters with at least one letter and one digit.
        """
        if len(password) < _MIN_PASSWORD_LENGTH:
            return ValidationResult(
                is_valid=False,
                error_message=f"Password must be at least {_MIN_PASSWORD_LENGTH} characters.",
            )
        if not re.search(r"[A-Za-z]", password):
            return ValidationResult(
                is_valid=False,
                error_message="Password must contain at least one letter.",
            )
        if not re.search(r"\d", password):
            return ValidationResult(
                is_valid=False,
                error_message="Password must contain at least one digit.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_display_name(name: str) -> ValidationResult:
        """Reject blank names and control characters."""
        stripped = (name or "").strip()
        if not stripped:
            return ValidationResult(
                is_valid=False,
                error_message="Display name is required.",
            )
        if _CONTROL_CHAR_RE.search(stripped):
            return ValidationResult(
                is_valid=False,
                error_message=(
                    "Display name contains invalid characters. "
                    "Only printable characters are allowed."
                ),
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def normalize_email(email: str) -> str:
        """Normalise an email address: strip whitespace and lowercase."""
        return email.strip().lower()

    # ==================================================================
    # Sign-up
    # ==================================================================

    async def sign_up(self, email: str, password: str, display_name: str) -> AuthResult:
        """Register a new account.

        ``display_name`` is stored as ``full_name`` in the auth user's
        metadata, where the database trigger that creates the ``users``
        profile row picks it up.  When email confirmation is disabled the
        server returns a session straight away and the user is signed in.
        """
        for check in (
            self.validate_display_name(display_name),
            self.validate_email(email),
            self.validate_password(password),
        ):
            if not check.is_valid:
                return AuthResult(
                    success=False,
                    error_code=AuthErrorCode.VALIDATION_ERROR,
                    error_message=check.error_message,
                )

        email = self.normalize_email(email)
        display_name = display_name.strip()

        try:
            response = await self._client.auth.sign_up({
                "email": email,
                "password": password,
                "options": {"data": {"full_name": display_name}},
            })
        except Exception as exc:
            return self._classify_error(exc, "SIGN_UP")

        result = self._adopt(response.user, response.session, email)
        self._logger.info(
            "User registered: %s.",
            email,
            extra={"event": "SIGN_UP", "email": email},
        )
        return result

    # ==================================================================
    # Sign-in
    # ==================================================================

    async def sign_in(self, email: str, password: str) -> AuthResult:
        """Authenticate with email and password."""
        email_check = self.validate_email(email)
        if not email_check.is_valid:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message=email_check.error_message,
            )
        if not password:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message="Password is required.",
            )

        email = self.normalize_email(email)
        try:
            response = await self._client.auth.sign_in_with_password({
                "email": email,
                "password": password,
            })
        except Exception as exc:
            return self._classify_error(exc, "SIGN_IN")

        if response.session is None:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.UNKNOWN_ERROR,
                error_message="The server did not return a session.",
            )

        result = self._adopt(response.user, response.session, email)
        self._logger.info(
            "User authenticated: %s",
            email,
            extra={"event": "SIGN_IN", "user_id": result.user_id},
        )
        return result

    # ==================================================================
    # Sign-out
    # ==================================================================

    async def sign_out(self) -> AuthResult:
        """Revoke the server session and clear local state.

        Local state is cleared even when the server call fails, so the
        process never keeps acting as a user who asked to leave.
        """
        email = "unknown"
        try:
            email = self._session.get_current_user().email
        except AuthenticationError:
            pass

        try:
            await self._client.auth.sign_out()
        except Exception as exc:
            self._session.clear()
            self._logger.warning("Server-side sign_out failed for %s: %s", email, exc)
            return self._classify_error(exc, "SIGN_OUT")

        self._session.clear()
        self._logger.info(
            "User signed out: %s", email, extra={"event": "SIGN_OUT"},
        )
        return AuthResult(success=True, email=email if email != "unknown" else None)

    # ==================================================================
    # Current session
    # ==================================================================

    async def get_current_session(self) -> AuthResult:
        """Ask the client for its current (auto-refreshed) session.

        Keeps the ``SessionManager`` in step: a missing session clears it.
        """
        try:
            session = await self._client.auth.get_session()
        except Exception as exc:
            return self._classify_error(exc, "GET_SESSION")

        if session is None:
            self._session.clear()
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.NO_SESSION,
                error_message="No active session. Please sign in.",
            )
        return self._adopt(session.user, session, None)

    async def get_current_user(self) -> AuthResult:
        """Fetch the signed-in user as the auth server sees it.

        Unlike :meth:`get_current_session` this validates the access
        token against the server, so a revoked session is reported even
        when the locally stored one has not expired yet.
        """
        try:
            response = await self._client.auth.get_user()
        except Exception as exc:
            return self._classify_error(exc, "GET_USER")

        user = getattr(response, "user", None)
        if user is None:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.NO_SESSION,
                error_message="No active session. Please sign in.",
            )

        email: str = getattr(user, "email", None) or ""
        metadata: dict[str, Any] = getattr(user, "user_metadata", None) or {}
        return AuthResult(
            success=True,
            user_id=str(user.id),
            email=email,
            display_name=metadata.get("full_name") or email.split("@")[0],
        )

    async def has_valid_session(self) -> bool:
        """Precondition check for policy-protected repository calls."""
        if self._session.is_authenticated:
            return True
        result = await self.get_current_session()
        return result.success and self._session.is_authenticated

    # ==================================================================
    # Helpers
    # ==================================================================

    def _adopt(self, user: Any, session: Any, fallback_email: Optional[str]) -> AuthResult:
        """Record the server user/session in the ``SessionManager``."""
        if user is None:
            return AuthResult(success=True, email=fallback_email)

        email: str = getattr(user, "email", None) or fallback_email or ""
        metadata: dict[str, Any] = getattr(user, "user_metadata", None) or {}
        display_name: str = metadata.get("full_name") or email.split("@")[0]

        session_info: Optional[SessionInfo] = None
        if session is not None:
            expires_at = getattr(session, "expires_at", None)
            session_info = SessionInfo(
                access_token=session.access_token,
                refresh_token=getattr(session, "refresh_token", None),
                expires_at=(
                    datetime.fromtimestamp(expires_at, tz=timezone.utc)
                    if expires_at is not None
                    else None
                ),
            )
            self._session.set_current_user(SessionUser(
                id=str(user.id),
                email=email,
                display_name=display_name,
                last_sign_in_at=getattr(user, "last_sign_in_at", None),
            ))
            self._session.set_session(session_info)

        return AuthResult(
            success=True,
            user_id=str(user.id),
            email=email,
            display_name=display_name,
            session=session_info,
        )

    def _classify_error(self, exc: Exception, event: str) -> AuthResult:
        """Map a Supabase or network exception to a structured ``AuthResult``."""
        if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
            self._logger.warning(
                "Network error during %s: %s", event.lower(), exc,
                extra={"event": f"{event}_NETWORK_ERROR"},
            )
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.NETWORK_ERROR,
                error_message="Cannot reach the server. Check your internet connection.",
            )

        # GoTrue errors carry a machine code; older servers only a message.
        haystack = f"{getattr(exc, 'code', '') or ''} {exc}".lower()
        for code_key, (error_code, human_message) in SUPABASE_ERROR_MAP.items():
            if code_key in haystack:
                self._logger.warning(
                    "Auth error (%s) during %s: %s", code_key, event.lower(), exc,
                    extra={"event": f"{event}_FAILED", "error_code": code_key},
                )
                return AuthResult(
                    success=False,
                    error_code=error_code,
                    error_message=human_message,
                )

        self._logger.warning(
            "Unknown auth error during %s: %s", event.lower(), exc,
            extra={"event": f"{event}_FAILED", "error_code": "unknown"},
        )
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.UNKNOWN_ERROR,
            error_message="An unexpected error occurred. Please try again later.",
        )
