"""
Application Configuration.

Pydantic Settings model for the expenditure data layer.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings

from expenditure.errors import ConfigurationError


class ConnectionConfig(BaseModel):
    """Immutable connection settings for the hosted Supabase project."""

    endpoint: str
    credential: SecretStr

    model_config = {"frozen": True}


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Supabase ---
    # The NEXT_PUBLIC_* names are what the web front end already exports.
    SUPABASE_URL: str = Field(
        default="",
        validation_alias=AliasChoices("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"),
    )
    SUPABASE_ANON_KEY: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices(
            "SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY",
        ),
    )
    AUTO_REFRESH_TOKEN: bool = True
    PERSIST_SESSION: bool = True

    # --- Repositories ---
    IDEMPOTENT_DELETE: bool = True
    READ_RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    READ_RETRY_BASE_S: float = Field(default=0.5, ge=0)

    # --- Realtime ---
    REALTIME_SCHEMA: str = "public"
    REALTIME_RECONNECT_BASE_S: float = Field(default=1.0, ge=0)
    REALTIME_RECONNECT_MAX_S: float = Field(default=30.0, ge=0)
    REALTIME_MAX_RECONNECT_ATTEMPTS: int = Field(default=5, ge=0)

    # --- Logging ---
    LOG_FILE: str = "expenditure.log"
    LOG_LEVEL: str = "INFO"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when the Supabase settings are empty.

        Pydantic silently falls back to defaults when ``.env`` is missing,
        so operators get a hint before :meth:`connection_config` fails.
        """
        _log = logging.getLogger("expenditure.config")

        if not Path(".env").exists():
            _log.debug(
                "No .env file found; configuration loaded from "
                "environment variables or defaults."
            )

        if not self.SUPABASE_URL:
            _log.warning("SUPABASE_URL is empty; the client cannot connect.")

        if not self.SUPABASE_ANON_KEY.get_secret_value():
            _log.warning("SUPABASE_ANON_KEY is empty; the client cannot connect.")

        return self

    def connection_config(self) -> ConnectionConfig:
        """Build the immutable :class:`ConnectionConfig` for ``connect()``.

        Raises:
            ConfigurationError: If the endpoint or the credential is missing.
        """
        if not self.SUPABASE_ANON_KEY.get_secret_value().strip():
            raise ConfigurationError(
                "SUPABASE_ANON_KEY is not defined. "
                "Add it to the environment or the .env file."
            )
        if not self.SUPABASE_URL.strip():
            raise ConfigurationError(
                "SUPABASE_URL is not defined. "
                "Add it to the environment or the .env file."
            )
        return ConnectionConfig(
            endpoint=self.SUPABASE_URL.strip(),
            credential=self.SUPABASE_ANON_KEY,
        )


# ---------------------------------------------------------------------------
# Module-level cached accessor
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` instance.

    Uses a check-lock-check pattern so the fast path takes no lock.
    Prefer passing ``AppConfig`` explicitly in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance


def reset_config() -> None:
    """Drop the cached instance so the next ``get_config()`` reloads."""
    global _config_instance
    with _config_lock:
        _config_instance = None
