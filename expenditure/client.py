"""
Remote Client Handle.

Wraps the Supabase ``AsyncClient`` (PostgREST, GoTrue and Realtime) behind
an explicitly constructed handle.  One ``ClientHandle`` is created at
process start and passed into every repository, subscription manager and
service; nothing in this package keeps a module-level client.

``connect()`` is a pure factory: it validates the configuration, builds
the client and never retries.

Usage (dependency injection at startup)::

    from expenditure.client import connect
    from expenditure.config import get_config
    from expenditure.logger import StructuredLogger

    handle = await connect(
        get_config().connection_config(),
        logger=StructuredLogger(name="client"),
    )
    # Inject `handle` into repositories / services that need it.
"""

from __future__ import annotations

from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import SecretStr
from supabase import AsyncClient, acreate_client
from supabase.lib.client_options import AsyncClientOptions

from expenditure.config import ConnectionConfig
from expenditure.errors import ConfigurationError
from expenditure.logger import StructuredLogger
from expenditure.models.enums import Collection


class ClientHandle:
    """Process-wide handle on the hosted Supabase project.

    Parameters
    ----------
    config:
        The immutable connection settings the client was built from.
    supabase:
        An initialised Supabase ``AsyncClient`` (or a compatible fake).
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        supabase: AsyncClient,
        logger: StructuredLogger,
        *,
        client_options: Optional[dict[str, bool]] = None,
    ) -> None:
        self._config: ConnectionConfig = config
        self._supabase: AsyncClient = supabase
        self._logger: StructuredLogger = logger
        self._client_options: dict[str, bool] = dict(client_options or {})
        self._closed: bool = False

    # ------------------------------------------------------------------
    # Public properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def supabase(self) -> AsyncClient:
        """Return the underlying Supabase client.

        Raises
        ------
        RuntimeError
            If the handle has been closed.
        """
        if self._closed:
            raise RuntimeError("Client handle is closed.")
        return self._supabase

    @property
    def auth(self) -> Any:
        """The GoTrue auth client of the underlying Supabase client."""
        return self.supabase.auth

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Request builders
    # ------------------------------------------------------------------

    def table(self, collection: str | Collection) -> Any:
        """Return a PostgREST request builder for *collection*."""
        return self.supabase.table(str(collection))

    def channel(self, name: str) -> Any:
        """Return a new (unsubscribed) Realtime channel called *name*."""
        return self.supabase.channel(name)

    async def remove_channel(self, channel: Any) -> None:
        """Unsubscribe *channel* and drop it from the realtime socket."""
        await self.supabase.remove_channel(channel)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def rotate_credential(self, credential: str) -> "ClientHandle":
        """Build a fresh handle for the same endpoint with *credential*.

        The current handle is closed once the new one has connected, so
        callers must re-wire their repositories with the returned handle.

        Raises
        ------
        ConfigurationError
            If the new credential is rejected.
        """
        new_config = ConnectionConfig(
            endpoint=self._config.endpoint,
            credential=SecretStr(credential),
        )
        handle = await connect(new_config, self._logger, **self._client_options)
        await self.close()
        self._logger.info("Supabase credential rotated.")
        return handle

    async def close(self) -> None:
        """Remove every open realtime channel.

        Safe to call multiple times; subsequent calls are no-ops.
        """
        if self._closed:
            return
        self._closed = True
        try:
            await self._supabase.remove_all_channels()
        except Exception as exc:
            self._logger.warning("Failed to remove realtime channels: %s", exc)
        self._logger.info("Supabase client handle closed.")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def _validate_endpoint(endpoint: str) -> None:
    if not endpoint or not endpoint.strip():
        raise ConfigurationError("Supabase endpoint URL is missing.")
    parsed = urlparse(endpoint.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(
            f"Supabase endpoint '{endpoint}' is not a valid http(s) URL."
        )


def _validate_credential(credential: str) -> None:
    if not credential or not credential.strip():
        raise ConfigurationError("Supabase API credential is missing.")
    if any(ch.isspace() for ch in credential.strip()):
        raise ConfigurationError("Supabase API credential is malformed.")


async def connect(
    config: ConnectionConfig,
    logger: StructuredLogger,
    *,
    auto_refresh_token: bool = True,
    persist_session: bool = True,
) -> ClientHandle:
    """Validate *config* and build a :class:`ClientHandle`.

    Raises
    ------
    ConfigurationError
        If the endpoint or the credential is absent or malformed, or the
        Supabase client refuses them.
    """
    _validate_endpoint(config.endpoint)
    key = config.credential.get_secret_value()
    _validate_credential(key)

    options = AsyncClientOptions(
        auto_refresh_token=auto_refresh_token,
        persist_session=persist_session,
    )
    try:
        supabase = await acreate_client(config.endpoint.strip(), key.strip(), options=options)
    except (ValueError, TypeError) as exc:
        logger.error("Supabase credential format error: %s", exc)
        raise ConfigurationError(f"Supabase rejected the configuration: {exc}") from exc
    except Exception as exc:
        logger.error(
            "Unexpected Supabase initialization failure: %s", exc, exc_info=True,
        )
        raise ConfigurationError(f"Supabase client could not be created: {exc}") from exc

    logger.info("Supabase client initialized.", extra={"endpoint": config.endpoint})
    return ClientHandle(
        config,
        supabase,
        logger,
        client_options={
            "auto_refresh_token": auto_refresh_token,
            "persist_session": persist_session,
        },
    )
