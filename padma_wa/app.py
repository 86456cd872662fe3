"""Application wiring: credential store, session registry, restorer, HTTP server."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from padma_wa.api.server import ApiServer
from padma_wa.connection.factory import load_client
from padma_wa.errors import ConnectionClientError, PersistenceFailure
from padma_wa.session.registry import SessionRegistry
from padma_wa.session.restorer import SessionRestorer
from padma_wa.store.credentials import CredentialStore
from padma_wa.version import get_current_version

if TYPE_CHECKING:
    from padma_wa.config import AppConfig
    from padma_wa.connection.types import ConnectionClient

logger = logging.getLogger(__name__)


class PadmaApp:
    """Owns every long-lived component and their start/stop order."""

    def __init__(
        self,
        config: AppConfig,
        *,
        client: ConnectionClient | None = None,
        store: CredentialStore | None = None,
    ) -> None:
        self._config = config
        if client is None:
            if not config.connection.client:
                msg = "connection.client is not configured (expected 'module:attribute')"
                raise ConnectionClientError(msg)
            client = load_client(config.connection.client)
        self._store = store or CredentialStore.from_url(
            config.redis.url,
            key_prefix=config.redis.key_prefix,
        )
        self.registry = SessionRegistry(store=self._store, client=client, config=config)
        self._restorer = SessionRestorer(self._store, self.registry)
        self._server = ApiServer(config.server, self.registry, version=get_current_version())
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Check the store, restore persisted sessions, then accept HTTP traffic."""
        try:
            await self._store.ping()
        except PersistenceFailure:
            logger.exception("Redis is not reachable at %s", self._config.redis.url)
            raise
        await self._restorer.restore_all()
        await self._server.start()

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> int:
        """Start and block until `request_stop`. Returns the process exit code."""
        await self.start()
        logger.info("PADMA %s running", get_current_version())
        await self._stop_event.wait()
        return 0

    async def shutdown(self) -> None:
        """Stop accepting requests, stop sessions (credentials kept), close Redis."""
        await self._server.stop()
        await self.registry.close()
        try:
            await self._store.close()
        except Exception:
            logger.warning("Closing Redis connection failed", exc_info=True)
        logger.info("Shutdown complete")
