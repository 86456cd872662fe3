"""HTTP API server: aiohttp front end for the session registry."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING

from aiohttp import web

from padma_wa.api.middleware import api_key_middleware, request_logger
from padma_wa.api.qr_image import render_qr_data_url
from padma_wa.errors import (
    ChallengeSuperseded,
    ConnectionClientError,
    PersistenceFailure,
    SessionError,
    SessionNotFound,
)

if TYPE_CHECKING:
    from padma_wa.config import ServerConfig
    from padma_wa.session.registry import Session, SessionRegistry

logger = logging.getLogger(__name__)

# ``:`` is reserved for derived store keys such as ``<id>:cache``.
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.@+-]{1,128}$")


def _not_found() -> web.Response:
    return web.json_response({"error": "Session not found"}, status=404)


class ApiServer:
    """HTTP server for session management.

    Routes:
    - ``GET    /``                                      -- Service banner.
    - ``GET    /health``                                -- Liveness + session count.
    - ``GET    /sessions``                              -- List sessions.
    - ``POST   /sessions/{session_id}``                 -- Create/resume, QR if unpaired.
    - ``GET    /sessions/{session_id}``                 -- Session status.
    - ``GET    /sessions/{session_id}/chats``           -- Cached chats, newest first.
    - ``GET    /sessions/{session_id}/chats/{chat_id}/contact`` -- Contact + live lookups.
    - ``DELETE /sessions/{session_id}``                 -- Log out and forget.
    """

    def __init__(
        self,
        config: ServerConfig,
        registry: SessionRegistry,
        *,
        version: str = "0.0.0",
    ) -> None:
        self._config = config
        self._registry = registry
        self._version = version
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application(
            client_max_size=self._config.max_body_bytes,
            middlewares=[request_logger, api_key_middleware(self._config.api_key)],
        )
        app.router.add_get("/", self._handle_root)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/sessions", self._handle_list)
        app.router.add_post("/sessions/{session_id}", self._handle_create)
        app.router.add_get("/sessions/{session_id}", self._handle_status)
        app.router.add_delete("/sessions/{session_id}", self._handle_delete)
        app.router.add_get("/sessions/{session_id}/chats", self._handle_chats)
        app.router.add_get(
            "/sessions/{session_id}/chats/{chat_id}/contact",
            self._handle_contact,
        )
        return app

    async def start(self) -> None:
        """Create the aiohttp app and start listening."""
        if not self._config.api_key:
            logger.warning("server.api_key is empty: every request will be rejected")
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        logger.info(
            "PADMA API server %s listening on %s:%d",
            self._version,
            self._config.host,
            self._config.port,
        )

    async def stop(self) -> None:
        """Shut down the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("API server stopped")

    # -- Handlers --

    async def _handle_root(self, _request: web.Request) -> web.Response:
        return web.json_response({"status": "SERVER RUNNING", "version": self._version})

    async def _handle_health(self, _request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "sessions": len(self._registry)})

    async def _handle_list(self, _request: web.Request) -> web.Response:
        return web.json_response([s.to_dict() for s in self._registry.list()])

    async def _handle_create(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        if not _SESSION_ID_RE.match(session_id):
            return web.json_response({"error": "invalid_session_id"}, status=400)

        try:
            session = await self._registry.create_or_get(session_id)
        except ConnectionClientError:
            logger.exception("Could not open connection for %s", session_id)
            return web.json_response({"error": "connection_failed"}, status=502)
        except PersistenceFailure:
            logger.exception("Credential store unavailable for %s", session_id)
            return web.json_response({"error": "store_unavailable"}, status=503)

        if session.is_authenticated:
            return web.json_response({"status": "already_logged_in"})

        try:
            challenge = await session.wait_for_qr(self._config.qr_timeout_seconds)
        except TimeoutError:
            logger.warning(
                "No QR produced for %s within %.0fs",
                session_id,
                self._config.qr_timeout_seconds,
            )
            return web.json_response({"error": "qr_timeout"}, status=504)
        except ChallengeSuperseded:
            return web.json_response({"error": "qr_superseded"}, status=409)
        except SessionError:
            return web.json_response({"error": "session_closed"}, status=410)

        qr_png = await asyncio.to_thread(render_qr_data_url, challenge)
        return web.json_response({"status": "qr", "qr": qr_png})

    async def _handle_status(self, request: web.Request) -> web.Response:
        session = self._lookup(request)
        if session is None:
            return _not_found()
        summary = session.summary().to_dict()
        summary.update(
            {
                "state": str(session.state),
                "healthy": session.is_healthy(),
                "needsQr": not session.is_healthy(),
                "reconnectAttempts": session.supervisor.reconnect.attempts,
                "createdAt": session.created_at,
            }
        )
        return web.json_response(summary)

    async def _handle_chats(self, request: web.Request) -> web.Response:
        session = self._lookup(request)
        if session is None:
            return _not_found()
        return web.json_response(session.chats.list_chats())

    async def _handle_contact(self, request: web.Request) -> web.Response:
        session = self._lookup(request)
        if session is None:
            return _not_found()
        contact = await session.chats.lookup_contact(request.match_info["chat_id"])
        if contact is None:
            return web.json_response({"error": "Contact not found"}, status=404)
        return web.json_response(contact)

    async def _handle_delete(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        try:
            await self._registry.logout(session_id)
        except SessionNotFound:
            return _not_found()
        except PersistenceFailure:
            logger.exception("Failed to erase credentials for %s", session_id)
            return web.json_response({"error": "store_unavailable"}, status=503)
        return web.json_response({"status": "logged_out"})

    def _lookup(self, request: web.Request) -> Session | None:
        try:
            return self._registry.get(request.match_info["session_id"])
        except SessionNotFound:
            return None
