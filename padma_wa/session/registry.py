"""Session registry: the authoritative map from session id to live session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from padma_wa.errors import AuthRequired, PersistenceFailure, SessionError, SessionNotFound
from padma_wa.session.chat_store import CacheSnapshotter, ChatStore
from padma_wa.session.qr import QRBridge
from padma_wa.session.supervisor import ConnectionState, ConnectionSupervisor

if TYPE_CHECKING:
    from padma_wa.config import AppConfig
    from padma_wa.connection.types import ConnectionClient, ConnectionHandle, Identity
    from padma_wa.store.credentials import AuthState, CredentialStore

logger = logging.getLogger(__name__)

_ERASE_ATTEMPTS = 3
_ERASE_RETRY_DELAY = 0.2


@dataclass(frozen=True, slots=True)
class SessionSummary:
    """Point-in-time view of one session for listings."""

    id: str
    is_authenticated: bool
    identity: Identity | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "isLoggedIn": self.is_authenticated,
            "user": self.identity.to_dict() if self.identity else None,
        }


@dataclass(eq=False)
class Session:
    """One tenant's connection lifecycle."""

    id: str
    auth: AuthState
    supervisor: ConnectionSupervisor
    qr: QRBridge
    chats: ChatStore
    snapshotter: CacheSnapshotter
    created_at: float = field(default_factory=time.time)

    @property
    def handle(self) -> ConnectionHandle | None:
        return self.supervisor.handle

    @property
    def state(self) -> ConnectionState:
        return self.supervisor.state

    @property
    def identity(self) -> Identity | None:
        return self.supervisor.identity

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    def is_healthy(self) -> bool:
        """Identity present and the bound chat cache is responsive."""
        return self.is_authenticated and self.chats.is_responsive()

    def require_authenticated(self) -> Identity:
        identity = self.identity
        if identity is None:
            msg = f"Session '{self.id}' needs QR pairing"
            raise AuthRequired(msg)
        return identity

    def summary(self) -> SessionSummary:
        identity = self.identity
        return SessionSummary(id=self.id, is_authenticated=identity is not None, identity=identity)

    async def wait_for_qr(self, timeout: float | None = None) -> str:
        """Wait for the next QR challenge. Raises TimeoutError after *timeout* seconds."""
        waiter = self.qr.wait_for_challenge()
        try:
            return await asyncio.wait_for(waiter, timeout)
        finally:
            self.qr.discard(waiter)


def _consume_exception(future: asyncio.Future[Session]) -> None:
    if not future.cancelled():
        future.exception()


class SessionRegistry:
    """Creates, tracks and destroys sessions. At most one session per id.

    Concurrent ``create_or_get`` calls for the same id share one in-flight
    creation: one credential load, one ``open()``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: CredentialStore,
        client: ConnectionClient,
        config: AppConfig,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[int], int] = random.randrange,
    ) -> None:
        self._store = store
        self._client = client
        self._config = config
        self._clock = clock
        self._rng = rng
        self._sessions: dict[str, Session] = {}
        self._pending: dict[str, asyncio.Future[Session]] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    def __len__(self) -> int:
        return len(self._sessions)

    def contains(self, session_id: str) -> bool:
        return session_id in self._sessions

    def _is_tracked(self, session_id: str) -> bool:
        return session_id in self._sessions or session_id in self._pending

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def list(self) -> list[SessionSummary]:
        return [session.summary() for session in list(self._sessions.values())]

    async def create_or_get(self, session_id: str) -> Session:
        """Return the registered session, creating and connecting it on first use."""
        async with self._lock:
            if self._closed:
                msg = "Session registry is closed"
                raise SessionError(msg)
            existing = self._sessions.get(session_id)
            if existing is not None:
                return existing
            pending = self._pending.get(session_id)
            owner = pending is None
            if pending is None:
                pending = asyncio.get_running_loop().create_future()
                pending.add_done_callback(_consume_exception)
                self._pending[session_id] = pending

        if not owner:
            logger.debug("Joining in-flight creation of %s", session_id)
            return await asyncio.shield(pending)

        try:
            session = await self._build(session_id)
        except BaseException as exc:
            self._pending.pop(session_id, None)
            if isinstance(exc, Exception):
                pending.set_exception(exc)
            else:
                pending.cancel()
            raise

        async with self._lock:
            self._pending.pop(session_id, None)
            if self._closed:
                await self._teardown(session)
                msg = "Session registry closed during creation"
                pending.set_exception(SessionError(msg))
                raise SessionError(msg)
            self._sessions[session_id] = session
        pending.set_result(session)
        logger.info("Session registered: %s (total=%d)", session_id, len(self._sessions))
        return session

    async def _build(self, session_id: str) -> Session:
        auth = await self._store.load(session_id)
        qr = QRBridge(session_id)
        chats = ChatStore()
        try:
            cached = await self._store.load_cache(session_id)
        except PersistenceFailure:
            logger.warning("Chat cache unavailable for %s, starting empty", session_id)
            cached = None
        if cached:
            chats.restore(cached)

        supervisor = ConnectionSupervisor(
            session_id,
            client=self._client,
            auth=auth,
            store=self._store,
            qr=qr,
            chats=chats,
            connection_config=self._config.connection,
            reconnect_config=self._config.reconnect,
            on_logout=self._handle_remote_logout,
            is_registered=self._is_tracked,
            clock=self._clock,
            rng=self._rng,
        )
        snapshotter = CacheSnapshotter(
            session_id,
            chats,
            self._store,
            self._config.cache_snapshot_interval_seconds,
        )
        await supervisor.start()
        snapshotter.start()
        return Session(
            id=session_id,
            auth=auth,
            supervisor=supervisor,
            qr=qr,
            chats=chats,
            snapshotter=snapshotter,
        )

    async def delete(self, session_id: str) -> None:
        """Close the connection, unregister, and erase persisted credentials."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFound(session_id)
        await self._teardown(session)
        await self._erase(session_id)
        logger.info("Session deleted: %s (total=%d)", session_id, len(self._sessions))

    async def _erase(self, session_id: str) -> None:
        """Delete persisted credentials, retrying briefly. Leftovers would be restored on boot."""
        for attempt in range(1, _ERASE_ATTEMPTS + 1):
            try:
                await self._store.delete(session_id)
            except PersistenceFailure:
                if attempt == _ERASE_ATTEMPTS:
                    logger.error(
                        "Credentials of deleted session %s are still stored and will be "
                        "restored on next start; remove them with `padma forget %s`",
                        session_id,
                        session_id,
                    )
                    raise
                logger.warning(
                    "Erasing credentials of %s failed (attempt %d/%d), retrying",
                    session_id,
                    attempt,
                    _ERASE_ATTEMPTS,
                )
                await asyncio.sleep(_ERASE_RETRY_DELAY * attempt)
            else:
                return

    async def logout(self, session_id: str) -> None:
        """Unlink the device remotely (best-effort), then delete the session."""
        session = self.get(session_id)
        await session.supervisor.logout()
        with contextlib.suppress(SessionNotFound):
            await self.delete(session_id)

    async def close(self) -> None:
        """Process shutdown: stop every session, keep credentials for the next start."""
        async with self._lock:
            self._closed = True
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            try:
                await session.snapshotter.flush()
            except PersistenceFailure:
                logger.warning("Final chat cache snapshot failed for %s", session.id)
            await self._teardown(session)
        logger.info("Session registry closed (%d session(s) stopped)", len(sessions))

    async def _teardown(self, session: Session) -> None:
        await session.snapshotter.stop()
        await session.supervisor.stop()

    async def _handle_remote_logout(self, session_id: str) -> None:
        try:
            await self.delete(session_id)
        except SessionNotFound:
            logger.debug("Logged-out session %s already removed", session_id)
        except PersistenceFailure:
            logger.exception("Failed to erase credentials of logged-out session %s", session_id)
