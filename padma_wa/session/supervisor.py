"""Connection supervisor: one handle per session, reconnection state machine, backoff.

States::

    CONNECTING -> AWAITING_AUTH -> CONNECTED -> CLOSED
         ^                             |
         +-------- RECONNECTING <------+

Close events are routed through ``_CLOSE_ACTIONS``. Hooks run synchronously on
the event loop and only update state; I/O (saving credentials, opening a
replacement handle, deleting a logged-out session) runs in background tasks.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import random
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from enum import StrEnum, unique
from typing import TYPE_CHECKING, Any

from padma_wa.connection.types import (
    ConnectionEvent,
    ConnectionOptions,
    ConnectionUpdate,
    DisconnectReason,
    Identity,
)
from padma_wa.errors import ConnectionClientError, PersistenceFailure
from padma_wa.log_context import set_log_context

if TYPE_CHECKING:
    from padma_wa.config import ConnectionConfig, ReconnectConfig
    from padma_wa.connection.types import ConnectionClient, ConnectionHandle
    from padma_wa.session.chat_store import ChatStore
    from padma_wa.session.qr import QRBridge
    from padma_wa.store.credentials import AuthState, CredentialStore

logger = logging.getLogger(__name__)

LogoutCallback = Callable[[str], Awaitable[None]]
RegisteredCheck = Callable[[str], bool]

# 2**20 seconds is far beyond any sane cap; keeps the shift bounded.
_MAX_EXPONENT = 20


@unique
class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    AWAITING_AUTH = "awaiting_auth"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@unique
class CloseAction(StrEnum):
    RESTART = "restart"
    LOGOUT = "logout"
    RECONNECT = "reconnect"


_CLOSE_ACTIONS: dict[int, CloseAction] = {
    DisconnectReason.RESTART_REQUIRED: CloseAction.RESTART,
    DisconnectReason.LOGGED_OUT: CloseAction.LOGOUT,
    DisconnectReason.TIMED_OUT: CloseAction.RECONNECT,
    DisconnectReason.CONNECTION_LOST: CloseAction.RECONNECT,
    DisconnectReason.CONNECTION_CLOSED: CloseAction.RECONNECT,
    DisconnectReason.CONNECTION_REPLACED: CloseAction.RECONNECT,
}


@dataclass(slots=True)
class ReconnectState:
    """Consecutive-failure bookkeeping. ``last_attempt_at`` is monotonic seconds."""

    attempts: int = 0
    last_attempt_at: float | None = None
    backoff_ms: int = 0

    def reset(self) -> None:
        self.attempts = 0
        self.last_attempt_at = None
        self.backoff_ms = 0


def compute_backoff_ms(
    attempts: int,
    *,
    base_ms: int = 1000,
    max_ms: int = 300_000,
    jitter_ms: int = 1000,
    rng: Callable[[int], int] = random.randrange,
) -> int:
    """``min(base * 2**attempts, max) + jitter`` with jitter in ``[0, jitter_ms)``."""
    exponent = min(max(attempts, 0), _MAX_EXPONENT)
    delay = min(base_ms * (2**exponent), max_ms)
    if jitter_ms > 0:
        delay += rng(jitter_ms)
    return delay


def _log_task_crash(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Supervisor task %s crashed", task.get_name(), exc_info=exc)


class ConnectionSupervisor:
    """Owns the connection handle of one session and keeps it alive."""

    def __init__(  # noqa: PLR0913
        self,
        session_id: str,
        *,
        client: ConnectionClient,
        auth: AuthState,
        store: CredentialStore,
        qr: QRBridge,
        connection_config: ConnectionConfig,
        reconnect_config: ReconnectConfig,
        on_logout: LogoutCallback,
        is_registered: RegisteredCheck,
        chats: ChatStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[int], int] = random.randrange,
    ) -> None:
        self._session_id = session_id
        self._client = client
        self._auth = auth
        self._store = store
        self._qr = qr
        self._chats = chats
        self._conn_cfg = connection_config
        self._backoff_cfg = reconnect_config
        self._on_logout = on_logout
        self._is_registered = is_registered
        self._clock = clock
        self._rng = rng

        self._state = ConnectionState.CONNECTING
        self._handle: ConnectionHandle | None = None
        # Wired but not yet installed; its events count as current.
        self._pending_handle: ConnectionHandle | None = None
        self._stopped = False
        self._reconnect = ReconnectState()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._close_handlers: dict[CloseAction, Callable[[], None]] = {
            CloseAction.RESTART: self._restart,
            CloseAction.LOGOUT: self._logged_out,
            CloseAction.RECONNECT: self._schedule_reconnect,
        }

    # -- Introspection --

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def handle(self) -> ConnectionHandle | None:
        return self._handle

    @property
    def reconnect(self) -> ReconnectState:
        return self._reconnect

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def identity(self) -> Identity | None:
        return self._handle.user if self._handle is not None else None

    # -- Lifecycle --

    async def start(self) -> None:
        """Open the first handle. Raises `ConnectionClientError` if the client fails."""
        self._set_state(ConnectionState.CONNECTING, "start")
        handle = await self._open()
        self._install(handle)

    async def stop(self) -> None:
        """Cancel any pending reconnect and close the handle. Later events are ignored."""
        self._stopped = True
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._set_state(ConnectionState.CLOSED, "stopped")
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._close_quietly(handle)
        self._qr.close()

    async def logout(self) -> None:
        """Ask the remote side to unlink this device. Best-effort."""
        if self._handle is None:
            return
        try:
            await self._handle.logout()
        except Exception:
            logger.warning("Remote logout failed session=%s", self._session_id, exc_info=True)

    # -- Handle management --

    async def _open(self) -> ConnectionHandle:
        options = ConnectionOptions(
            session_id=self._session_id,
            auth=self._auth,
            device_name=self._conn_cfg.device_name,
            connect_timeout_ms=self._conn_cfg.connect_timeout_ms,
            keepalive_interval_ms=self._conn_cfg.keepalive_interval_ms,
            max_retries=self._conn_cfg.max_retries,
            mark_online_on_connect=self._conn_cfg.mark_online_on_connect,
        )
        try:
            handle = await self._client.open(options)
        except ConnectionClientError:
            raise
        except Exception as exc:
            msg = f"Opening connection for session '{self._session_id}' failed: {exc}"
            raise ConnectionClientError(msg) from exc
        self._pending_handle = handle
        self._wire(handle)
        return handle

    def _wire(self, handle: ConnectionHandle) -> None:
        handle.on(
            ConnectionEvent.CONNECTION_UPDATE,
            functools.partial(self._on_connection_update, handle),
        )
        handle.on(ConnectionEvent.CREDS_UPDATE, functools.partial(self._on_creds_update, handle))
        handle.on(ConnectionEvent.ERROR, functools.partial(self._on_error, handle))
        if self._chats is not None:
            self._chats.bind(handle)

    def _install(self, handle: ConnectionHandle) -> None:
        self._handle = handle
        self._pending_handle = None
        if self._state is ConnectionState.CONNECTED:
            return
        if self._auth.is_registered:
            self._set_state(ConnectionState.CONNECTING, "handle installed")
        else:
            self._set_state(ConnectionState.AWAITING_AUTH, "handle installed, not paired")

    async def _replace_handle(self) -> None:
        """Close the current handle, open a new one with the same credentials, install it."""
        old, self._handle = self._handle, None
        if old is not None:
            await self._close_quietly(old)
        self._set_state(ConnectionState.CONNECTING, "replacing handle")
        try:
            new = await self._open()
        except BaseException:
            self._handle = old
            raise
        if self._stopped or not self._is_registered(self._session_id):
            logger.info("Session %s gone while reconnecting, discarding handle", self._session_id)
            self._pending_handle = None
            await self._close_quietly(new)
            return
        self._install(new)
        logger.info("Connection handle replaced session=%s", self._session_id)

    async def _close_quietly(self, handle: ConnectionHandle) -> None:
        try:
            await handle.close()
        except Exception:
            logger.warning("Closing handle failed session=%s", self._session_id, exc_info=True)

    def _accepts(self, handle: ConnectionHandle) -> bool:
        if self._stopped:
            return False
        return handle is self._handle or handle is self._pending_handle

    # -- Event hooks --

    def _on_connection_update(self, handle: ConnectionHandle, update: ConnectionUpdate) -> None:
        if not self._accepts(handle):
            logger.debug("Ignoring update from stale handle session=%s", self._session_id)
            return
        if update.qr:
            self._qr.deliver_challenge(update.qr)
        if update.connection == "open":
            self._on_open()
        elif update.connection == "close":
            self._on_close(update.reason)

    def _on_open(self) -> None:
        self._reconnect.reset()
        self._set_state(ConnectionState.CONNECTED, "open")

    def _on_close(self, reason: int | None) -> None:
        action = _CLOSE_ACTIONS.get(reason) if reason is not None else None
        if action is None:
            logger.error(
                "Connection closed with unrecognized reason=%s session=%s, reconnecting",
                reason,
                self._session_id,
            )
            self._schedule_reconnect(recognized=False)
            return
        logger.warning(
            "Connection closed session=%s reason=%s action=%s",
            self._session_id,
            _reason_name(reason),
            action,
        )
        self._close_handlers[action]()

    def _on_creds_update(self, handle: ConnectionHandle, _payload: object = None) -> None:
        if not self._accepts(handle):
            logger.debug("Ignoring creds update from stale handle session=%s", self._session_id)
            return
        self._spawn(self._save_credentials(), "creds")

    def _on_error(self, handle: ConnectionHandle, error: object = None) -> None:
        logger.warning("Connection error session=%s: %s", self._session_id, error)

    # -- Close actions --

    def _restart(self) -> None:
        """Protocol asked for a fresh socket (usually right after pairing); not a failure."""
        pending, self._reconnect_task = self._reconnect_task, None
        if pending is not None and not pending.done():
            pending.cancel()
        self._set_state(ConnectionState.RECONNECTING, "restart required")
        self._spawn(self._restart_now(), "restart")

    async def _restart_now(self) -> None:
        try:
            await self._replace_handle()
        except ConnectionClientError:
            logger.exception("Restart failed session=%s, falling back to backoff", self._session_id)
            self._schedule_reconnect(retry=True)

    def _logged_out(self) -> None:
        self._set_state(ConnectionState.CLOSED, "logged out")
        self._spawn(self._on_logout(self._session_id), "logout")

    def _schedule_reconnect(self, recognized: bool = True, *, retry: bool = False) -> None:
        """Arm the backoff timer. ``retry`` skips the window check after a failed reopen."""
        if self.reconnect_pending:
            logger.debug("Reconnect already scheduled session=%s, skipping", self._session_id)
            return
        now = self._clock()
        state = self._reconnect
        if not retry and state.last_attempt_at is not None:
            elapsed_ms = (now - state.last_attempt_at) * 1000
            if elapsed_ms < state.backoff_ms:
                logger.debug(
                    "Within backoff window session=%s (%.0f/%dms), skipping",
                    self._session_id,
                    elapsed_ms,
                    state.backoff_ms,
                )
                return
        state.attempts += 1
        state.backoff_ms = compute_backoff_ms(
            state.attempts,
            base_ms=self._backoff_cfg.base_ms,
            max_ms=self._backoff_cfg.max_ms,
            jitter_ms=self._backoff_cfg.jitter_ms,
            rng=self._rng,
        )
        state.last_attempt_at = now
        self._set_state(ConnectionState.RECONNECTING, f"attempt {state.attempts}")
        logger.info(
            "Reconnect scheduled session=%s attempt=%d in %dms",
            self._session_id,
            state.attempts,
            state.backoff_ms,
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(state.backoff_ms / 1000, recognized),
            name=f"reconnect:{self._session_id}",
        )
        self._reconnect_task.add_done_callback(_log_task_crash)

    async def _reconnect_after(self, delay: float, recognized: bool) -> None:
        set_log_context(operation="conn", session_id=self._session_id)
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self._stopped or not self._is_registered(self._session_id):
            logger.debug("Stale reconnect timer for %s, ignoring", self._session_id)
            return
        try:
            await self._replace_handle()
        except ConnectionClientError:
            if recognized:
                logger.warning("Reconnect failed session=%s, retrying", self._session_id)
                self._schedule_reconnect(retry=True)
                return
            logger.exception(
                "Reconnect after unrecognized close failed session=%s; "
                "leaving it registered with its closed handle",
                self._session_id,
            )
            self._set_state(ConnectionState.CLOSED, "reconnect failed")

    # -- Background I/O --

    async def _save_credentials(self) -> None:
        if self._stopped:
            return
        try:
            await self._store.save(self._session_id, self._auth.creds)
        except PersistenceFailure:
            logger.exception("Credential save failed session=%s", self._session_id)

    def _spawn(self, coro: Coroutine[Any, Any, None], label: str) -> None:
        async def _run() -> None:
            set_log_context(operation="conn", session_id=self._session_id)
            await coro

        task = asyncio.create_task(_run(), name=f"{label}:{self._session_id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_log_task_crash)

    def _set_state(self, state: ConnectionState, reason: str) -> None:
        previous = self._state
        self._state = state
        if previous is not state:
            logger.info(
                "Session %s state %s -> %s (%s)", self._session_id, previous, state, reason
            )


def _reason_name(reason: int) -> str:
    try:
        return DisconnectReason(reason).name.lower()
    except ValueError:
        return str(reason)
