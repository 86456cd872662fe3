"""Tests for the connection supervisor state machine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest

from padma_wa.config import ConnectionConfig, ReconnectConfig
from padma_wa.connection.types import DisconnectReason
from padma_wa.session.chat_store import ChatStore
from padma_wa.session.qr import QRBridge
from padma_wa.session.supervisor import (
    ConnectionState,
    ConnectionSupervisor,
    compute_backoff_ms,
)
from padma_wa.store.credentials import CredentialStore

_FAST = ReconnectConfig(base_ms=1, max_ms=50, jitter_ms=0)
_REAL = ReconnectConfig()


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _make(
    store: CredentialStore,
    client: Any,
    *,
    session_id: str = "s1",
    reconnect: ReconnectConfig = _FAST,
    registered: Callable[[str], bool] = lambda _sid: True,
    clock: Callable[[], float] | None = None,
    creds: dict[str, Any] | None = None,
    on_logout: AsyncMock | None = None,
) -> ConnectionSupervisor:
    if creds is not None:
        await store.save(session_id, creds)
    auth = await store.load(session_id)
    kwargs: dict[str, Any] = {}
    if clock is not None:
        kwargs["clock"] = clock
    sup = ConnectionSupervisor(
        session_id,
        client=client,
        auth=auth,
        store=store,
        qr=QRBridge(session_id),
        chats=ChatStore(),
        connection_config=ConnectionConfig(device_name="TEST"),
        reconnect_config=reconnect,
        on_logout=on_logout or AsyncMock(),
        is_registered=registered,
        rng=lambda _n: 0,
        **kwargs,
    )
    await sup.start()
    return sup


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    def test_first_attempt_is_two_seconds(self) -> None:
        assert compute_backoff_ms(1, rng=lambda _n: 0) == 2000

    def test_monotonic_until_cap(self) -> None:
        delays = [compute_backoff_ms(a, rng=lambda _n: 0) for a in range(0, 40)]
        assert delays == sorted(delays)
        assert max(delays) == 300_000
        assert compute_backoff_ms(8, rng=lambda _n: 0) == 256_000
        assert compute_backoff_ms(9, rng=lambda _n: 0) == 300_000

    def test_always_below_cap_plus_jitter(self) -> None:
        for attempts in range(0, 60):
            assert compute_backoff_ms(attempts) < 300_000 + 1000
            assert compute_backoff_ms(attempts, rng=lambda n: n - 1) < 300_000 + 1000

    def test_jitter_range(self) -> None:
        seen: list[int] = []

        def rng(n: int) -> int:
            seen.append(n)
            return n - 1

        assert compute_backoff_ms(1, rng=rng) == 2999
        assert seen == [1000]

    def test_zero_jitter_skips_rng(self) -> None:
        assert compute_backoff_ms(2, jitter_ms=0, rng=lambda _n: pytest.fail("rng called")) == 4000


# ---------------------------------------------------------------------------
# Start / open
# ---------------------------------------------------------------------------


class TestStart:
    async def test_start_opens_one_handle_with_credentials(
        self, store: CredentialStore, client: Any
    ) -> None:
        sup = await _make(store, client)
        assert client.open_calls == 1
        assert sup.handle is client.last
        assert client.last.options.device_name == "TEST"
        assert client.last.options.auth.keys is not None

    async def test_unpaired_session_awaits_auth(self, store: CredentialStore, client: Any) -> None:
        sup = await _make(store, client)
        assert sup.state is ConnectionState.AWAITING_AUTH

    async def test_paired_session_is_connecting(self, store: CredentialStore, client: Any) -> None:
        sup = await _make(store, client, creds={"me": {"id": "1@s"}})
        assert sup.state is ConnectionState.CONNECTING
        assert sup.identity is not None

    async def test_open_event_connects_and_resets(
        self, store: CredentialStore, client: Any
    ) -> None:
        sup = await _make(store, client)
        sup.reconnect.attempts = 3
        client.last.update(connection="open")
        assert sup.state is ConnectionState.CONNECTED
        assert sup.reconnect.attempts == 0

    async def test_open_failure_raises_client_error(
        self, store: CredentialStore, client: Any
    ) -> None:
        from padma_wa.errors import ConnectionClientError

        client.fail_next = 1
        with pytest.raises(ConnectionClientError, match="network unreachable"):
            await _make(store, client)


# ---------------------------------------------------------------------------
# Event hooks
# ---------------------------------------------------------------------------


class TestHooks:
    async def test_qr_forwarded_without_transition(
        self, store: CredentialStore, client: Any
    ) -> None:
        sup = await _make(store, client)
        waiter = sup._qr.wait_for_challenge()
        client.last.update(qr="2@abc")
        assert await waiter == "2@abc"
        assert sup.state is ConnectionState.AWAITING_AUTH

    async def test_creds_update_is_persisted(
        self, store: CredentialStore, client: Any, drain: Any
    ) -> None:
        await _make(store, client)
        client.last.pair(user_id="42@s")
        await drain()
        state = await store.load("s1")
        assert state.creds["me"]["id"] == "42@s"

    async def test_creds_save_failure_is_logged_not_raised(
        self,
        store: CredentialStore,
        client: Any,
        fake_redis: Any,
        drain: Any,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        sup = await _make(store, client)
        fake_redis.failing.add("hset")
        with caplog.at_level(logging.ERROR):
            client.last.pair()
            await drain()
        assert "Credential save failed" in caplog.text
        assert sup.state is ConnectionState.AWAITING_AUTH

    async def test_error_event_is_non_fatal(
        self, store: CredentialStore, client: Any, caplog: pytest.LogCaptureFixture
    ) -> None:
        sup = await _make(store, client)
        with caplog.at_level(logging.WARNING):
            client.last.emit("error", RuntimeError("decrypt failed"))
        assert "decrypt failed" in caplog.text
        assert client.last.closed is False
        assert sup.handle is client.last

    async def test_events_from_stale_handle_are_ignored(
        self, store: CredentialStore, client: Any, wait_until: Any
    ) -> None:
        sup = await _make(store, client)
        old = client.last
        old.update(connection="close", reason=DisconnectReason.RESTART_REQUIRED)
        await wait_until(lambda: client.open_calls == 2 and sup.handle is client.last)

        old.update(connection="close", reason=DisconnectReason.TIMED_OUT)
        assert sup.reconnect.attempts == 0
        assert sup.reconnect_pending is False

    async def test_late_close_from_old_handle_during_reopen_is_ignored(
        self, store: CredentialStore, client: Any, drain: Any, wait_until: Any
    ) -> None:
        sup = await _make(store, client)
        old = client.last
        client.gate = asyncio.Event()
        old.update(connection="close", reason=DisconnectReason.RESTART_REQUIRED)
        await drain()
        assert old.closed is True
        assert sup.handle is None

        # The closed socket reports its own close while the replacement is opening.
        old.update(connection="close", reason=DisconnectReason.CONNECTION_CLOSED)
        client.gate.set()
        await wait_until(lambda: client.open_calls == 2 and sup.handle is client.last)
        await asyncio.sleep(0.02)

        assert client.open_calls == 2
        assert sup.reconnect.attempts == 0
        assert sup.reconnect_pending is False
        assert client.last.closed is False

    async def test_creds_update_from_stale_handle_is_not_saved(
        self, store: CredentialStore, client: Any, drain: Any, wait_until: Any
    ) -> None:
        sup = await _make(store, client)
        old = client.last
        old.update(connection="close", reason=DisconnectReason.RESTART_REQUIRED)
        await wait_until(lambda: client.open_calls == 2 and sup.handle is client.last)

        save = AsyncMock()
        store.save = save  # type: ignore[method-assign]
        old.emit("creds.update")
        await drain()
        save.assert_not_awaited()

        client.last.emit("creds.update")
        await drain()
        save.assert_awaited_once()


# ---------------------------------------------------------------------------
# Close decision table
# ---------------------------------------------------------------------------


class TestRestartRequired:
    async def test_replaces_handle_without_counting_failure(
        self, store: CredentialStore, client: Any, wait_until: Any
    ) -> None:
        sup = await _make(store, client)
        first = client.last
        first.pair()
        first.update(connection="close", reason=DisconnectReason.RESTART_REQUIRED)

        await wait_until(lambda: sup.handle is not None and sup.handle is not first)
        assert first.closed is True
        assert client.open_calls == 2
        assert sup.reconnect.attempts == 0
        # Same credentials object is handed to the replacement.
        assert client.last.options.auth is first.options.auth
        assert sup.state is ConnectionState.CONNECTING

    async def test_old_handle_close_failure_is_tolerated(
        self, store: CredentialStore, client: Any, wait_until: Any
    ) -> None:
        sup = await _make(store, client)
        first = client.last
        first.fail_close = True
        first.update(connection="close", reason=DisconnectReason.RESTART_REQUIRED)
        await wait_until(lambda: client.open_calls == 2 and sup.handle is client.last)
        assert sup.handle is not first


class TestLoggedOut:
    async def test_triggers_logout_callback(
        self, store: CredentialStore, client: Any, drain: Any
    ) -> None:
        on_logout = AsyncMock()
        sup = await _make(store, client, on_logout=on_logout)
        client.last.update(connection="close", reason=DisconnectReason.LOGGED_OUT)
        await drain()
        on_logout.assert_awaited_once_with("s1")
        assert sup.state is ConnectionState.CLOSED
        assert client.open_calls == 1


class TestTransient:
    async def test_rapid_closes_schedule_single_reconnect(
        self, store: CredentialStore, client: Any
    ) -> None:
        clock = FakeClock()
        sup = await _make(store, client, reconnect=_REAL, clock=clock)
        for _ in range(3):
            client.last.update(connection="close", reason=DisconnectReason.TIMED_OUT)

        assert sup.reconnect.attempts == 1
        assert sup.reconnect.backoff_ms == 2000
        assert sup.reconnect.last_attempt_at == clock.now
        assert sup.reconnect_pending is True
        assert sup.state is ConnectionState.RECONNECTING
        assert client.open_calls == 1
        await sup.stop()

    async def test_reconnect_happens_after_backoff(
        self, store: CredentialStore, client: Any, wait_until: Any
    ) -> None:
        sup = await _make(store, client)
        first = client.last
        for _ in range(3):
            first.update(connection="close", reason=DisconnectReason.TIMED_OUT)

        await wait_until(lambda: client.open_calls == 2 and sup.handle is client.last)
        await asyncio.sleep(0.02)
        assert client.open_calls == 2
        assert first.closed is True

    async def test_consecutive_failures_grow_backoff_and_success_resets(
        self, store: CredentialStore, client: Any, wait_until: Any
    ) -> None:
        clock = FakeClock()
        sup = await _make(store, client, clock=clock)
        client.last.update(connection="close", reason=DisconnectReason.CONNECTION_LOST)
        await wait_until(lambda: client.open_calls == 2 and sup.handle is client.last)
        first_backoff = sup.reconnect.backoff_ms

        # Still inside the window on the injected clock: skipped.
        client.last.update(connection="close", reason=DisconnectReason.CONNECTION_CLOSED)
        assert sup.reconnect.attempts == 1

        clock.advance(1.0)
        client.last.update(connection="close", reason=DisconnectReason.CONNECTION_REPLACED)
        assert sup.reconnect.attempts == 2
        assert sup.reconnect.backoff_ms >= first_backoff
        await wait_until(lambda: client.open_calls == 3 and sup.handle is client.last)

        client.last.update(connection="open")
        assert sup.reconnect.attempts == 0
        assert sup.state is ConnectionState.CONNECTED

    async def test_failed_reopen_retries(
        self, store: CredentialStore, client: Any, wait_until: Any
    ) -> None:
        sup = await _make(store, client)
        client.fail_next = 1
        client.last.update(connection="close", reason=DisconnectReason.TIMED_OUT)
        await wait_until(lambda: client.open_calls == 2 and sup.handle is client.last)
        assert sup.reconnect.attempts == 2

    async def test_stale_timer_is_noop_when_unregistered(
        self, store: CredentialStore, client: Any
    ) -> None:
        registered = {"s1": True}
        sup = await _make(store, client, registered=lambda sid: registered.get(sid, False))
        client.last.update(connection="close", reason=DisconnectReason.TIMED_OUT)
        registered["s1"] = False
        await asyncio.sleep(0.02)
        assert client.open_calls == 1

    async def test_stop_cancels_pending_reconnect(
        self, store: CredentialStore, client: Any
    ) -> None:
        sup = await _make(store, client, reconnect=_REAL)
        handle = client.last
        handle.update(connection="close", reason=DisconnectReason.TIMED_OUT)
        assert sup.reconnect_pending is True

        await sup.stop()
        assert sup.reconnect_pending is False
        assert sup.state is ConnectionState.CLOSED
        assert handle.closed is True

        handle.update(connection="close", reason=DisconnectReason.TIMED_OUT)
        assert sup.reconnect_pending is False


class TestUnrecognizedReason:
    async def test_logged_at_error_and_reconnects(
        self,
        store: CredentialStore,
        client: Any,
        wait_until: Any,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        sup = await _make(store, client)
        with caplog.at_level(logging.ERROR):
            client.last.update(connection="close", reason=499)
        assert any(r.levelno == logging.ERROR and "unrecognized" in r.message for r in caplog.records)
        await wait_until(lambda: client.open_calls == 2 and sup.handle is client.last)

    async def test_failed_reconnect_keeps_closed_handle(
        self, store: CredentialStore, client: Any, drain: Any
    ) -> None:
        on_logout = AsyncMock()
        sup = await _make(store, client, on_logout=on_logout)
        original = client.last
        client.fail_next = 1
        original.update(connection="close", reason=None)
        await asyncio.sleep(0.02)
        await drain()

        assert sup.handle is original
        assert original.closed is True
        assert sup.state is ConnectionState.CLOSED
        assert sup.reconnect_pending is False
        on_logout.assert_not_awaited()
