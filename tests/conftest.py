"""Shared test fixtures: in-memory Redis double and a scripted connection client."""

from __future__ import annotations

import asyncio
import fnmatch
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from padma_wa.config import AppConfig, ReconnectConfig
from padma_wa.connection.types import ConnectionOptions, ConnectionUpdate, Identity
from padma_wa.session.registry import SessionRegistry
from padma_wa.store.credentials import CredentialStore

# ---------------------------------------------------------------------------
# Redis double
# ---------------------------------------------------------------------------


class FakePipeline:
    """Queues hash commands and applies them on ``execute()``."""

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple[Any, ...]]] = []

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc: object) -> None:
        self._ops.clear()

    def hset(self, key: str, field: str, value: str) -> FakePipeline:
        self._ops.append(("hset", (key, field, value)))
        return self

    def hdel(self, key: str, *fields: str) -> FakePipeline:
        self._ops.append(("hdel", (key, *fields)))
        return self

    async def execute(self) -> list[Any]:
        self._redis.check("execute")
        self._redis.executed_batches += 1
        results = []
        for name, args in self._ops:
            results.append(await getattr(self._redis, name)(*args))
        self._ops.clear()
        return results


class FakeRedis:
    """Subset of ``redis.asyncio.Redis`` (decode_responses=True) kept in dicts."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.strings: dict[str, str] = {}
        self.failing: set[str] = set()
        self.executed_batches = 0
        self.closed = False
        # Slow writes expose overlapping writers through ``max_active_writes``.
        self.write_delay = 0.0
        self.active_writes = 0
        self.max_active_writes = 0

    def check(self, command: str) -> None:
        if command in self.failing:
            msg = f"simulated failure in {command}"
            raise RedisConnectionError(msg)

    async def _track_write(self) -> None:
        self.active_writes += 1
        self.max_active_writes = max(self.max_active_writes, self.active_writes)
        try:
            if self.write_delay:
                await asyncio.sleep(self.write_delay)
        finally:
            self.active_writes -= 1

    async def ping(self) -> bool:
        self.check("ping")
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def hget(self, key: str, field: str) -> str | None:
        self.check("hget")
        return self.hashes.get(key, {}).get(field)

    async def hmget(self, key: str, fields: list[str]) -> list[str | None]:
        self.check("hmget")
        h = self.hashes.get(key, {})
        return [h.get(f) for f in fields]

    async def hset(self, key: str, field: str, value: str) -> int:
        self.check("hset")
        await self._track_write()
        h = self.hashes.setdefault(key, {})
        is_new = field not in h
        h[field] = value
        return int(is_new)

    async def hdel(self, key: str, *fields: str) -> int:
        self.check("hdel")
        h = self.hashes.get(key, {})
        removed = sum(1 for f in fields if h.pop(f, None) is not None)
        if key in self.hashes and not h:
            del self.hashes[key]
        return removed

    async def hexists(self, key: str, field: str) -> bool:
        self.check("hexists")
        return field in self.hashes.get(key, {})

    async def get(self, key: str) -> str | None:
        self.check("get")
        return self.strings.get(key)

    async def set(self, key: str, value: str) -> bool:
        self.check("set")
        self.strings[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        self.check("delete")
        await self._track_write()
        removed = 0
        for key in keys:
            if self.hashes.pop(key, None) is not None:
                removed += 1
            if self.strings.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: str = "*") -> AsyncIterator[str]:
        self.check("scan")
        for key in sorted({*self.hashes, *self.strings}):
            if fnmatch.fnmatchcase(key, match):
                yield key

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)


# ---------------------------------------------------------------------------
# Connection client double
# ---------------------------------------------------------------------------


class FakeHandle:
    """Scripted connection handle; tests drive it with ``emit``/``update``."""

    def __init__(self, options: ConnectionOptions, index: int) -> None:
        self.options = options
        self.index = index
        self.listeners: dict[str, list[Callable[[Any], None]]] = {}
        self.user: Identity | None = None
        self.closed = False
        self.logged_out = False
        self.fail_close = False
        # Scripted replies for the contact lookups; an exception value is raised.
        self.lookups: dict[str, Any] = {}

    def on(self, event: str, callback: Callable[[Any], None]) -> None:
        self.listeners.setdefault(str(event), []).append(callback)

    def emit(self, event: str, payload: Any = None) -> None:
        for callback in list(self.listeners.get(event, [])):
            callback(payload)

    def update(self, **kwargs: Any) -> None:
        self.emit("connection.update", ConnectionUpdate(**kwargs))

    def pair(self, user_id: str = "15550001111@s.whatsapp.net", name: str = "Tester") -> None:
        """Simulate a completed QR scan: identity appears and credentials change."""
        self.user = Identity(id=user_id, name=name)
        self.options.auth.creds["me"] = {"id": user_id, "name": name}
        self.emit("creds.update")

    async def close(self) -> None:
        self.closed = True
        if self.fail_close:
            msg = "socket already gone"
            raise OSError(msg)

    async def logout(self) -> None:
        self.logged_out = True

    def _reply(self, method: str, default: Any) -> Any:
        reply = self.lookups.get(method, default)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def profile_picture_url(self, jid: str) -> str | None:
        return self._reply("profile_picture_url", None)

    async def fetch_status(self, jid: str) -> dict[str, Any] | None:
        return self._reply("fetch_status", None)

    async def business_profile(self, jid: str) -> dict[str, Any] | None:
        return self._reply("business_profile", None)

    async def on_whatsapp(self, number: str) -> list[dict[str, Any]]:
        return self._reply("on_whatsapp", [])


class FakeClient:
    """Connection client that hands out `FakeHandle`s and records every open."""

    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []
        self.fail_next = 0
        self.gate: asyncio.Event | None = None
        self.restore_identity = True

    @property
    def open_calls(self) -> int:
        return len(self.handles)

    @property
    def last(self) -> FakeHandle:
        return self.handles[-1]

    def for_session(self, session_id: str) -> list[FakeHandle]:
        return [h for h in self.handles if h.options.session_id == session_id]

    async def open(self, options: ConnectionOptions) -> FakeHandle:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next > 0:
            self.fail_next -= 1
            msg = "network unreachable"
            raise OSError(msg)
        handle = FakeHandle(options, len(self.handles))
        me = options.auth.creds.get("me")
        if self.restore_identity and me:
            handle.user = Identity(id=me["id"], name=me.get("name"))
        self.handles.append(handle)
        return handle


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_padma_home(tmp_path: Path) -> Path:
    """Temporary ~/.padma equivalent."""
    home = tmp_path / ".padma"
    home.mkdir()
    return home


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store(fake_redis: FakeRedis) -> CredentialStore:
    return CredentialStore(fake_redis, key_prefix="padma:")  # type: ignore[arg-type]


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def config() -> AppConfig:
    """Fast reconnects (2ms first delay, no jitter) and no background snapshots."""
    return AppConfig(
        cache_snapshot_interval_seconds=0,
        reconnect=ReconnectConfig(base_ms=1, max_ms=50, jitter_ms=0),
    )


@pytest.fixture
async def registry(
    store: CredentialStore,
    client: FakeClient,
    config: AppConfig,
) -> AsyncIterator[SessionRegistry]:
    reg = SessionRegistry(store=store, client=client, config=config)  # type: ignore[arg-type]
    yield reg
    await reg.close()


async def settle(rounds: int = 5) -> None:
    """Let spawned background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def drain() -> Callable[..., Any]:
    return settle


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        async with asyncio.timeout(timeout):
            while not predicate():
                await asyncio.sleep(0.001)

    return _wait
