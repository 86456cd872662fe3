"""Credential store: per-session secrets and protocol state in Redis hashes.

Layout (``prefix`` defaults to ``padma:``):

- ``<prefix><id>``        hash, field ``creds`` holds the credential blob,
                          fields ``<type>-<key>`` hold keyed material.
- ``<prefix><id>:cache``  string, chat store snapshot.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from padma_wa.errors import PersistenceFailure
from padma_wa.store import codec

logger = logging.getLogger(__name__)

CREDS_FIELD = "creds"
CACHE_SUFFIX = ":cache"


@contextlib.contextmanager
def _persistence_errors(operation: str, session_id: str) -> Iterator[None]:
    """Re-raise Redis failures as `PersistenceFailure`."""
    try:
        yield
    except RedisError as exc:
        msg = f"{operation} failed for session '{session_id}': {exc}"
        raise PersistenceFailure(msg) from exc


class SessionKeyStore:
    """Keyed material accessor scoped to one session (handed to the connection client)."""

    def __init__(self, store: CredentialStore, session_id: str) -> None:
        self._store = store
        self._session_id = session_id

    async def get(self, field_type: str, keys: list[str]) -> dict[str, Any]:
        return await self._store.get_fields(self._session_id, field_type, keys)

    async def set(self, updates: dict[str, dict[str, Any]]) -> None:
        await self._store.set_fields(self._session_id, updates)


@dataclass
class AuthState:
    """Credentials of one session, cached in memory while the session lives."""

    creds: dict[str, Any] = field(default_factory=dict)
    keys: SessionKeyStore | None = None

    @property
    def is_registered(self) -> bool:
        """True once pairing completed and the protocol stored an identity."""
        return bool(self.creds.get("me"))


@dataclass(slots=True)
class _WriteLock:
    """Per-id write lock; ``users`` counts the holder plus every waiter."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class CredentialStore:
    """Single source of truth for durable session state."""

    def __init__(self, client: redis.Redis, *, key_prefix: str = "padma:") -> None:
        self._redis = client
        self._prefix = key_prefix
        self._write_locks: dict[str, _WriteLock] = {}

    @classmethod
    def from_url(cls, url: str, *, key_prefix: str = "padma:") -> CredentialStore:
        return cls(redis.from_url(url, decode_responses=True), key_prefix=key_prefix)

    def auth_key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    def cache_key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}{CACHE_SUFFIX}"

    async def ping(self) -> bool:
        with _persistence_errors("ping", "-"):
            return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()

    # -- Credential blob --

    async def load(self, session_id: str) -> AuthState:
        """Return persisted credentials, or a fresh empty set for an unknown id."""
        with _persistence_errors("load", session_id):
            raw = await self._redis.hget(self.auth_key(session_id), CREDS_FIELD)
        creds: dict[str, Any] = {}
        if raw:
            try:
                creds = codec.decode(raw)
            except ValueError:
                logger.warning("Corrupt credential blob for %s, starting fresh", session_id)
                creds = {}
        logger.debug("Credentials loaded session=%s existing=%s", session_id, bool(raw))
        return AuthState(creds=creds, keys=SessionKeyStore(self, session_id))

    @contextlib.asynccontextmanager
    async def _write_lock(self, session_id: str) -> AsyncIterator[None]:
        """Serialize writes for one id (FIFO); the entry goes once nobody holds or awaits it."""
        entry = self._write_locks.get(session_id)
        if entry is None:
            entry = self._write_locks[session_id] = _WriteLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._write_locks[session_id]

    async def save(self, session_id: str, creds: dict[str, Any]) -> None:
        """Overwrite the credential blob. Writes for one id are applied in call order."""
        payload = codec.encode(creds)
        async with self._write_lock(session_id):
            with _persistence_errors("save", session_id):
                await self._redis.hset(self.auth_key(session_id), CREDS_FIELD, payload)
        logger.debug("Credentials saved session=%s", session_id)

    # -- Keyed material --

    async def get_fields(
        self,
        session_id: str,
        field_type: str,
        keys: list[str],
    ) -> dict[str, Any]:
        """Batched read of ``<field_type>-<key>`` fields. Missing keys map to None."""
        if not keys:
            return {}
        names = [f"{field_type}-{key}" for key in keys]
        with _persistence_errors("get_fields", session_id):
            values = await self._redis.hmget(self.auth_key(session_id), names)
        return {
            key: codec.decode(value) if value is not None else None
            for key, value in zip(keys, values, strict=True)
        }

    async def set_fields(self, session_id: str, updates: dict[str, dict[str, Any]]) -> None:
        """Apply ``{type: {key: value}}`` as one MULTI batch; a None value deletes the field."""
        auth_key = self.auth_key(session_id)
        ops = 0
        with _persistence_errors("set_fields", session_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                for field_type, entries in updates.items():
                    for key, value in entries.items():
                        name = f"{field_type}-{key}"
                        if value is None:
                            pipe.hdel(auth_key, name)
                        else:
                            pipe.hset(auth_key, name, codec.encode(value))
                        ops += 1
                if ops:
                    await pipe.execute()
        logger.debug("Keyed fields written session=%s ops=%d", session_id, ops)

    # -- Lifecycle --

    async def delete(self, session_id: str) -> None:
        """Remove the credential blob, every keyed field and the cache snapshot.

        Queued credential saves for *session_id* complete before the delete runs.
        """
        async with self._write_lock(session_id):
            with _persistence_errors("delete", session_id):
                await self._redis.delete(self.auth_key(session_id), self.cache_key(session_id))
        logger.info("Credentials deleted session=%s", session_id)

    async def list_session_ids(self) -> list[str]:
        """Ids that have a saved credential blob."""
        ids: list[str] = []
        with _persistence_errors("list", "*"):
            async for key in self._redis.scan_iter(match=f"{self._prefix}*"):
                name = key.decode() if isinstance(key, bytes) else key
                if name.endswith(CACHE_SUFFIX):
                    continue
                if await self._redis.hexists(name, CREDS_FIELD):
                    ids.append(name[len(self._prefix) :])
        return sorted(ids)

    # -- Secondary cache --

    async def load_cache(self, session_id: str) -> str | None:
        with _persistence_errors("load_cache", session_id):
            raw = await self._redis.get(self.cache_key(session_id))
        if isinstance(raw, bytes):
            return raw.decode("utf-8")
        return raw

    async def save_cache(self, session_id: str, payload: str) -> None:
        with _persistence_errors("save_cache", session_id):
            await self._redis.set(self.cache_key(session_id), payload)
