"""Chat store: in-memory chat/contact metadata bound to a handle, snapshotted to Redis."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from padma_wa.connection.types import ConnectionEvent
from padma_wa.log_context import set_log_context

if TYPE_CHECKING:
    from padma_wa.connection.types import ConnectionHandle
    from padma_wa.store.credentials import CredentialStore

logger = logging.getLogger(__name__)

_CHAT_FIELDS = ("id", "name", "unreadCount", "conversationTimestamp")


class ChatStore:
    """Opaque cache of chat and contact metadata fed by handle events."""

    def __init__(self) -> None:
        self._chats: dict[str, dict[str, Any]] = {}
        self._contacts: dict[str, dict[str, Any]] = {}
        self._handle: ConnectionHandle | None = None
        self._revision = 0

    @property
    def revision(self) -> int:
        """Incremented on every change; used to skip unchanged snapshots."""
        return self._revision

    def bind(self, handle: ConnectionHandle) -> None:
        """Subscribe to *handle* events. Rebinding replaces the previous handle.

        Events still arriving from a previously bound handle are dropped.
        """
        self._handle = handle
        for event, apply in (
            (ConnectionEvent.CHATS_UPSERT, self._on_chats_upsert),
            (ConnectionEvent.CHATS_UPDATE, self._on_chats_update),
            (ConnectionEvent.CONTACTS_UPSERT, self._on_contacts_upsert),
        ):
            handle.on(event, functools.partial(self._dispatch, handle, apply))

    def _dispatch(
        self,
        handle: ConnectionHandle,
        apply: Callable[[list[dict[str, Any]]], None],
        payload: list[dict[str, Any]],
    ) -> None:
        if handle is not self._handle:
            logger.debug("Ignoring chat event from unbound handle")
            return
        apply(payload)

    def _on_chats_upsert(self, chats: list[dict[str, Any]]) -> None:
        for chat in chats:
            chat_id = chat.get("id")
            if chat_id:
                self._chats[chat_id] = dict(chat)
        self._revision += 1

    def _on_chats_update(self, updates: list[dict[str, Any]]) -> None:
        for update in updates:
            chat_id = update.get("id")
            if chat_id:
                self._chats.setdefault(chat_id, {"id": chat_id}).update(update)
        self._revision += 1

    def _on_contacts_upsert(self, contacts: list[dict[str, Any]]) -> None:
        for contact in contacts:
            contact_id = contact.get("id")
            if contact_id:
                self._contacts.setdefault(contact_id, {}).update(contact)
        self._revision += 1

    def list_chats(self) -> list[dict[str, Any]]:
        """Chats with basic metadata, most recent conversation first."""
        rows = [{k: chat.get(k) for k in _CHAT_FIELDS} for chat in self._chats.values()]
        rows.sort(key=lambda c: c.get("conversationTimestamp") or 0, reverse=True)
        return rows

    def get_contact(self, contact_id: str) -> dict[str, Any] | None:
        contact = self._contacts.get(contact_id)
        if contact is None:
            return None
        result = dict(contact)
        chat = self._chats.get(contact_id)
        if not result.get("name") and chat:
            result["name"] = chat.get("name")
        result.setdefault("pushname", contact.get("notify"))
        return result

    async def lookup_contact(self, contact_id: str) -> dict[str, Any] | None:
        """Cached contact enriched with live lookups on the bound handle.

        Each lookup is independent; one that fails is logged and its field
        is left as None.
        """
        result = self.get_contact(contact_id)
        if result is None:
            return None
        handle = self._handle
        picture, status, business, presence = await asyncio.gather(
            _ask(handle, "profile_picture_url", contact_id),
            _ask(handle, "fetch_status", contact_id),
            _ask(handle, "business_profile", contact_id),
            _ask(handle, "on_whatsapp", contact_id.split("@", 1)[0]),
        )
        result["pushname"] = result.get("pushname") or None
        result.setdefault("verifiedName", None)
        result.setdefault("shortName", None)
        if not result.get("profilePicThumbObj"):
            result["profilePicThumbObj"] = (
                {"eurl": picture, "url": picture, "tag": "0", "id": contact_id}
                if picture
                else None
            )
        result["status"] = status.get("status") if status else None
        result["lastSeen"] = status.get("lastSeen") if status else None
        result["businessProfile"] = business or None
        result["isOnWhatsApp"] = bool(presence[0].get("exists")) if presence else None
        return result

    def snapshot(self) -> str:
        return json.dumps({"chats": self._chats, "contacts": self._contacts})

    def restore(self, payload: str) -> None:
        """Load a snapshot written by `snapshot`. Malformed payloads are ignored."""
        try:
            data = json.loads(payload)
        except ValueError:
            logger.warning("Ignoring malformed chat cache snapshot")
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring chat cache snapshot with unexpected shape")
            return
        self._chats = dict(data.get("chats") or {})
        self._contacts = dict(data.get("contacts") or {})
        logger.debug("Chat cache restored chats=%d contacts=%d", len(self._chats), len(self._contacts))

    def is_responsive(self) -> bool:
        """Best-effort health check: bound to a handle and serializable."""
        if self._handle is None:
            return False
        try:
            self.snapshot()
        except (TypeError, ValueError):
            logger.warning("Chat cache health check failed", exc_info=True)
            return False
        return True


async def _ask(handle: ConnectionHandle | None, method: str, target: str) -> Any:
    if handle is None:
        return None
    try:
        return await getattr(handle, method)(target)
    except Exception as exc:
        logger.info("Contact lookup %s failed for %s: %s", method, target, exc)
        return None


class CacheSnapshotter:
    """Writes a session's chat store to ``<id>:cache`` on a fixed interval.

    Runs independently of the credential path. Failures are logged and the
    loop continues.
    """

    def __init__(
        self,
        session_id: str,
        chats: ChatStore,
        store: CredentialStore,
        interval_seconds: float,
    ) -> None:
        self._session_id = session_id
        self._chats = chats
        self._store = store
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._written_revision = chats.revision

    def start(self) -> None:
        if self._interval <= 0 or self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(), name=f"snapshot:{self._session_id}")

    async def stop(self) -> None:
        if self._task:
            task = self._task
            self._task = None
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def flush(self) -> bool:
        """Write the snapshot if it changed. Returns True when a write happened."""
        revision = self._chats.revision
        if revision == self._written_revision:
            return False
        await self._store.save_cache(self._session_id, self._chats.snapshot())
        self._written_revision = revision
        return True

    async def _loop(self) -> None:
        set_log_context(operation="snap", session_id=self._session_id)
        try:
            while True:
                await asyncio.sleep(self._interval)
                try:
                    await self.flush()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Chat cache snapshot failed (continuing)")
        except asyncio.CancelledError:
            logger.debug("Snapshot loop cancelled")
