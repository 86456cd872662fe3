"""Types shared with the external messaging protocol client.

The client itself is not part of this package. Anything satisfying
`ConnectionClient` can be plugged in via ``connection.client`` in config.
Handles must invoke their callbacks on the event loop that opened them.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum, StrEnum, unique
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from padma_wa.store.credentials import AuthState


@unique
class ConnectionEvent(StrEnum):
    """Event names a handle emits through ``on()``."""

    CONNECTION_UPDATE = "connection.update"
    CREDS_UPDATE = "creds.update"
    ERROR = "error"
    CHATS_UPSERT = "chats.upsert"
    CHATS_UPDATE = "chats.update"
    CONTACTS_UPSERT = "contacts.upsert"


class DisconnectReason(IntEnum):
    """Protocol-defined close codes surfaced by the client."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    TIMED_OUT = 408  # same wire code as CONNECTION_LOST
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


@dataclass(frozen=True, slots=True)
class ConnectionUpdate:
    """Payload of a ``connection.update`` event.

    ``connection`` is ``"connecting"``, ``"open"``, ``"close"`` or None when
    the update only carries a QR challenge.
    """

    connection: str | None = None
    reason: int | None = None
    qr: str | None = None
    error: BaseException | None = None


@dataclass(frozen=True, slots=True)
class Identity:
    """Account the connection is authenticated as."""

    id: str
    name: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"id": self.id, "name": self.name}


@dataclass(slots=True)
class ConnectionOptions:
    """Everything the client needs to open one handle."""

    session_id: str
    auth: AuthState
    device_name: str = "PADMA"
    connect_timeout_ms: int = 20_000
    keepalive_interval_ms: int = 30_000
    max_retries: int = 5
    mark_online_on_connect: bool = False


class ConnectionHandle(Protocol):
    """One live protocol connection.

    The lookup coroutines query the remote side for one contact. Callers treat
    them as best-effort: any exception, including a missing method on a
    minimal client, leaves the corresponding field empty.
    """

    @property
    def user(self) -> Identity | None: ...

    def on(self, event: str, callback: Callable[[Any], None]) -> None: ...

    async def close(self) -> None: ...

    async def logout(self) -> None: ...

    async def profile_picture_url(self, jid: str) -> str | None: ...

    async def fetch_status(self, jid: str) -> dict[str, Any] | None:
        """``{"status": ..., "lastSeen": ...}`` or None when hidden."""
        ...

    async def business_profile(self, jid: str) -> dict[str, Any] | None: ...

    async def on_whatsapp(self, number: str) -> list[dict[str, Any]]:
        """One ``{"jid": ..., "exists": bool}`` entry per queried number."""
        ...


class ConnectionClient(Protocol):
    """Factory for connection handles."""

    async def open(self, options: ConnectionOptions) -> ConnectionHandle: ...
