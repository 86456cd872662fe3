"""QR bridge: single-slot mailbox between a handle's challenge events and one waiting caller."""

from __future__ import annotations

import asyncio
import logging
import threading

from padma_wa.errors import ChallengeSuperseded, SessionError

logger = logging.getLogger(__name__)


class QRBridge:
    """Holds at most one waiter for the next QR challenge of a session.

    Latest registration wins: a new ``wait_for_challenge()`` fails the previous
    waiter with `ChallengeSuperseded`. A challenge delivered while nobody waits
    is dropped.
    """

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._slot_lock = threading.Lock()
        self._waiter: asyncio.Future[str] | None = None

    @property
    def has_waiter(self) -> bool:
        with self._slot_lock:
            return self._waiter is not None and not self._waiter.done()

    def wait_for_challenge(self) -> asyncio.Future[str]:
        """Register as the waiter for the next challenge and return its future."""
        waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        with self._slot_lock:
            previous, self._waiter = self._waiter, waiter
        if previous is not None and not previous.done():
            _resolve(previous, exc=ChallengeSuperseded("A newer QR request replaced this one"))
            logger.debug("QR waiter replaced session=%s", self._session_id)
        return waiter

    def deliver_challenge(self, value: str) -> bool:
        """Resolve the current waiter with *value*. Returns False when nobody was waiting."""
        with self._slot_lock:
            waiter, self._waiter = self._waiter, None
        if waiter is None or waiter.done():
            logger.debug("QR challenge dropped, no waiter session=%s", self._session_id)
            return False
        _resolve(waiter, value=value)
        logger.debug("QR challenge delivered session=%s", self._session_id)
        return True

    def discard(self, waiter: asyncio.Future[str]) -> None:
        """Clear the slot if it still holds *waiter* (caller gave up)."""
        with self._slot_lock:
            if self._waiter is waiter:
                self._waiter = None

    def close(self) -> None:
        """Fail any pending waiter; the session was torn down."""
        with self._slot_lock:
            waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.done():
            _resolve(waiter, exc=SessionError(f"Session '{self._session_id}' closed"))


def _resolve(
    waiter: asyncio.Future[str],
    *,
    value: str | None = None,
    exc: BaseException | None = None,
) -> None:
    """Complete *waiter* on its own loop, marshalling across threads when needed."""

    def _apply() -> None:
        if waiter.done():
            return
        if exc is not None:
            waiter.set_exception(exc)
        else:
            waiter.set_result(value or "")

    loop = waiter.get_loop()
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        _apply()
    else:
        loop.call_soon_threadsafe(_apply)
