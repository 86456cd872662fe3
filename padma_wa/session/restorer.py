"""Session restorer: recreate every persisted session at process start."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from padma_wa.log_context import set_log_context

if TYPE_CHECKING:
    from padma_wa.session.registry import SessionRegistry
    from padma_wa.store.credentials import CredentialStore

logger = logging.getLogger(__name__)


class SessionRestorer:
    """Reconnects sessions whose credentials survived a restart."""

    def __init__(self, store: CredentialStore, registry: SessionRegistry) -> None:
        self._store = store
        self._registry = registry

    async def restore_all(self) -> list[str]:
        """Create a session for every id with a saved credential blob.

        A failing id is logged and skipped. Returns the ids that were restored.
        """
        set_log_context(operation="boot")
        session_ids = await self._store.list_session_ids()
        if not session_ids:
            logger.info("No persisted sessions to restore")
            return []

        restored: list[str] = []
        for session_id in session_ids:
            try:
                await self._registry.create_or_get(session_id)
            except Exception:
                logger.exception("Failed to restore session %s", session_id)
                continue
            restored.append(session_id)

        logger.info("Restored %d/%d session(s)", len(restored), len(session_ids))
        return restored
