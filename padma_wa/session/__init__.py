"""Session lifecycle: registry, connection supervision, QR pairing, restore on boot."""

from padma_wa.session.qr import QRBridge as QRBridge
from padma_wa.session.registry import Session as Session
from padma_wa.session.registry import SessionRegistry as SessionRegistry
from padma_wa.session.registry import SessionSummary as SessionSummary
from padma_wa.session.restorer import SessionRestorer as SessionRestorer
from padma_wa.session.supervisor import ConnectionState as ConnectionState
from padma_wa.session.supervisor import ConnectionSupervisor as ConnectionSupervisor

__all__ = [
    "ConnectionState",
    "ConnectionSupervisor",
    "QRBridge",
    "Session",
    "SessionRegistry",
    "SessionRestorer",
    "SessionSummary",
]
