"""Boundary to the messaging protocol client: handle/client protocols and event types."""

from padma_wa.connection.types import ConnectionClient as ConnectionClient
from padma_wa.connection.types import ConnectionEvent as ConnectionEvent
from padma_wa.connection.types import ConnectionHandle as ConnectionHandle
from padma_wa.connection.types import ConnectionOptions as ConnectionOptions
from padma_wa.connection.types import ConnectionUpdate as ConnectionUpdate
from padma_wa.connection.types import DisconnectReason as DisconnectReason
from padma_wa.connection.types import Identity as Identity

__all__ = [
    "ConnectionClient",
    "ConnectionEvent",
    "ConnectionHandle",
    "ConnectionOptions",
    "ConnectionUpdate",
    "DisconnectReason",
    "Identity",
]
