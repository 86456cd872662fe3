"""HTTP API: aiohttp server exposing session management."""

from padma_wa.api.server import ApiServer as ApiServer

__all__ = ["ApiServer"]
