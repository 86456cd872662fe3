"""Connection client factory -- resolves ``connection.client`` from config."""

from __future__ import annotations

import importlib
import logging
from typing import Any

from padma_wa.connection.types import ConnectionClient
from padma_wa.errors import ConnectionClientError

logger = logging.getLogger(__name__)


def load_client(path: str) -> ConnectionClient:
    """Import ``"package.module:attribute"`` and return a client instance.

    The attribute may be a client object (anything with an ``open`` coroutine)
    or a zero-argument factory returning one.
    """
    module_name, sep, attr = path.partition(":")
    if not module_name or not sep or not attr:
        msg = f"Connection client must be 'module:attribute', got {path!r}"
        raise ConnectionClientError(msg)

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        msg = f"Cannot import connection client module {module_name!r}: {exc}"
        raise ConnectionClientError(msg) from exc

    target: Any = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            msg = f"{module_name!r} has no attribute {attr!r}"
            raise ConnectionClientError(msg) from exc

    client = target if hasattr(target, "open") and not isinstance(target, type) else target()
    if not callable(getattr(client, "open", None)):
        msg = f"{path!r} did not produce an object with an open() method"
        raise ConnectionClientError(msg)

    logger.info("Connection client loaded: %s", path)
    return client
