"""JSON codec for credential material.

Binary values (keys, signatures) are stored as ``{"type": "Buffer", "data": "<base64>"}``
so blobs written by other clients of the same Redis layout stay readable.
"""

from __future__ import annotations

import base64
import json
from typing import Any

_BUFFER_TYPE = "Buffer"


def _default(value: Any) -> Any:
    if isinstance(value, bytes | bytearray | memoryview):
        return {"type": _BUFFER_TYPE, "data": base64.b64encode(bytes(value)).decode("ascii")}
    msg = f"Object of type {type(value).__name__} is not JSON serializable"
    raise TypeError(msg)


def _object_hook(obj: dict[str, Any]) -> Any:
    if obj.get("type") == _BUFFER_TYPE and len(obj) == 2:
        data = obj.get("data")
        if isinstance(data, str):
            return base64.b64decode(data)
        if isinstance(data, list):
            return bytes(data)
    return obj


def encode(value: Any) -> str:
    """Serialize *value* to JSON, encoding bytes as Buffer objects."""
    return json.dumps(value, default=_default, separators=(",", ":"))


def decode(raw: str | bytes) -> Any:
    """Parse JSON produced by `encode` (or a compatible writer)."""
    return json.loads(raw, object_hook=_object_hook)
