"""Installed package version."""

from __future__ import annotations

import importlib.metadata

_PACKAGE_NAME = "padma-wa"


def get_current_version() -> str:
    """Return the installed version of padma-wa."""
    try:
        return importlib.metadata.version(_PACKAGE_NAME)
    except importlib.metadata.PackageNotFoundError:
        return "0.0.0"
