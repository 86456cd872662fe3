"""Application configuration: pydantic models, config.json loading, env overrides."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_DEFAULT_HOME = "~/.padma"

# Environment variable -> dotted config path. Names follow the container deployment.
_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "PORT": ("server", "port"),
    "API_KEY": ("server", "api_key"),
    "DEVICE_NAME": ("connection", "device_name"),
    "REDIS_URL": ("redis", "url"),
    "LOG_LEVEL": ("log_level",),
    "CONNECTION_CLIENT": ("connection", "client"),
}


class ServerConfig(BaseModel):
    """Settings for the HTTP API server."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3000
    api_key: str = ""
    qr_timeout_seconds: float = 60.0
    max_body_bytes: int = 65536


class RedisConfig(BaseModel):
    """Settings for the durable key/value store."""

    url: str = "redis://localhost:6379/0"
    key_prefix: str = "padma:"


class ConnectionConfig(BaseModel):
    """Settings passed to the messaging connection client."""

    client: str = ""
    device_name: str = "PADMA"
    connect_timeout_ms: int = 20_000
    keepalive_interval_ms: int = 30_000
    max_retries: int = 5
    mark_online_on_connect: bool = False


class ReconnectConfig(BaseModel):
    """Exponential backoff for transient disconnects."""

    base_ms: int = 1000
    max_ms: int = 300_000
    jitter_ms: int = 1000


class AppConfig(BaseModel):
    """Top-level configuration loaded from config.json."""

    log_level: str = "INFO"
    padma_home: str = _DEFAULT_HOME
    cache_snapshot_interval_seconds: float = 10.0
    server: ServerConfig = Field(default_factory=ServerConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)

    @property
    def home(self) -> Path:
        return Path(self.padma_home).expanduser()

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"


def resolve_home() -> Path:
    """Return the data directory: ``$PADMA_HOME`` or ``~/.padma``."""
    return Path(os.environ.get("PADMA_HOME", _DEFAULT_HOME)).expanduser()


def deep_merge_config(
    user: dict[str, object],
    defaults: dict[str, object],
) -> tuple[dict[str, object], bool]:
    """Recursively merge *defaults* into *user*, preserving user values.

    Returns ``(merged_dict, changed)`` where *changed* is True when new keys were added.
    """
    result: dict[str, object] = dict(user)
    changed = False
    new_keys = 0
    for key, default_val in defaults.items():
        if key not in result:
            result[key] = default_val
            changed = True
            new_keys += 1
        elif isinstance(default_val, dict) and isinstance(result[key], dict):
            sub_merged, sub_changed = deep_merge_config(
                result[key],  # type: ignore[arg-type]
                default_val,
            )
            result[key] = sub_merged
            changed = changed or sub_changed
    if new_keys:
        logger.info("Config deep-merge: %d new keys added", new_keys)
    return result, changed


def apply_env_overrides(
    data: dict[str, object],
    environ: dict[str, str] | None = None,
) -> dict[str, object]:
    """Return a copy of *data* with values from the environment applied."""
    env = os.environ if environ is None else environ
    result: dict[str, object] = json.loads(json.dumps(data))
    for var, path in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        node = result
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[path[-1]] = value
        logger.debug("Config override from %s", var)
    return result


def load_config(
    config_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> AppConfig:
    """Load, auto-create, and smart-merge the service config.

    Resolution order:
    1. ``config_path`` or ``<PADMA_HOME>/config.json``
    2. Pydantic defaults written to that path on first start
    3. Environment overrides (``PORT``, ``API_KEY``, ``DEVICE_NAME``, ``REDIS_URL``, ...)

    The file is deep-merged with current defaults on every load so new fields
    are added without destroying user settings. Env overrides are never written back.
    """
    path = config_path or resolve_home() / "config.json"
    defaults = AppConfig().model_dump(mode="json")

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(defaults, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        logger.info("Created default config at %s", path)

    user_data: dict[str, object] = json.loads(path.read_text(encoding="utf-8"))
    merged, changed = deep_merge_config(user_data, defaults)
    if changed:
        path.write_text(json.dumps(merged, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        logger.info("Extended config with new default fields")

    return AppConfig.model_validate(apply_env_overrides(merged, environ))
