from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from .constants import (
    BOT_MARKER,
    BOT_NAME,
    CONTEXT_MODES,
    CONTEXT_RECENCY,
    DEFAULT_SYSTEM_PROMPT,
    STORE_BACKENDS,
    STORE_MEMORY,
    USERNAME_MAX_CHARS,
)
from .paths import default_history_log_path


def _history_log_default() -> str:
    return str(default_history_log_path())


@dataclass(frozen=True)
class RelayRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "chatrelay.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "chatrelay"
    greeting: str | None = None
    username_max_chars: int = USERNAME_MAX_CHARS
    rate_limit_msgs_per_minute: int = 240
    history_replay_limit: int = 20
    timestamp_format: str = "%H:%M:%S"
    send_timeout_s: float = 5.0
    outbox_size: int = 64
    max_send_failures: int = 3
    bot_enabled: bool = True
    bot_marker: str = BOT_MARKER
    bot_name: str = BOT_NAME
    bot_workers: int = 2
    context_mode: str = CONTEXT_RECENCY
    context_recent_limit: int = 20
    context_similar_k: int = 5
    embed_messages: bool = True
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    completion_model: str = "gpt-3.5-turbo"
    embedding_model: str = "text-embedding-ada-002"
    completion_timeout_s: float = 30.0
    store_backend: str = STORE_MEMORY
    history_log_path: str | None = field(default_factory=_history_log_default)
    store_query_timeout_s: float = 10.0
    store_max_pending: int = 1000
    mongo_uri: str | None = None
    mongo_db: str = "chatdb"
    mongo_collection: str = "messages"
    mongo_vector_index: str = "message_vector_index"
    mongo_num_candidates: int = 50
    mongo_timeout_ms: int = 5000
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


# Table name -> {file key: config field}. Keys not listed map to themselves.
_TABLE_KEYS: dict[str, dict[str, str]] = {
    "hub": {},
    "bot": {
        "enabled": "bot_enabled",
        "marker": "bot_marker",
        "name": "bot_name",
        "workers": "bot_workers",
        "api_key": "openai_api_key",
        "base_url": "openai_base_url",
        "timeout_s": "completion_timeout_s",
    },
    "store": {
        "backend": "store_backend",
        "log_path": "history_log_path",
        "query_timeout_s": "store_query_timeout_s",
        "max_pending": "store_max_pending",
    },
    "logging": {
        "level": "log_level",
        "rns_level": "log_rns_level",
        "console": "log_console",
        "file": "log_file",
        "format": "log_format",
        "datefmt": "log_datefmt",
    },
}

# Optional string settings where an empty string in TOML means "unset".
_EMPTY_IS_NONE = (
    "configdir",
    "greeting",
    "openai_api_key",
    "openai_base_url",
    "history_log_path",
    "mongo_uri",
    "log_file",
    "log_datefmt",
)


class ConfigManager:
    """Loads TOML config files and folds them into a RelayRuntimeConfig."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logging.getLogger("chatrelay.config")

    def load_toml(self, path: str) -> dict:
        import tomllib

        with open(path, "rb") as f:
            data = tomllib.load(f)
        return data if isinstance(data, dict) else {}

    def apply_config_data(
        self, base: RelayRuntimeConfig, data: dict
    ) -> RelayRuntimeConfig:
        flat: dict[str, Any] = {
            k: v for k, v in data.items() if not isinstance(v, dict)
        }
        for table_name, key_map in _TABLE_KEYS.items():
            table = data.get(table_name)
            if not isinstance(table, dict):
                continue
            for k, v in table.items():
                flat[key_map.get(k, k)] = v

        allowed = set(asdict(base).keys())
        # This identifies where the file came from; do not let the file override it.
        allowed.discard("config_path")

        updates = {k: v for k, v in flat.items() if k in allowed}
        unknown = sorted(
            k for k in flat if k not in allowed and k not in ("config_path", "announce")
        )
        if unknown:
            self.log.warning("Ignoring unknown config keys: %s", ", ".join(unknown))

        if "announce" in flat and "announce_on_start" not in updates:
            updates["announce_on_start"] = bool(flat["announce"])

        for key in _EMPTY_IS_NONE:
            if key in updates and updates[key] == "":
                updates[key] = None

        return replace(base, **updates) if updates else base

    def load(self, base: RelayRuntimeConfig, path: str) -> RelayRuntimeConfig:
        return self.apply_config_data(base, self.load_toml(path))


def validate_config(cfg: RelayRuntimeConfig) -> None:
    """Raise ValueError for settings the hub cannot start with."""
    if cfg.context_mode not in CONTEXT_MODES:
        raise ValueError(
            f"context_mode must be one of {', '.join(CONTEXT_MODES)}: {cfg.context_mode!r}"
        )
    if cfg.store_backend not in STORE_BACKENDS:
        raise ValueError(
            f"store_backend must be one of {', '.join(STORE_BACKENDS)}: {cfg.store_backend!r}"
        )
    if not str(cfg.bot_marker).strip():
        raise ValueError("bot_marker must not be empty")
    if cfg.outbox_size < 1:
        raise ValueError("outbox_size must be at least 1")
    if cfg.bot_workers < 1:
        raise ValueError("bot_workers must be at least 1")
    if cfg.send_timeout_s <= 0:
        raise ValueError("send_timeout_s must be positive")
    if cfg.store_query_timeout_s <= 0:
        raise ValueError("store_query_timeout_s must be positive")
    if cfg.store_max_pending < 1:
        raise ValueError("store_max_pending must be at least 1")
