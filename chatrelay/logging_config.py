"""Process-wide logging setup for chatrelayd.

chatrelay's own loggers all live under ``chatrelay.*`` and follow
``log_level``. The transport, model-provider and database client libraries
log a lot at INFO, so they get their own threshold, ``log_rns_level``.
"""

from __future__ import annotations

import logging
from typing import Any

from .config import RelayRuntimeConfig
from .paths import ensure_parent_dir
from .util import expand_path

LIBRARY_LOGGERS = ("RNS", "openai", "httpx", "httpcore", "pymongo")

_FALLBACK_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_level(value: Any, default: int) -> int:
    """Level from a name ("warn" and "WARNING" both work), a number, or `default`."""
    if isinstance(value, int):
        return value
    text = str(value or "").strip().upper()
    if not text:
        return default
    if text == "WARN":
        text = "WARNING"
    named = logging.getLevelNamesMapping().get(text)
    if named is not None:
        return named
    return int(text) if text.isdigit() else default


def _optional(value: Any) -> str | None:
    s = "" if value is None else str(value).strip()
    return s or None


def _build_handlers(cfg: RelayRuntimeConfig, log_file: str | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    if log_file:
        path = ensure_parent_dir(expand_path(log_file))
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
        path.chmod(0o600)
    return handlers


def configure_logging(
    cfg: RelayRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install chatrelay's handlers on the root logger.

    Calling it again replaces the handlers from the previous call. An
    `override_file` of "" turns file logging off even if the config sets one.
    """
    log_file = _optional(cfg.log_file) if override_file is None else _optional(override_file)

    formatter = logging.Formatter(
        fmt=_optional(cfg.log_format) or _FALLBACK_FORMAT,
        datefmt=_optional(cfg.log_datefmt),
    )
    handlers = _build_handlers(cfg, log_file)
    for h in handlers:
        h.setFormatter(formatter)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)
    root.setLevel(parse_level(override_level or cfg.log_level, logging.INFO))

    library_level = parse_level(cfg.log_rns_level, logging.WARNING)
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logging.captureWarnings(True)
