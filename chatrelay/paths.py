"""Where chatrelayd keeps its state.

Everything lives under one directory, ``~/.chatrelay`` unless
``CHATRELAY_HOME`` points elsewhere. The config, the identity and the history
log defaults are all derived from it here and nowhere else.
"""

from __future__ import annotations

import os
from pathlib import Path

HOME_ENV = "CHATRELAY_HOME"

CONFIG_FILENAME = "chatrelay.toml"
IDENTITY_FILENAME = "hub_identity"
HISTORY_LOG_FILENAME = "chat.log.cbor"


def default_chatrelay_dir() -> Path:
    override = os.environ.get(HOME_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".chatrelay"


def default_config_path() -> Path:
    return default_chatrelay_dir() / CONFIG_FILENAME


def default_identity_path() -> Path:
    return default_chatrelay_dir() / IDENTITY_FILENAME


def default_history_log_path() -> Path:
    return default_chatrelay_dir() / HISTORY_LOG_FILENAME


def ensure_private_dir(path: Path) -> Path:
    """Create `path` (owner-only) if missing. Existing directories are left as they are."""
    if not path.is_dir():
        path.mkdir(mode=0o700, parents=True, exist_ok=True)
    return path


def ensure_parent_dir(path: str | os.PathLike[str]) -> Path:
    """Create the private parent directory of a state file; return the file path."""
    p = Path(path)
    if p.parent != Path("."):
        ensure_private_dir(p.parent)
    return p
