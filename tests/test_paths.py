import logging
import stat
import tomllib

from chatrelay.cli import _write_default_config
from chatrelay.config import RelayRuntimeConfig
from chatrelay.logging_config import LIBRARY_LOGGERS, configure_logging, parse_level
from chatrelay.paths import (
    default_config_path,
    default_history_log_path,
    default_identity_path,
    ensure_parent_dir,
)


def test_state_paths_follow_home_override(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("CHATRELAY_HOME", str(tmp_path))

    assert default_config_path() == tmp_path / "chatrelay.toml"
    assert default_identity_path() == tmp_path / "hub_identity"
    assert default_history_log_path() == tmp_path / "chat.log.cbor"
    assert RelayRuntimeConfig().history_log_path == str(tmp_path / "chat.log.cbor")


def test_written_config_uses_the_same_history_default(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("CHATRELAY_HOME", str(tmp_path))
    config_path = tmp_path / "etc" / "chatrelay.toml"

    _write_default_config(str(config_path), str(tmp_path / "hub_identity"))

    data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    assert data["store"]["log_path"] == str(default_history_log_path())


def test_ensure_parent_dir_creates_private_directories(tmp_path) -> None:
    target = tmp_path / "a" / "b" / "chat.log.cbor"

    assert ensure_parent_dir(str(target)) == target
    assert target.parent.is_dir()
    assert stat.S_IMODE(target.parent.stat().st_mode) & 0o077 == 0
    assert not target.exists()

    # Bare file names need no directory.
    assert str(ensure_parent_dir("chat.log.cbor")) == "chat.log.cbor"


def test_parse_level() -> None:
    assert parse_level("warn", logging.INFO) == logging.WARNING
    assert parse_level("DEBUG", logging.INFO) == logging.DEBUG
    assert parse_level(" error ", logging.INFO) == logging.ERROR
    assert parse_level("15", logging.INFO) == 15
    assert parse_level(25, logging.INFO) == 25
    assert parse_level("chatty", logging.INFO) == logging.INFO
    assert parse_level(None, logging.WARNING) == logging.WARNING


def test_configure_logging_writes_private_file(tmp_path) -> None:
    log_file = tmp_path / "logs" / "chatrelay.log"
    cfg = RelayRuntimeConfig(log_console=False, log_level="DEBUG", log_rns_level="ERROR")
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    installed: list[logging.Handler] = []
    try:
        configure_logging(cfg, override_file=str(log_file))
        installed = list(root.handlers)
        logging.getLogger("chatrelay.test").debug("written")
        for h in root.handlers:
            h.flush()

        assert "written" in log_file.read_text(encoding="utf-8")
        assert stat.S_IMODE(log_file.stat().st_mode) == 0o600
        assert root.level == logging.DEBUG
        assert all(logging.getLogger(n).level == logging.ERROR for n in LIBRARY_LOGGERS)

        configure_logging(cfg, override_file="")
        assert root.handlers == []
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
        for h in installed:
            h.close()
        for h in saved_handlers:
            root.addHandler(h)
        root.setLevel(saved_level)
        for name in LIBRARY_LOGGERS:
            logging.getLogger(name).setLevel(logging.NOTSET)
        logging.captureWarnings(False)
