from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace

import RNS
from tomlkit import comment, document, dumps, nl, table

from .config import ConfigManager, RelayRuntimeConfig
from .constants import CONTEXT_MODES, STORE_BACKENDS
from .logging_config import configure_logging
from .paths import default_config_path, default_identity_path, ensure_parent_dir
from .service import RelayService


def _default_config_text(identity_path: str, history_log_path: str) -> str:
    defaults = RelayRuntimeConfig()

    doc = document()
    doc.add(comment("chatrelay configuration (TOML)"))
    doc.add(comment(""))
    doc.add(comment("This file was created on first run."))
    doc.add(comment("Edit it, then start chatrelayd again."))
    doc.add(nl())

    hub = table()
    hub.add(comment("Optional: Reticulum configuration directory."))
    hub.add(comment("If left empty, Reticulum will choose its default (usually ~/.reticulum)."))
    hub.add("configdir", "")
    hub.add(nl())
    hub.add(comment("Where chatrelayd stores its persistent identity (Reticulum Identity file)."))
    hub.add("identity_path", identity_path)
    hub.add("dest_name", defaults.dest_name)
    hub.add(nl())
    hub.add(comment("Announcing: once on start, and every announce_period_s if > 0."))
    hub.add("announce_on_start", defaults.announce_on_start)
    hub.add("announce_period_s", defaults.announce_period_s)
    hub.add(nl())
    hub.add("hub_name", defaults.hub_name)
    hub.add(comment("Sent to each client right after its username is accepted."))
    hub.add("greeting", "")
    hub.add(nl())
    hub.add(comment("Usernames are claimed by the first message on a connection."))
    hub.add("username_max_chars", defaults.username_max_chars)
    hub.add("rate_limit_msgs_per_minute", defaults.rate_limit_msgs_per_minute)
    hub.add(comment("Recent public messages replayed to a newly registered client (0 disables)."))
    hub.add("history_replay_limit", defaults.history_replay_limit)
    hub.add(comment("strftime format for message timestamps (local time)."))
    hub.add("timestamp_format", defaults.timestamp_format)
    hub.add(nl())
    hub.add(comment("Delivery: each client has its own outbox of up to outbox_size messages."))
    hub.add(comment("A send that takes longer than send_timeout_s counts as a failure, and a"))
    hub.add(comment("client is dropped after max_send_failures consecutive failures (0 never)."))
    hub.add("send_timeout_s", defaults.send_timeout_s)
    hub.add("outbox_size", defaults.outbox_size)
    hub.add("max_send_failures", defaults.max_send_failures)
    doc.add("hub", hub)

    bot = table()
    bot.add(comment("Messages containing the marker are answered by the bot."))
    bot.add("enabled", defaults.bot_enabled)
    bot.add("marker", defaults.bot_marker)
    bot.add("name", defaults.bot_name)
    bot.add("workers", defaults.bot_workers)
    bot.add(nl())
    bot.add(comment(f"context_mode: one of {', '.join(CONTEXT_MODES)}."))
    bot.add(comment("recency sends the last context_recent_limit messages as context;"))
    bot.add(comment("retrieval embeds the question and sends the context_similar_k"))
    bot.add(comment("most similar stored messages (needs embeddings in the store)."))
    bot.add("context_mode", defaults.context_mode)
    bot.add("context_recent_limit", defaults.context_recent_limit)
    bot.add("context_similar_k", defaults.context_similar_k)
    bot.add("embed_messages", defaults.embed_messages)
    bot.add(nl())
    bot.add(comment("OpenAI-compatible API. Leave api_key empty to use OPENAI_API_KEY."))
    bot.add("api_key", "")
    bot.add("base_url", "")
    bot.add("completion_model", defaults.completion_model)
    bot.add("embedding_model", defaults.embedding_model)
    bot.add("timeout_s", defaults.completion_timeout_s)
    bot.add("system_prompt", defaults.system_prompt)
    doc.add("bot", bot)

    store = table()
    store.add(comment(f"backend: one of {', '.join(STORE_BACKENDS)}."))
    store.add(comment("memory keeps history for the life of the process; logfile appends"))
    store.add(comment("CBOR records to log_path; mongodb uses mongo_uri (or MONGODB_URI)."))
    store.add("backend", defaults.store_backend)
    store.add("log_path", history_log_path)
    store.add(comment("Seconds a history query may wait for the store before giving up."))
    store.add("query_timeout_s", defaults.store_query_timeout_s)
    store.add(comment("Appends allowed in flight before new records are dropped."))
    store.add("max_pending", defaults.store_max_pending)
    store.add("mongo_uri", "")
    store.add("mongo_db", defaults.mongo_db)
    store.add("mongo_collection", defaults.mongo_collection)
    store.add(comment("Atlas vector search index over the 'embedding' field."))
    store.add("mongo_vector_index", defaults.mongo_vector_index)
    store.add("mongo_num_candidates", defaults.mongo_num_candidates)
    store.add("mongo_timeout_ms", defaults.mongo_timeout_ms)
    doc.add("store", store)

    logging_table = table()
    logging_table.add(comment("Log level for chatrelay itself."))
    logging_table.add("level", defaults.log_level)
    logging_table.add(comment("Log level for RNS, openai and pymongo library loggers."))
    logging_table.add("rns_level", defaults.log_rns_level)
    logging_table.add(comment("Log to stderr (systemd/journald friendly)."))
    logging_table.add("console", defaults.log_console)
    logging_table.add(comment("Optional file path for logs (leave empty to disable)."))
    logging_table.add("file", "")
    logging_table.add("format", defaults.log_format)
    logging_table.add("datefmt", "")
    doc.add("logging", logging_table)

    return dumps(doc)


def _write_default_config(config_path: str, identity_path: str) -> None:
    history_log_path = RelayRuntimeConfig().history_log_path or ""
    with open(ensure_parent_dir(config_path), "w", encoding="utf-8") as f:
        f.write(_default_config_text(identity_path, history_log_path))


def _ensure_first_run_files(config_path: str, identity_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path)
        created_any = True

    if not os.path.exists(identity_path):
        ident = RNS.Identity()
        ident.to_file(str(ensure_parent_dir(identity_path)))
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="chatrelayd", description="Run a chat relay hub with an @bot responder"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: chatrelay.hub)"
    )
    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name in announces")
    p.add_argument(
        "--greeting", default=None, help="Text sent to each client after registration"
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-connection message rate limit (0 disables)",
    )
    p.add_argument(
        "--history-replay",
        type=int,
        default=None,
        help="Recent messages replayed to new clients (0 disables)",
    )
    p.add_argument(
        "--store",
        choices=STORE_BACKENDS,
        default=None,
        help="History store backend",
    )
    p.add_argument("--history-log", default=None, help="History log path (logfile store)")
    p.add_argument("--mongo-uri", default=None, help="MongoDB URI (mongodb store)")
    p.add_argument(
        "--context-mode",
        choices=CONTEXT_MODES,
        default=None,
        help="How the bot gathers conversation context",
    )
    p.add_argument("--no-bot", action="store_true", help="Disable the @bot responder")
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> RelayRuntimeConfig:
    config_path = str(args.config)

    cfg = RelayRuntimeConfig(configdir=args.configdir, identity_path=str(args.identity))
    cfg = replace(cfg, config_path=config_path)

    if config_path and os.path.exists(config_path):
        cfg = ConfigManager().load(cfg, config_path)

    # An explicit --configdir wins over the file.
    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)

    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)
    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)
    if args.greeting is not None:
        cfg = replace(cfg, greeting=args.greeting or None)
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute))
    if args.history_replay is not None:
        cfg = replace(cfg, history_replay_limit=int(args.history_replay))
    if args.store is not None:
        cfg = replace(cfg, store_backend=args.store)
    if args.history_log is not None:
        cfg = replace(cfg, history_log_path=args.history_log or None)
    if args.mongo_uri is not None:
        cfg = replace(cfg, mongo_uri=args.mongo_uri or None)
    if args.context_mode is not None:
        cfg = replace(cfg, context_mode=args.context_mode)
    if args.no_bot:
        cfg = replace(cfg, bot_enabled=False)
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)

    if _ensure_first_run_files(config_path, identity_path):
        print(
            "Created default chatrelay files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run chatrelayd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = RelayService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
