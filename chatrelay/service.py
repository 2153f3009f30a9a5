from __future__ import annotations

import logging
import os
import signal
import threading
import time

import RNS

from .codec import encode
from .config import RelayRuntimeConfig
from .hub import RelayHub
from .transport import LinkTransport, fmt_link_id
from .util import expand_path
from .worker import SessionWorker


class RelayService:
    """Hosts a RelayHub on a Reticulum destination, one link per client."""

    def __init__(self, config: RelayRuntimeConfig, *, hub: RelayHub | None = None) -> None:
        self.config = config
        self.log = logging.getLogger("chatrelay.service")

        self.hub = hub if hub is not None else RelayHub(config)

        self._shutdown = threading.Event()
        self._workers_lock = threading.Lock()
        self._workers: dict[str, SessionWorker] = {}

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None
        self._announce_thread: threading.Thread | None = None

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="chatrelay-announce",
                daemon=True,
            )
            self._announce_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy store=%s context_mode=%s bot=%s history_replay=%s rate_limit_msgs_per_minute=%s",
            self.config.store_backend,
            self.config.context_mode,
            self.config.bot_enabled,
            self.config.history_replay_limit,
            self.config.rate_limit_msgs_per_minute,
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "chatrelay", "v": 1, "hub": self.config.hub_name})
            )
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if period <= 0:
                time.sleep(1.0)
                continue

            if self._shutdown.wait(period):
                break
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        with self._workers_lock:
            workers = list(self._workers.values())
            self._workers.clear()
        for worker in workers:
            worker.close()

        self.hub.stop()

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _on_link(self, link: RNS.Link) -> None:
        session_id = fmt_link_id(link)
        self.hub.connect(session_id, LinkTransport(link))

        worker = SessionWorker(self.hub, session_id)
        with self._workers_lock:
            self._workers[session_id] = worker
        worker.start()

        link.set_packet_callback(lambda data, pkt: worker.put(data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(session_id))

        self.log.info("Link established link_id=%s", session_id)

    def _on_close(self, session_id: str) -> None:
        with self._workers_lock:
            worker = self._workers.pop(session_id, None)

        if worker is not None:
            worker.close()
        else:
            self.hub.disconnect(session_id)

        self.log.info("Link closed link_id=%s", session_id)
