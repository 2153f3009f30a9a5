from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .broadcast import BroadcastEngine
from .completion import CompletionClient, OpenAICompletionClient
from .config import RelayRuntimeConfig, validate_config
from .constants import CONTEXT_RETRIEVAL
from .persistence import HistoryStore, PersistenceBridge, build_store
from .responder import ResponderBridge
from .router import MessageRouter
from .session import Session, SessionRegistry
from .stats import StatsManager

if TYPE_CHECKING:
    from .envelope import Envelope
    from .transport import Transport


def build_completion_client(cfg: RelayRuntimeConfig) -> CompletionClient:
    return OpenAICompletionClient(
        api_key=cfg.openai_api_key,
        model=cfg.completion_model,
        embedding_model=cfg.embedding_model,
        system_prompt=cfg.system_prompt,
        base_url=cfg.openai_base_url,
        timeout=cfg.completion_timeout_s,
    )


class RelayHub:
    """
    The transport-independent core of the relay.

    Owns the session registry and wires the router, broadcast engine,
    responder and persistence bridge together. Transports call
    `connect`, `receive` and `disconnect`; everything else is internal.
    """

    def __init__(
        self,
        config: RelayRuntimeConfig,
        *,
        store: HistoryStore | None = None,
        completion: CompletionClient | None = None,
    ) -> None:
        validate_config(config)
        self.config = config
        self.log = logging.getLogger("chatrelay.hub")

        self.stats = StatsManager(self)

        self.registry = SessionRegistry(
            username_max_chars=config.username_max_chars,
            rate_limit_msgs_per_minute=config.rate_limit_msgs_per_minute,
            reserved_names=(config.bot_name, config.bot_marker),
        )

        self.completion = completion if completion is not None else build_completion_client(config)

        embedder = None
        if config.context_mode == CONTEXT_RETRIEVAL and config.embed_messages:
            embedder = self.completion.embed
        self.persistence = PersistenceBridge(
            store if store is not None else build_store(config),
            embedder=embedder,
            stats=self.stats,
            query_timeout_s=config.store_query_timeout_s,
            max_pending=config.store_max_pending,
        )

        self.broadcast = BroadcastEngine(self)
        self.router = MessageRouter(self)
        self.responder = ResponderBridge(self)

        self.stats.set_start_time()

    def connect(self, session_id: str, transport: Transport) -> Session:
        self.stats.inc("sessions_connected")
        return self.registry.attach(session_id, transport)

    def receive(self, session_id: str, payload: str | bytes) -> Envelope | None:
        return self.router.route(session_id, payload)

    def disconnect(self, session_id: str) -> None:
        sess = self.registry.unregister(session_id)
        if sess is None:
            return
        self.broadcast.release(sess)
        self.log.info("Session closed username=%r session=%s", sess.username, session_id)

    def drop_session(self, sess: Session, *, reason: str) -> None:
        """Destroy a session the hub can no longer deliver to."""
        if not self.registry.is_active(sess):
            return
        if self.registry.unregister(sess.id) is None:
            return
        self.broadcast.release(sess)
        self.stats.inc("sessions_dropped")
        self.log.warning(
            "Dropping session username=%r session=%s reason=%s",
            sess.username,
            sess.id,
            reason,
        )
        sess.transport.close()

    def stop(self) -> None:
        self.responder.shutdown(wait=True)
        self.persistence.shutdown()
        sessions = self.registry.clear_all()
        self.broadcast.shutdown()

        for sess in sessions:
            try:
                sess.transport.close()
            except Exception:
                self.log.debug("Transport close failed session=%s", sess.id, exc_info=True)

        self.log.info("Hub stopped\n%s", self.stats.format_stats())
