from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_all
from typing import TYPE_CHECKING

from .constants import CONTEXT_RETRIEVAL, FALLBACK_REPLY
from .errors import CompletionUnavailable, EmbeddingUnavailable

if TYPE_CHECKING:
    from .hub import RelayHub


class ResponderBridge:
    """
    Answers @bot queries.

    Context comes from the history store, either the most recent public
    messages (recency mode) or the messages nearest to the query embedding
    (retrieval mode). Any collaborator failure degrades: no context becomes an
    empty context, no completion becomes the fixed fallback reply.

    Queries run on a small worker pool and never touch the session registry
    lock. Each answer re-enters the router as a new public message from the
    bot identity.
    """

    def __init__(self, hub: RelayHub) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatrelay.responder")
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, int(hub.config.bot_workers)),
            thread_name_prefix="chatrelay-bot",
        )
        self._pending_lock = threading.Lock()
        self._pending: set[Future] = set()

    def build_context(self, query: str) -> str:
        cfg = self.hub.config
        if cfg.context_mode == CONTEXT_RETRIEVAL:
            try:
                vector = self.hub.completion.embed(query)
            except EmbeddingUnavailable as e:
                self.log.warning("Query embedding failed, using empty context err=%s", e)
                return ""
            records = self.hub.persistence.similar(vector, cfg.context_similar_k)
            return "\n".join(r.body for r in records)

        records = self.hub.persistence.recent(cfg.context_recent_limit)
        return "\n".join(f"{r.sender}: {r.body}" for r in records)

    def answer(self, query: str, context: str | None = None) -> str:
        if context is None:
            try:
                context = self.build_context(query)
            except Exception:
                self.log.exception("Context assembly failed, using empty context")
                context = ""
        try:
            return self.hub.completion.complete(query, context)
        except CompletionUnavailable as e:
            self.log.warning("Completion failed, sending fallback err=%s", e)
        except Exception:
            self.log.exception("Completion failed, sending fallback")
        self.hub.stats.inc("bot_fallbacks")
        return FALLBACK_REPLY

    def submit(self, query: str, *, asker: str | None = None) -> Future:
        fut = self._pool.submit(self._run, query, asker)
        with self._pending_lock:
            self._pending.add(fut)
        fut.add_done_callback(self._done)
        return fut

    def _run(self, query: str, asker: str | None) -> str:
        self.log.debug("Answering asker=%r chars=%s", asker, len(query))
        reply = self.answer(query)
        self.hub.router.publish(self.hub.config.bot_name, reply)
        self.hub.stats.inc("bot_replies")
        return reply

    def _done(self, fut: Future) -> None:
        with self._pending_lock:
            self._pending.discard(fut)
        if not fut.cancelled() and fut.exception() is not None:
            self.log.error("Bot reply failed", exc_info=fut.exception())

    def pending(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for every submitted query to be answered and published."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait_all(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=not wait)
