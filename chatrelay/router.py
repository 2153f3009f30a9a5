from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .constants import KIND_BOT_QUERY, KIND_PRIVATE
from .envelope import (
    Envelope,
    classify,
    now_s,
    render_line,
    render_not_found,
    render_private,
    render_private_echo,
    render_public,
)
from .errors import DuplicateUsername, InvalidUsername, MalformedDirective, RegistryError
from .util import emojify, preview

if TYPE_CHECKING:
    from .broadcast import Outgoing
    from .hub import RelayHub
    from .session import Session


class MessageRouter:
    """
    Handles message routing and dispatching for the chatrelay hub.

    This class is responsible for:
    - Claiming the username from the first payload of a connection
    - Emoji shortcode expansion at ingress
    - Classifying payloads (private directive, bot mention, broadcast)
    - Handing public messages to persistence and the broadcast engine
    - Handing bot queries to the responder
    - Rate limiting
    """

    def __init__(self, hub: RelayHub) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatrelay.router")

    @property
    def _tsfmt(self) -> str:
        return self.hub.config.timestamp_format

    def route(self, session_id: str, payload: str | bytes) -> Envelope | None:
        """
        Main entry point for one payload received on a connection.

        Returns the routed envelope, or None when the payload was a
        registration attempt or was dropped.
        """
        sess = self.hub.registry.get(session_id)
        if sess is None:
            return None

        self.hub.stats.inc("payloads_in")
        if isinstance(payload, (bytes, bytearray)):
            self.hub.stats.inc("bytes_in", len(payload))
            text = bytes(payload).decode("utf-8", errors="replace")
        else:
            text = str(payload)

        outgoing: Outgoing = []

        if not sess.registered:
            self._handle_registration(sess, text, outgoing)
            self.hub.broadcast.deliver(outgoing, kind="registration")
            return None

        if not self.hub.registry.take_token(sess.id):
            self.hub.stats.inc("rate_limited")
            self.log.debug("Rate limited session=%s username=%r", sess.id, sess.username)
            self.hub.broadcast.queue(outgoing, sess, "❌ Rate limited, slow down.")
            self.hub.broadcast.deliver(outgoing, kind="notice")
            return None

        body = emojify(text)
        if not body.strip():
            self.log.debug("Ignoring blank payload session=%s", sess.id)
            return None

        env = self._classify(sess, body)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX session=%s username=%r kind=%s chars=%s",
                sess.id,
                sess.username,
                env.kind,
                len(body),
            )

        if env.kind == KIND_PRIVATE:
            self._handle_private(sess, env, outgoing)
            self.hub.broadcast.deliver(outgoing, kind=KIND_PRIVATE)
        else:
            self._handle_public(sess, env)
        return env

    def _classify(self, sess: Session, body: str) -> Envelope:
        ts = now_s()
        marker = self.hub.config.bot_marker if self.hub.config.bot_enabled else ""
        try:
            return classify(str(sess.username), body, timestamp=ts, marker=marker)
        except MalformedDirective as e:
            self.hub.stats.inc("malformed_directives")
            self.log.debug(
                "Malformed directive treated as public session=%s username=%r err=%s",
                sess.id,
                sess.username,
                e,
            )
            return classify(
                str(sess.username), body, timestamp=ts, marker=marker, directives=False
            )

    def _handle_registration(self, sess: Session, text: str, outgoing: Outgoing) -> None:
        """Treat the payload as the connection's username."""
        try:
            name = self.hub.registry.register(sess.id, text)
        except DuplicateUsername as e:
            self.hub.stats.inc("registrations_rejected")
            self.log.info(
                "Registration rejected username=%r session=%s reason=%s",
                e.username,
                sess.id,
                e.code,
            )
            self.hub.broadcast.queue(
                outgoing,
                sess,
                f"❌ Username {e.username} is already taken. Send a different username.",
            )
            return
        except InvalidUsername as e:
            self.hub.stats.inc("registrations_rejected")
            self.log.info("Registration rejected session=%s reason=%s", sess.id, e.code)
            self.hub.broadcast.queue(
                outgoing,
                sess,
                f"❌ Invalid username. Send 1-{self.hub.config.username_max_chars} "
                "characters on a single line.",
            )
            return
        except RegistryError as e:
            self.log.debug("Registration ignored session=%s err=%s", sess.id, e)
            return

        self.hub.stats.inc("registrations")
        self.log.info("REGISTER username=%r session=%s", name, sess.id)

        if self.hub.config.greeting:
            self.hub.broadcast.queue(outgoing, sess, self.hub.config.greeting)

        limit = int(self.hub.config.history_replay_limit)
        if limit > 0:
            for rec in self.hub.persistence.recent(limit):
                self.hub.broadcast.queue(
                    outgoing, sess, render_line(rec.timestamp, rec.sender, rec.body, self._tsfmt)
                )

    def _handle_private(self, sess: Session, env: Envelope, outgoing: Outgoing) -> None:
        target = self.hub.registry.lookup(env.target or "")
        if target is None:
            self.hub.stats.inc("private_not_found")
            self.log.info(
                "PRIVATE target not found sender=%r target=%r session=%s",
                env.sender,
                env.target,
                sess.id,
            )
            self.hub.broadcast.queue(outgoing, sess, render_not_found(env.target or ""))
            return

        self.hub.stats.inc("msgs_private")
        self.log.info(
            "PRIVATE sender=%r target=%r chars=%s", env.sender, env.target, len(env.body)
        )
        self.hub.broadcast.queue(outgoing, target, render_private(env, self._tsfmt))
        self.hub.broadcast.queue(outgoing, sess, render_private_echo(env, self._tsfmt))

    def _handle_public(self, sess: Session, env: Envelope) -> None:
        self._publish(env)

        if env.kind == KIND_BOT_QUERY:
            self.hub.stats.inc("bot_queries")
            self.log.info(
                "BOT query sender=%r query=%r", env.sender, preview(env.query or "")
            )
            self.hub.responder.submit(env.query or "", asker=env.sender)

    def publish(self, sender: str, body: str) -> Envelope:
        """Persist and broadcast a message that did not come from a session."""
        env = Envelope(sender=sender, body=body, timestamp=now_s())
        self._publish(env)
        return env

    def _publish(self, env: Envelope) -> None:
        # History append is queued; delivery does not wait for it.
        self.hub.persistence.append(env.sender, env.body, env.timestamp)
        self.hub.stats.inc("msgs_broadcast")
        self.log.info("CHAT sender=%r chars=%s", env.sender, len(env.body))
        self.hub.broadcast.broadcast(render_public(env, self._tsfmt), kind=env.kind)
