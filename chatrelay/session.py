from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import DuplicateUsername, InvalidUsername, RegistryError, UnknownSession
from .util import normalize_username

if TYPE_CHECKING:
    from .transport import Transport


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


@dataclass(eq=False)
class Session:
    """The hub's view of one client connection and its claimed username."""

    id: str
    transport: Transport
    username: str | None = None
    send_failures: int = 0
    closed: bool = False
    connected_at: float = field(default_factory=time.time)

    @property
    def registered(self) -> bool:
        return self.username is not None

    def label(self) -> str:
        return f"{self.username or '-'}@{self.id[:12]}"


class SessionRegistry:
    """
    Tracks active sessions and the usernames they hold.

    This class is responsible for:
    - Session creation on connect and teardown on close
    - Username claims, with at most one active session per name
    - Per-session rate limiting with a token bucket
    - Snapshots of registered sessions for delivery

    All mappings are guarded by the registry's own lock, held only for the
    duration of an insert, remove or snapshot.
    """

    def __init__(
        self,
        *,
        username_max_chars: int = 32,
        rate_limit_msgs_per_minute: int = 0,
        reserved_names: tuple[str, ...] = (),
    ) -> None:
        self.log = logging.getLogger("chatrelay.session")
        self.username_max_chars = int(username_max_chars)
        self.rate_limit_msgs_per_minute = int(rate_limit_msgs_per_minute)
        self._reserved = {n for n in reserved_names if n}
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._index_by_name: dict[str, Session] = {}
        self._rate: dict[str, _RateState] = {}

    def attach(self, session_id: str, transport: Transport) -> Session:
        """Create an unregistered session for a new connection."""
        sess = Session(id=session_id, transport=transport)
        with self._lock:
            previous = self._sessions.get(session_id)
            if previous is not None:
                self._drop_locked(previous)
            self._sessions[session_id] = sess
            self._rate[session_id] = _RateState(
                tokens=float(max(1, self.rate_limit_msgs_per_minute)),
                last_refill=time.monotonic(),
            )

        self.log.info("Session created session=%s", session_id)
        return sess

    def register(self, session_id: str, proposed: Any) -> str:
        """
        Claim a username for a session.

        Raises:
            InvalidUsername: the proposal is empty, too long or has control chars
            DuplicateUsername: another active session holds the name
            UnknownSession: the session is not attached
        """
        name = normalize_username(proposed, max_chars=self.username_max_chars)
        if name is None:
            raise InvalidUsername(
                f"invalid username {proposed!r}", {"session": session_id}
            )

        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None or sess.closed:
                raise UnknownSession(f"unknown session {session_id}")

            holder = self._index_by_name.get(name)
            if name in self._reserved or (holder is not None and holder is not sess):
                raise DuplicateUsername(name)

            if sess.username is not None:
                raise RegistryError(
                    f"session {session_id} is already registered as {sess.username!r}"
                )
            sess.username = name
            self._index_by_name[name] = sess

        self.log.info("Registered username=%r session=%s", name, session_id)
        return name

    def lookup(self, username: str) -> Session | None:
        with self._lock:
            return self._index_by_name.get(username)

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def unregister(self, session_id: str) -> Session | None:
        """Destroy a session and release its username. Idempotent."""
        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None:
                return None
            self._drop_locked(sess)
        return sess

    def _drop_locked(self, sess: Session) -> None:
        sess.closed = True
        self._sessions.pop(sess.id, None)
        self._rate.pop(sess.id, None)
        if sess.username is not None and self._index_by_name.get(sess.username) is sess:
            self._index_by_name.pop(sess.username, None)

    def registered(self) -> list[Session]:
        """Snapshot of registered, open sessions in registration order."""
        with self._lock:
            return [s for s in self._index_by_name.values() if not s.closed]

    def is_active(self, sess: Session) -> bool:
        with self._lock:
            return not sess.closed and self._sessions.get(sess.id) is sess

    def take_token(self, session_id: str, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        per_min = float(self.rate_limit_msgs_per_minute)
        if per_min <= 0:
            return True

        with self._lock:
            state = self._rate.get(session_id)
            if state is None:
                return True

            now = time.monotonic()
            rate_per_s = per_min / 60.0
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
            state.last_refill = now

            if state.tokens < cost:
                return False

            state.tokens -= cost
            return True

    def clear_all(self) -> list[Session]:
        """Drop every session and return them for transport teardown."""
        with self._lock:
            sessions = list(self._sessions.values())
            for sess in sessions:
                sess.closed = True
            self._sessions.clear()
            self._index_by_name.clear()
            self._rate.clear()
        return sessions

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = len(self._sessions)
            registered = len(self._index_by_name)
        return {
            "total": total,
            "registered": registered,
            "unregistered": total - registered,
        }
