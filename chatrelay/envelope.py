from __future__ import annotations

import re
import time
from dataclasses import dataclass

from .constants import (
    BOT_MARKER,
    KIND_BOT_QUERY,
    KIND_BROADCAST,
    KIND_PRIVATE,
    PRIVATE_DIRECTIVE,
    PRIVATE_PREFIX,
    PRIVATE_SELF,
)
from .errors import MalformedDirective

_PRIVATE_RE = re.compile(r"^/msg (\w+) (.+)$", re.ASCII)


@dataclass(frozen=True)
class Envelope:
    """One routed chat message.

    For private envelopes ``body`` is the directive's text part and ``target``
    the addressed username. For bot queries ``query`` is the body with the
    first marker removed.
    """

    sender: str
    body: str
    timestamp: float
    kind: str = KIND_BROADCAST
    target: str | None = None
    query: str | None = None

    @property
    def is_public(self) -> bool:
        return self.kind in (KIND_BROADCAST, KIND_BOT_QUERY)


def now_s() -> float:
    return time.time()


def parse_private(body: str) -> tuple[str, str] | None:
    """Return (target, text) for a /msg directive, None if body is not one.

    Raises MalformedDirective when the body starts like a directive but the
    target or text cannot be parsed.
    """
    m = _PRIVATE_RE.match(body)
    if m:
        return m.group(1), m.group(2)
    if body == PRIVATE_DIRECTIVE or body.startswith(PRIVATE_DIRECTIVE + " "):
        raise MalformedDirective(
            "private directive needs a target and text", {"body": body}
        )
    return None


def strip_marker(body: str, marker: str = BOT_MARKER) -> str:
    return body.replace(marker, "", 1).strip()


def classify(
    sender: str,
    body: str,
    *,
    timestamp: float | None = None,
    marker: str = BOT_MARKER,
    directives: bool = True,
) -> Envelope:
    """Build an envelope whose kind follows from the body's syntax.

    Precedence: private directive, bot mention, plain broadcast.
    """
    ts = now_s() if timestamp is None else float(timestamp)

    if directives:
        parsed = parse_private(body)
        if parsed is not None:
            target, text = parsed
            return Envelope(
                sender=sender, body=text, timestamp=ts, kind=KIND_PRIVATE, target=target
            )

    if marker and marker in body:
        return Envelope(
            sender=sender,
            body=body,
            timestamp=ts,
            kind=KIND_BOT_QUERY,
            query=strip_marker(body, marker),
        )

    return Envelope(sender=sender, body=body, timestamp=ts)


def format_timestamp(ts: float, fmt: str) -> str:
    return time.strftime(fmt, time.localtime(ts))


def render_line(ts: float, sender: str, body: str, fmt: str) -> str:
    return f"{format_timestamp(ts, fmt)} {sender}: {body}"


def render_public(env: Envelope, fmt: str) -> str:
    return render_line(env.timestamp, env.sender, env.body, fmt)


def render_private(env: Envelope, fmt: str) -> str:
    return f"{PRIVATE_PREFIX} {render_line(env.timestamp, env.sender, env.body, fmt)}"


def render_private_echo(env: Envelope, fmt: str) -> str:
    sender = f"{PRIVATE_SELF} -> {env.target}"
    return f"{PRIVATE_PREFIX} {render_line(env.timestamp, sender, env.body, fmt)}"


def render_not_found(target: str) -> str:
    return f"❌ User {target} not found."
