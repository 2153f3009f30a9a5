"""Statistics tracking and reporting for the chatrelay hub."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .hub import RelayHub


class StatsManager:
    """
    Manages hub statistics collection and reporting.

    Tracks counters for:
    - Bytes and payloads in/out
    - Registrations and rejections
    - Broadcast, private and bot traffic
    - Delivery failures and dropped sessions
    - Persistence failures
    """

    def __init__(self, hub: RelayHub) -> None:
        self.hub = hub
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "payloads_in": 0,
            "sessions_connected": 0,
            "registrations": 0,
            "registrations_rejected": 0,
            "rate_limited": 0,
            "msgs_broadcast": 0,
            "msgs_private": 0,
            "private_not_found": 0,
            "malformed_directives": 0,
            "bot_queries": 0,
            "bot_replies": 0,
            "bot_fallbacks": 0,
            "deliveries": 0,
            "delivery_failures": 0,
            "send_timeouts": 0,
            "sessions_dropped": 0,
            "persist_failures": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        session_stats = self.hub.registry.get_stats()
        counters = self.snapshot()

        lines = [
            f"chatrelay {__version__} uptime={uptime_s:.0f}s",
            "sessions total={total} registered={registered} unregistered={unregistered}".format(
                **session_stats
            ),
        ]
        lines.extend(f"{k}={v}" for k, v in counters.items())
        return "\n".join(lines)
