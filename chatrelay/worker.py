from __future__ import annotations

import logging
import queue
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .hub import RelayHub

_CLOSE = object()


class SessionWorker:
    """
    Per-connection worker.

    Transport callbacks only enqueue; this thread feeds payloads to the hub in
    arrival order, so a slow connection never holds up another one. Closing
    is queued behind pending payloads.
    """

    def __init__(self, hub: RelayHub, session_id: str) -> None:
        self.hub = hub
        self.session_id = session_id
        self.log = logging.getLogger("chatrelay.worker")
        self._queue: queue.Queue = queue.Queue()
        self._thread = threading.Thread(
            target=self._run,
            name=f"chatrelay-session-{session_id[:8]}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def put(self, payload: str | bytes) -> None:
        self._queue.put(payload)

    def close(self) -> None:
        self._queue.put(_CLOSE)

    def join(self, timeout: float | None = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _CLOSE:
                self.hub.disconnect(self.session_id)
                return
            try:
                self.hub.receive(self.session_id, item)
            except Exception:
                self.log.exception("Routing failed session=%s", self.session_id)
