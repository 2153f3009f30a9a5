"""Outbound delivery for the chatrelay hub."""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import DeliveryError, OutboxFull, SendTimeout, TransportClosed

if TYPE_CHECKING:
    from .hub import RelayHub
    from .session import Session


Outgoing = list[tuple["Session", str]]

_CLOSE = object()


@dataclass
class DeliveryReport:
    delivered: list[Session] = field(default_factory=list)
    failed: list[tuple[Session, DeliveryError]] = field(default_factory=list)

    @property
    def delivered_names(self) -> list[str | None]:
        return [s.username for s in self.delivered]


class _Outbox:
    """
    One session's outbound queue and the thread that drains it.

    Sends for a session run strictly in queue order on its own thread, so a
    transport that blocks only ever holds up its own session.
    """

    def __init__(self, sess: Session, maxsize: int) -> None:
        self.sess = sess
        self.log = logging.getLogger("chatrelay.broadcast")
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, int(maxsize)))
        self._closed = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"chatrelay-send-{sess.id[:8]}",
            daemon=True,
        )
        self._thread.start()

    def submit(self, text: str) -> Future:
        """Queue one send. Raises OutboxFull when the session is too far behind."""
        fut: Future = Future()
        try:
            self._queue.put_nowait((fut, text))
        except queue.Full:
            raise OutboxFull(
                f"outbox full for session {self.sess.id}",
                {"pending": self._queue.qsize()},
            ) from None
        return fut

    def close(self) -> None:
        self._closed.set()
        try:
            self._queue.put_nowait(_CLOSE)
        except queue.Full:
            # The thread sees the flag after its current send.
            pass

    def _run(self) -> None:
        while not self._closed.is_set():
            item = self._queue.get()
            if item is _CLOSE:
                break
            fut, text = item
            if not fut.set_running_or_notify_cancel():
                continue
            try:
                fut.set_result(self.sess.transport.send(text))
            except Exception as e:
                fut.set_exception(e)

        # Anything still queued will never be sent.
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is not _CLOSE:
                item[0].cancel()


class BroadcastEngine:
    """
    Delivers rendered text to sessions.

    Handles:
    - Outgoing queues of (session, text) pairs built by the router
    - One bounded outbox per session, drained by that session's sender thread
    - Per-recipient failure accounting and dropping of dead sessions

    Failures are logged and counted; they are never reported to the sender
    and never abort delivery to the remaining recipients.
    """

    def __init__(self, hub: RelayHub) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatrelay.broadcast")
        self._lock = threading.Lock()
        self._outboxes: dict[str, _Outbox] = {}
        self._stopped = False

    def queue(self, outgoing: Outgoing, sess: Session, text: str) -> None:
        outgoing.append((sess, text))

    def queue_all(self, outgoing: Outgoing, text: str) -> None:
        """Queue text for every registered session, in registry order."""
        for sess in self.hub.registry.registered():
            outgoing.append((sess, text))

    def broadcast(self, text: str, *, kind: str = "broadcast") -> DeliveryReport:
        outgoing: Outgoing = []
        self.queue_all(outgoing, text)
        return self.deliver(outgoing, kind=kind)

    def _outbox(self, sess: Session) -> _Outbox | None:
        with self._lock:
            if self._stopped:
                return None
            box = self._outboxes.get(sess.id)
            if box is not None and box.sess is not sess:
                # The id was reattached to a new connection.
                box.close()
                box = None
            if box is None:
                box = _Outbox(sess, self.hub.config.outbox_size)
                self._outboxes[sess.id] = box
            return box

    def release(self, sess: Session) -> None:
        """Stop the session's sender thread; queued sends are discarded."""
        with self._lock:
            box = self._outboxes.get(sess.id)
            if box is None or box.sess is not sess:
                return
            del self._outboxes[sess.id]
        box.close()

    def deliver(self, outgoing: Outgoing, *, kind: str = "-") -> DeliveryReport:
        report = DeliveryReport()
        pending: list[tuple[Future, Session]] = []

        for sess, text in outgoing:
            if not self.hub.registry.is_active(sess):
                # Removed after the target set was taken.
                continue
            if not sess.transport.is_open:
                self._failed(
                    report,
                    sess,
                    TransportClosed(f"transport closed for session {sess.id}"),
                    kind,
                )
                continue
            box = self._outbox(sess)
            if box is None:
                continue
            try:
                pending.append((box.submit(text), sess))
            except OutboxFull as e:
                self._failed(report, sess, e, kind)

        if not pending:
            return report

        done, _ = wait([f for f, _ in pending], timeout=float(self.hub.config.send_timeout_s))

        for fut, sess in pending:
            if fut not in done:
                # A send still queued behind this session's own stalled send is
                # withdrawn; it never reaches the transport.
                fut.cancel()
                self.hub.stats.inc("send_timeouts")
                self._failed(
                    report,
                    sess,
                    SendTimeout(
                        f"send to session {sess.id} exceeded {self.hub.config.send_timeout_s}s"
                    ),
                    kind,
                )
                continue

            if fut.cancelled():
                continue
            exc = fut.exception()
            if exc is None:
                self._delivered(report, sess, fut.result())
            elif isinstance(exc, DeliveryError):
                self._failed(report, sess, exc, kind)
            else:
                self._failed(report, sess, DeliveryError(f"send failed: {exc}"), kind)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Delivered kind=%s recipients=%s failed=%s",
                kind,
                len(report.delivered),
                len(report.failed),
            )
        return report

    def _delivered(self, report: DeliveryReport, sess: Session, nbytes) -> None:
        report.delivered.append(sess)
        with self._lock:
            sess.send_failures = 0
        self.hub.stats.inc("deliveries")
        if isinstance(nbytes, int):
            self.hub.stats.inc("bytes_out", nbytes)

    def _failed(
        self, report: DeliveryReport, sess: Session, err: DeliveryError, kind: str
    ) -> None:
        report.failed.append((sess, err))
        self.hub.stats.inc("delivery_failures")

        with self._lock:
            sess.send_failures += 1
            failures = sess.send_failures

        self.log.warning(
            "Delivery failed session=%s username=%r kind=%s failures=%s err=%s",
            sess.id,
            sess.username,
            kind,
            failures,
            err,
        )

        limit = int(self.hub.config.max_send_failures)
        if isinstance(err, TransportClosed) or (limit > 0 and failures >= limit):
            self.hub.drop_session(sess, reason=err.code)

    def shutdown(self) -> None:
        with self._lock:
            self._stopped = True
            boxes = list(self._outboxes.values())
            self._outboxes.clear()
        for box in boxes:
            box.close()
