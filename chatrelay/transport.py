"""Outbound transport handles.

The hub core only sees the ``Transport`` protocol. ``LinkTransport`` adapts a
Reticulum link: text goes out UTF-8 encoded, one message per packet, and as an
``RNS.Resource`` when it does not fit the link MDU.
"""

from __future__ import annotations

import logging
from typing import Protocol

import RNS

from .errors import DeliveryError, TransportClosed


class Transport(Protocol):
    @property
    def is_open(self) -> bool: ...

    def send(self, text: str) -> int:
        """Send one text message; return bytes written or raise DeliveryError."""
        ...

    def close(self) -> None: ...


def fmt_link_id(link: RNS.Link) -> str:
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return "-"


class LinkTransport:
    def __init__(self, link: RNS.Link) -> None:
        self.link = link
        self.log = logging.getLogger("chatrelay.transport")

    @property
    def is_open(self) -> bool:
        return self.link.status == RNS.Link.ACTIVE

    def _fits(self, payload: bytes) -> bool:
        mdu = getattr(self.link, "MDU", None)
        if mdu is not None:
            return len(payload) <= mdu
        try:
            RNS.Packet(self.link, payload).pack()
            return True
        except Exception:
            return False

    def send(self, text: str) -> int:
        if not self.is_open:
            raise TransportClosed(f"link {fmt_link_id(self.link)} is not active")

        payload = text.encode("utf-8", errors="replace")
        try:
            if self._fits(payload):
                receipt = RNS.Packet(self.link, payload).send()
                if receipt is False:
                    raise DeliveryError(
                        f"packet send refused on link {fmt_link_id(self.link)}"
                    )
            else:
                self.log.debug(
                    "Sending %s bytes as resource link_id=%s",
                    len(payload),
                    fmt_link_id(self.link),
                )
                RNS.Resource(payload, self.link)
        except DeliveryError:
            raise
        except OSError as e:
            raise DeliveryError(f"send failed: {e}") from e
        return len(payload)

    def close(self) -> None:
        try:
            self.link.teardown()
        except Exception:
            self.log.debug(
                "Link teardown failed link_id=%s", fmt_link_id(self.link), exc_info=True
            )
