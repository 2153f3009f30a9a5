from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from chatrelay.config import RelayRuntimeConfig
from chatrelay.errors import (
    CompletionUnavailable,
    EmbeddingUnavailable,
    PersistenceUnavailable,
    TransportClosed,
)
from chatrelay.hub import RelayHub
from chatrelay.persistence import MemoryHistoryStore

TS_RE = r"\d{2}:\d{2}:\d{2}"


class FakeTransport:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.open = True
        self.closed = False

    @property
    def is_open(self) -> bool:
        return self.open

    def send(self, text: str) -> int:
        if not self.open:
            raise TransportClosed("closed")
        self.sent.append(text)
        return len(text.encode("utf-8"))

    def close(self) -> None:
        self.open = False
        self.closed = True


class StallingTransport(FakeTransport):
    """Blocks every send until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def send(self, text: str) -> int:
        self.release.wait(5.0)
        return super().send(text)


class FakeCompletion:
    def __init__(self, reply: str = "42") -> None:
        self.reply = reply
        self.fail_complete = False
        self.fail_embed = False
        self.gate: threading.Event | None = None
        self.calls: list[tuple[str, str]] = []
        self.vectors: dict[str, list[float]] = {}

    def embed(self, text: str) -> list[float]:
        if self.fail_embed:
            raise EmbeddingUnavailable("embedding backend down")
        for word, vec in self.vectors.items():
            if word in text:
                return list(vec)
        return [0.0, 0.0, 1.0]

    def complete(self, query: str, context: str) -> str:
        if self.gate is not None:
            self.gate.wait(5.0)
        self.calls.append((query, context))
        if self.fail_complete:
            raise CompletionUnavailable("completion backend down")
        return self.reply


class FailingStore:
    def append(self, record) -> None:
        raise PersistenceUnavailable("store unreachable")

    def recent(self, limit: int):
        raise PersistenceUnavailable("store unreachable")

    def similar(self, vector, k: int):
        raise PersistenceUnavailable("store unreachable")

    def close(self) -> None:
        pass


def make_config(**overrides) -> RelayRuntimeConfig:
    cfg = RelayRuntimeConfig(
        rate_limit_msgs_per_minute=0,
        history_replay_limit=0,
        send_timeout_s=0.5,
        max_send_failures=3,
    )
    return replace(cfg, **overrides)


@pytest.fixture
def make_hub():
    hubs: list[RelayHub] = []

    def _make(*, store=None, completion=None, **overrides) -> RelayHub:
        hub = RelayHub(
            make_config(**overrides),
            store=store if store is not None else MemoryHistoryStore(),
            completion=completion if completion is not None else FakeCompletion(),
        )
        hubs.append(hub)
        return hub

    yield _make

    for hub in hubs:
        hub.stop()


def join(hub: RelayHub, username: str, transport: FakeTransport | None = None) -> FakeTransport:
    """Connect a fake client and claim a username with its first payload."""
    t = transport if transport is not None else FakeTransport()
    hub.connect(f"sess-{username}", t)
    hub.receive(f"sess-{username}", username)
    return t
