import re

from chatrelay.errors import OutboxFull, SendTimeout, TransportClosed

from conftest import TS_RE, FailingStore, StallingTransport, join


def test_stalled_recipient_does_not_block_others(make_hub) -> None:
    hub = make_hub(send_timeout_s=0.2, max_send_failures=0)
    ta = join(hub, "alice")
    stalled = join(hub, "bob", StallingTransport())
    tc = join(hub, "carol")
    try:
        report = hub.broadcast.broadcast("12:00:00 alice: hi")

        assert sorted(report.delivered_names) == ["alice", "carol"]
        assert len(report.failed) == 1
        sess, err = report.failed[0]
        assert sess.username == "bob"
        assert isinstance(err, SendTimeout)

        assert ta.sent == ["12:00:00 alice: hi"]
        assert tc.sent == ["12:00:00 alice: hi"]
        assert hub.stats.get("send_timeouts") == 1
        # max_send_failures=0 never drops on timeouts alone.
        assert hub.registry.lookup("bob") is not None
    finally:
        stalled.release.set()


def test_repeated_failures_drop_the_session(make_hub) -> None:
    hub = make_hub(send_timeout_s=0.2, max_send_failures=2)
    ta = join(hub, "alice")
    stalled = join(hub, "bob", StallingTransport())
    try:
        hub.receive("sess-alice", "one")
        assert hub.registry.lookup("bob") is not None

        hub.receive("sess-alice", "two")
        assert hub.registry.lookup("bob") is None
        assert stalled.closed
        assert hub.stats.get("sessions_dropped") == 1

        hub.receive("sess-alice", "three")
        assert len([s for s in ta.sent if re.fullmatch(rf"{TS_RE} alice: \w+", s)]) == 3
    finally:
        stalled.release.set()


def test_closed_transport_is_dropped_immediately(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    tb = join(hub, "bob")
    tb.open = False

    report = hub.broadcast.broadcast("hello")

    assert report.delivered_names == ["alice"]
    assert isinstance(report.failed[0][1], TransportClosed)
    assert hub.registry.lookup("bob") is None
    assert tb.closed
    assert ta.sent == ["hello"]

    # The name is free again.
    join(hub, "bob")
    assert hub.registry.lookup("bob") is not None


def test_successful_send_resets_failure_count(make_hub) -> None:
    hub = make_hub(send_timeout_s=0.2, max_send_failures=2)
    join(hub, "alice")
    stalled = join(hub, "bob", StallingTransport())
    try:
        hub.broadcast.broadcast("first")
        bob = hub.registry.lookup("bob")
        assert bob is not None and bob.send_failures == 1

        stalled.release.set()
        hub.broadcast.broadcast("second")
        assert bob.send_failures == 0
    finally:
        stalled.release.set()


def test_sessions_removed_mid_delivery_are_skipped(make_hub) -> None:
    hub = make_hub()
    join(hub, "alice")
    tb = join(hub, "bob")

    outgoing = []
    hub.broadcast.queue_all(outgoing, "hello")
    hub.disconnect("sess-bob")
    report = hub.broadcast.deliver(outgoing)

    assert report.delivered_names == ["alice"]
    assert report.failed == []
    assert tb.sent == []


def test_broadcast_survives_persistence_outage(make_hub) -> None:
    hub = make_hub(store=FailingStore())
    ta = join(hub, "alice")
    tb = join(hub, "bob")

    hub.receive("sess-alice", "still works")
    hub.persistence.flush(timeout=2.0)

    assert len([s for s in tb.sent if s.endswith("alice: still works")]) == 1
    assert len([s for s in ta.sent if s.endswith("alice: still works")]) == 1
    assert hub.stats.get("persist_failures") == 1


def test_many_stalled_clients_do_not_starve_healthy_ones(make_hub) -> None:
    hub = make_hub(send_timeout_s=0.2, max_send_failures=1)
    stalled = [join(hub, f"stall{i}", StallingTransport()) for i in range(4)]
    tc = join(hub, "carol")
    try:
        first = hub.broadcast.broadcast("one")
        assert first.delivered_names == ["carol"]
        assert sorted(s.username for s, _ in first.failed) == [
            "stall0",
            "stall1",
            "stall2",
            "stall3",
        ]
        assert all(t.closed for t in stalled)

        second = hub.broadcast.broadcast("two")
        assert second.delivered_names == ["carol"]
        assert second.failed == []

        td = join(hub, "dave")
        third = hub.broadcast.broadcast("three")
        assert sorted(third.delivered_names) == ["carol", "dave"]

        assert tc.sent == ["one", "two", "three"]
        assert td.sent == ["three"]
        assert hub.registry.lookup("carol") is not None
        assert hub.stats.get("sessions_dropped") == 4
    finally:
        for t in stalled:
            t.release.set()


def test_full_outbox_fails_only_that_session(make_hub) -> None:
    hub = make_hub(send_timeout_s=0.1, outbox_size=1, max_send_failures=0)
    stalled = join(hub, "bob", StallingTransport())
    tc = join(hub, "carol")
    try:
        # The first send blocks bob's sender thread; the second waits in
        # bob's outbox; the third finds the outbox full.
        hub.broadcast.broadcast("one")
        hub.broadcast.broadcast("two")
        third = hub.broadcast.broadcast("three")

        assert third.delivered_names == ["carol"]
        [(sess, err)] = third.failed
        assert sess.username == "bob"
        assert isinstance(err, OutboxFull)
        assert tc.sent == ["one", "two", "three"]
    finally:
        stalled.release.set()


def test_sends_to_one_session_keep_their_order(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    outgoing = []
    for i in range(20):
        hub.broadcast.queue(outgoing, hub.registry.lookup("alice"), f"m{i}")
    report = hub.broadcast.deliver(outgoing)

    assert len(report.delivered) == 20
    assert ta.sent == [f"m{i}" for i in range(20)]
