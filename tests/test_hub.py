from conftest import FakeTransport, join


def test_disconnect_is_idempotent_and_frees_the_name(make_hub) -> None:
    hub = make_hub()
    join(hub, "alice")

    hub.disconnect("sess-alice")
    hub.disconnect("sess-alice")
    assert hub.registry.lookup("alice") is None

    t = join(hub, "alice")
    hub.receive("sess-alice", "back again")
    assert len(t.sent) == 1


def test_drop_session_closes_transport_once(make_hub) -> None:
    hub = make_hub()
    t = join(hub, "alice")
    sess = hub.registry.lookup("alice")
    assert sess is not None

    hub.drop_session(sess, reason="test")
    hub.drop_session(sess, reason="test")

    assert t.closed
    assert hub.stats.get("sessions_dropped") == 1


def test_stop_closes_every_transport(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    lurker = FakeTransport()
    hub.connect("s-lurker", lurker)

    hub.stop()

    assert ta.closed and lurker.closed
    assert hub.registry.get_stats()["total"] == 0


def test_stats_report_lists_counters(make_hub) -> None:
    hub = make_hub()
    join(hub, "alice")
    hub.receive("sess-alice", "hi")

    report = hub.stats.format_stats()
    assert "sessions total=1 registered=1 unregistered=0" in report
    assert "msgs_broadcast=1" in report
    assert "registrations=1" in report
