import re

from chatrelay.constants import KIND_BOT_QUERY, KIND_PRIVATE

from conftest import TS_RE, FakeTransport, join


def _lines(t: FakeTransport, sender: str, body: str) -> list[str]:
    pat = re.compile(rf"{TS_RE} {re.escape(sender)}: {re.escape(body)}")
    return [s for s in t.sent if pat.fullmatch(s)]


def test_first_payload_is_the_username(make_hub) -> None:
    hub = make_hub()
    t = FakeTransport()
    hub.connect("s1", t)
    assert hub.receive("s1", "alice\n") is None

    sess = hub.registry.lookup("alice")
    assert sess is not None and sess.id == "s1"
    assert t.sent == []
    assert hub.stats.get("registrations") == 1


def test_greeting_is_sent_after_registration(make_hub) -> None:
    hub = make_hub(greeting="Welcome to the relay")
    t = join(hub, "alice")
    assert t.sent == ["Welcome to the relay"]


def test_duplicate_username_gets_a_notice_and_may_retry(make_hub) -> None:
    hub = make_hub()
    join(hub, "alice")

    t2 = FakeTransport()
    hub.connect("s2", t2)
    hub.receive("s2", "alice")
    assert t2.sent == ["❌ Username alice is already taken. Send a different username."]
    assert hub.stats.get("registrations_rejected") == 1

    hub.receive("s2", "alice2")
    sess = hub.registry.lookup("alice2")
    assert sess is not None and sess.id == "s2"


def test_public_message_reaches_everyone_including_sender(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    tb = join(hub, "bob")

    env = hub.receive("sess-alice", "hello all")
    assert env is not None and env.is_public

    assert len(_lines(ta, "alice", "hello all")) == 1
    assert len(_lines(tb, "alice", "hello all")) == 1
    assert hub.stats.get("msgs_broadcast") == 1


def test_unregistered_sessions_do_not_receive_broadcasts(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    lurker = FakeTransport()
    hub.connect("s-lurker", lurker)

    hub.receive("sess-alice", "anyone here?")
    assert lurker.sent == []
    assert len(_lines(ta, "alice", "anyone here?")) == 1


def test_bytes_payloads_are_decoded(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    hub.receive("sess-alice", "héllo".encode("utf-8"))
    assert len(_lines(ta, "alice", "héllo")) == 1
    assert hub.stats.get("bytes_in") == len("héllo".encode("utf-8"))


def test_emoji_shortcodes_are_expanded(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    env = hub.receive("sess-alice", "nice :thumbsup:")
    assert env is not None
    assert env.body == "nice 👍"
    assert len(_lines(ta, "alice", "nice 👍")) == 1


def test_blank_payload_is_ignored(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    assert hub.receive("sess-alice", "   ") is None
    assert ta.sent == []


def test_private_message_goes_to_target_and_echoes_to_sender(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    tb = join(hub, "bob")
    tc = join(hub, "carol")

    env = hub.receive("sess-alice", "/msg bob meet at noon")
    assert env is not None and env.kind == KIND_PRIVATE

    assert len(tb.sent) == 1
    assert re.fullmatch(rf"\(Private\) {TS_RE} alice: meet at noon", tb.sent[0])
    assert len(ta.sent) == 1
    assert re.fullmatch(rf"\(Private\) {TS_RE} You -> bob: meet at noon", ta.sent[0])
    assert tc.sent == []
    assert hub.stats.get("msgs_private") == 1


def test_private_messages_are_not_stored(make_hub) -> None:
    hub = make_hub()
    join(hub, "alice")
    join(hub, "bob")

    hub.receive("sess-alice", "/msg bob secret")
    hub.persistence.flush(timeout=2.0)
    assert len(hub.persistence.store) == 0


def test_private_to_unknown_user(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    tb = join(hub, "bob")

    hub.receive("sess-alice", "/msg zed hello?")
    assert ta.sent == ["❌ User zed not found."]
    assert tb.sent == []
    assert hub.stats.get("private_not_found") == 1


def test_private_target_is_case_sensitive(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    join(hub, "bob")

    hub.receive("sess-alice", "/msg Bob hi")
    assert ta.sent == ["❌ User Bob not found."]


def test_malformed_directive_is_broadcast_as_text(make_hub) -> None:
    hub = make_hub()
    ta = join(hub, "alice")
    tb = join(hub, "bob")

    env = hub.receive("sess-alice", "/msg bob")
    assert env is not None and env.is_public
    assert len(_lines(tb, "alice", "/msg bob")) == 1
    assert len(_lines(ta, "alice", "/msg bob")) == 1
    assert hub.stats.get("malformed_directives") == 1


def test_history_is_replayed_on_registration(make_hub) -> None:
    hub = make_hub(history_replay_limit=2)
    join(hub, "alice")
    for text in ("one", "two", "three"):
        hub.receive("sess-alice", text)

    tb = join(hub, "bob")
    assert len(tb.sent) == 2
    assert re.fullmatch(rf"{TS_RE} alice: two", tb.sent[0])
    assert re.fullmatch(rf"{TS_RE} alice: three", tb.sent[1])


def test_rate_limit_sends_notice_to_sender_only(make_hub) -> None:
    hub = make_hub(rate_limit_msgs_per_minute=2)
    ta = join(hub, "alice")
    tb = join(hub, "bob")

    hub.receive("sess-alice", "one")
    hub.receive("sess-alice", "two")
    assert hub.receive("sess-alice", "three") is None

    assert ta.sent[-1] == "❌ Rate limited, slow down."
    assert _lines(tb, "alice", "three") == []
    assert hub.stats.get("rate_limited") == 1


def test_payload_from_unknown_session_is_dropped(make_hub) -> None:
    hub = make_hub()
    assert hub.receive("ghost", "hello") is None
    assert hub.stats.get("payloads_in") == 0


def test_bot_marker_is_plain_text_when_bot_disabled(make_hub) -> None:
    hub = make_hub(bot_enabled=False)
    ta = join(hub, "alice")
    env = hub.receive("sess-alice", "@bot are you there?")
    assert env is not None and env.kind != KIND_BOT_QUERY
    assert hub.responder.wait_idle(2.0)
    assert len(ta.sent) == 1
