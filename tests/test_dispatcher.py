import json
import logging

from waverelay.envelope import make_envelope


def _event(directive: str, topic: str, origin: str, **kwargs) -> bytes:
    return json.dumps(make_envelope(directive, topic, origin=origin, **kwargs)).encode("utf-8")


def _online(relay, make_conn, *identities: str) -> dict:
    conns = {}
    for identity in identities:
        conn = make_conn(identity)
        relay.registry.attach(conn, identity)
        conns[identity] = conn
    return conns


def test_explicit_target_receives_and_origin_does_not(make_relay, make_conn, parse_packet) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "A", "B")

    relay.on_event(
        _event("CREATE", "contact", "A", target_s="B", headers={"user": "B"}, body={"username": "A"})
    )

    assert conns["A"].sent == []
    assert len(conns["B"].sent) == 1
    first, headers, body = parse_packet(conns["B"].sent[0])
    assert first == "CREATE contact"
    assert headers == {"user": "B"}
    assert body == {"username": "A"}


def test_offline_recipient_is_skipped(make_relay, make_conn) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "A")

    relay.on_event(_event("CREATE", "contact", "A", target_s="B", headers={"user": "B"}))

    assert conns["A"].sent == []
    assert relay.stats.get("offline_skips") == 1
    assert relay.stats.get("packets_out") == 0


def test_rename_rewrites_cache_and_notifies_contacts(make_relay, make_conn, parse_packet) -> None:
    relay = make_relay(snapshot={"contacts": {"old": ["X", "Y"]}, "groups": {}})
    conns = _online(relay, make_conn, "old", "X", "Y")

    relay.on_event(
        _event(
            "UPDATE",
            "contact/information",
            "old",
            headers={"old_username": "old"},
            body={"username": "new"},
        )
    )

    assert "old" not in relay.relationships.contacts
    assert relay.relationships.contacts_of("new") == {"X", "Y"}
    assert relay.relationships.contacts_of("X") == {"new"}
    assert relay.registry.lookup("new") is conns["old"]
    assert relay.registry.lookup("old") is None

    for name in ("X", "Y"):
        assert len(conns[name].sent) == 1
        first, _, body = parse_packet(conns[name].sent[0])
        assert first == "UPDATE contact/information"
        assert body == {"username": "new"}
    assert conns["old"].sent == []


def test_status_update_without_directive_is_information_change(make_relay, make_conn) -> None:
    relay = make_relay(snapshot={"contacts": {"alice": ["bob"]}, "groups": {}})
    conns = _online(relay, make_conn, "bob")

    relay.on_event(_event("UPDATE", "contact/status", "alice", body={"username": "alicia"}))

    assert relay.relationships.contacts_of("bob") == {"alicia"}
    assert len(conns["bob"].sent) == 1


def test_missing_topic_is_logged_and_nothing_is_sent(make_relay, make_conn, caplog) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "B")
    env = make_envelope("CREATE", "contact", origin="A", target_s="B")
    env.pop("topic")

    with caplog.at_level(logging.WARNING, logger="waverelay.dispatcher"):
        relay.on_event(json.dumps(env).encode("utf-8"))

    assert conns["B"].sent == []
    errors = [r for r in caplog.records if "Protocol error" in r.getMessage()]
    assert len(errors) == 1
    assert relay.stats.get("events_bad") == 1


def test_malformed_envelope_reports_to_online_origin(make_relay, make_conn, parse_packet) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "A", "B")
    env = make_envelope("CREATE", "contact", origin="A", target_s="B")
    env["payload"] = None

    relay.on_event(json.dumps(env))

    assert conns["B"].sent == []
    assert len(conns["A"].sent) == 1
    first, _, body = parse_packet(conns["A"].sent[0])
    assert first == "ERROR"
    assert body["error"] == 60


def test_undecodable_event_is_dropped(make_relay, make_conn) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "A")

    relay.on_event(b"\xff not json")
    relay.on_event(b"[1, 2, 3]")

    assert conns["A"].sent == []
    assert relay.stats.get("events_bad") == 2


def test_unmapped_pair_is_dropped(make_relay, make_conn) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "B")

    relay.on_event(_event("CREATE", "weather", "A", target_s="B"))

    assert conns["B"].sent == []
    assert relay.stats.get("events_unmapped") == 1


def test_contact_create_and_delete_maintain_cache(make_relay, make_conn) -> None:
    relay = make_relay()
    _online(relay, make_conn, "B")

    relay.on_event(_event("CREATE", "contact", "A", headers={"user": "B"}))
    assert relay.relationships.contacts_of("A") == {"B"}

    relay.on_event(_event("DELETE", "contact", "A", headers={"user": "B"}))
    assert relay.relationships.contacts_of("A") == set()
    assert relay.relationships.contacts == {}


def test_status_directives_add_and_remove_contacts(make_relay, make_conn) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "B")

    relay.on_event(
        _event("UPDATE", "contact/status", "A", headers={"user": "B", "directive": "accept"})
    )
    assert relay.relationships.contacts_of("B") == {"A"}

    relay.on_event(
        _event("UPDATE", "contact/status", "A", headers={"user": "B", "directive": "block"})
    )
    assert relay.relationships.contacts_of("B") == set()
    assert len(conns["B"].sent) == 2


def test_group_create_notifies_members_except_origin(make_relay, make_conn) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "A", "B", "C")

    relay.on_event(
        _event("CREATE", "group", "A", headers={"group": "g1"}, body={"members": ["B", "C"]})
    )

    assert relay.relationships.members_of("g1") == {"A", "B", "C"}
    assert conns["A"].sent == []
    assert len(conns["B"].sent) == 1
    assert len(conns["C"].sent) == 1


def test_member_delete_notifies_removed_member_first(make_relay, make_conn) -> None:
    relay = make_relay(snapshot={"contacts": {}, "groups": {"g1": ["A", "B", "C"]}})
    conns = _online(relay, make_conn, "A", "B", "C")

    relay.on_event(_event("DELETE", "group/member", "A", headers={"group": "g1", "member": "C"}))

    assert relay.relationships.members_of("g1") == {"A", "B"}
    assert len(conns["B"].sent) == 1
    assert len(conns["C"].sent) == 1
    assert conns["A"].sent == []


def test_member_create_defaults_to_origin(make_relay, make_conn) -> None:
    relay = make_relay(snapshot={"contacts": {}, "groups": {"g1": ["A"]}})
    conns = _online(relay, make_conn, "A")

    relay.on_event(_event("CREATE", "group/member", "B", headers={"group": "g1"}))

    assert relay.relationships.members_of("g1") == {"A", "B"}
    assert len(conns["A"].sent) == 1


def test_group_delete_drops_group(make_relay, make_conn) -> None:
    relay = make_relay(snapshot={"contacts": {}, "groups": {"g1": ["A", "B"]}})
    conns = _online(relay, make_conn, "B")

    relay.on_event(_event("DELETE", "group", "A", headers={"group": "g1"}))

    assert "g1" not in relay.relationships.groups
    assert len(conns["B"].sent) == 1


def test_group_message_fans_out_to_members(make_relay, make_conn) -> None:
    relay = make_relay(snapshot={"contacts": {}, "groups": {"g1": ["A", "B", "C"]}})
    conns = _online(relay, make_conn, "A", "B")

    relay.on_event(_event("CREATE", "message", "A", headers={"group": "g1"}, body={"text": "hi"}))

    assert conns["A"].sent == []
    assert len(conns["B"].sent) == 1
    assert relay.stats.get("offline_skips") == 1


def test_direct_message_goes_to_contact_header(make_relay, make_conn) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "A", "B")

    relay.on_event(_event("DELETE", "message", "A", headers={"contact": "B"}))

    assert len(conns["B"].sent) == 1
    assert conns["A"].sent == []


def test_explicit_targets_are_deduplicated(make_relay, make_conn) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "B", "C")

    relay.on_event(_event("UPDATE", "message", "A", target_s=["B", "C", "B"]))

    assert len(conns["B"].sent) == 1
    assert len(conns["C"].sent) == 1


def test_send_failure_does_not_stop_fan_out(make_relay, make_conn) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "B", "C")

    def broken(payload: str) -> None:
        raise OSError("connection reset")

    conns["B"].send = broken

    relay.on_event(_event("UPDATE", "message", "A", target_s=["B", "C"]))

    assert len(conns["C"].sent) == 1


def test_unknown_directive_is_dropped_without_reply(make_relay, make_conn) -> None:
    relay = make_relay()
    conns = _online(relay, make_conn, "A", "B")

    relay.on_event(_event("PATCH", "contact", "A", target_s="B"))

    assert conns["A"].sent == []
    assert conns["B"].sent == []
    assert relay.stats.get("events_unmapped") == 1
    assert relay.stats.get("events_bad") == 0


def test_rename_onto_online_identity_closes_displaced_connection(make_relay, make_conn) -> None:
    relay = make_relay(snapshot={"contacts": {"old": ["X"]}, "groups": {}})
    conns = _online(relay, make_conn, "old", "new", "X")

    relay.on_event(
        _event(
            "UPDATE",
            "contact/information",
            "old",
            headers={"old_username": "old"},
            body={"username": "new"},
        )
    )

    assert relay.registry.lookup("new") is conns["old"]
    assert [code for code, _ in conns["new"].closed] == [4000]
    assert conns["old"].closed == []
    assert len(conns["X"].sent) == 1


def test_rename_keeps_displaced_connection_open_when_configured(make_relay, make_conn) -> None:
    relay = make_relay(close_superseded=False)
    conns = _online(relay, make_conn, "old", "new")

    relay.on_event(
        _event("UPDATE", "contact/information", "old", body={"username": "new"})
    )

    assert relay.registry.lookup("new") is conns["old"]
    assert conns["new"].closed == []
