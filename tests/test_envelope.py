import pytest

from waverelay.constants import K_PAYLOAD, K_TARGETS, K_TOPIC
from waverelay.envelope import (
    EventKind,
    envelope_body,
    envelope_headers,
    make_envelope,
    normalize_targets,
    validate_envelope,
)


def test_validate_accepts_make_envelope() -> None:
    env = make_envelope(
        "CREATE", "contact", origin="alice", target_s="bob", headers={"user": "bob"}
    )
    validate_envelope(env)


def test_make_envelope_omits_absent_targets() -> None:
    env = make_envelope("DELETE", "group", origin="alice")
    assert K_TARGETS not in env
    assert env[K_PAYLOAD] == {"headers": None, "body": None}
    validate_envelope(env)


def test_validate_rejects_missing_topic() -> None:
    env = make_envelope("CREATE", "contact", origin="alice")
    env.pop(K_TOPIC)
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_validate_leaves_unknown_directive_to_routing() -> None:
    validate_envelope(make_envelope("PATCH", "contact", origin="alice"))

    env = make_envelope("CREATE", "contact", origin="alice")
    env["directive"] = 3
    with pytest.raises(TypeError):
        validate_envelope(env)


def test_validate_rejects_non_object() -> None:
    with pytest.raises(TypeError):
        validate_envelope(["CREATE", "contact"])


def test_validate_rejects_structured_header_values() -> None:
    env = make_envelope("CREATE", "contact", origin="alice", headers={"user": ["bob"]})
    with pytest.raises(TypeError):
        validate_envelope(env)


def test_validate_rejects_bad_targets() -> None:
    env = make_envelope("CREATE", "contact", origin="alice")
    env[K_TARGETS] = ["bob", ""]
    with pytest.raises(TypeError):
        validate_envelope(env)

    env[K_TARGETS] = 7
    with pytest.raises(TypeError):
        validate_envelope(env)

    env[K_TARGETS] = ""
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_normalize_targets() -> None:
    assert normalize_targets(make_envelope("CREATE", "c", origin="a")) is None
    assert normalize_targets(make_envelope("CREATE", "c", origin="a", target_s="b")) == ["b"]
    assert normalize_targets(
        make_envelope("CREATE", "c", origin="a", target_s=["b", "c"])
    ) == ["b", "c"]


def test_payload_accessors_tolerate_nulls() -> None:
    env = make_envelope("CREATE", "message", origin="a", body={"text": "hi"})
    assert envelope_headers(env) == {}
    assert envelope_body(env) == {"text": "hi"}


def test_event_kind_from_pair() -> None:
    assert EventKind.from_pair("CREATE", "contact") is EventKind.CONTACT_CREATE
    assert EventKind.from_pair("UPDATE", "contact/status") is EventKind.CONTACT_UPDATE
    assert EventKind.from_pair("UPDATE", "contact/information") is EventKind.CONTACT_UPDATE
    assert EventKind.from_pair("DELETE", "group/member") is EventKind.MEMBER_DELETE
    assert EventKind.from_pair("UPDATE", "message") is EventKind.MESSAGE_UPDATE
    assert EventKind.from_pair("CREATE", "weather") is None
    assert EventKind.from_pair("UPDATE", "contact") is None
