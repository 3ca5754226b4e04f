import pytest

from waverelay.errors import (
    REASON_TOKEN_EXPIRED,
    REASON_TOKEN_MALFORMED,
    REASON_TOKEN_NOT_FOUND,
    AuthorizationError,
)
from waverelay.store import CONTACT_ACCEPTED, CONTACT_BLOCKED, CONTACT_PENDING, SqliteStore


@pytest.fixture
def store(tmp_path) -> SqliteStore:
    s = SqliteStore(str(tmp_path / "wave.db"), session_duration_s=900)
    s.init_schema()
    return s


def test_authorize_returns_username_and_refreshes(store: SqliteStore) -> None:
    uid = store.create_user("alice")
    token = store.create_session(uid, now=1000.0)

    assert store.authorize(token, now=1600.0) == "alice"
    # Refreshed at 1600, so still valid 600s later.
    assert store.authorize(token, now=2200.0) == "alice"


def test_authorize_rejects_malformed_token(store: SqliteStore) -> None:
    with pytest.raises(AuthorizationError) as exc:
        store.authorize("not-a-real-token")
    assert exc.value.code == 40
    assert exc.value.reason == REASON_TOKEN_MALFORMED


def test_authorize_rejects_unknown_token(store: SqliteStore) -> None:
    with pytest.raises(AuthorizationError) as exc:
        store.authorize("0f8c5b2e-8d7a-4c1e-9f3b-2a6d4e5f7a8b")
    assert exc.value.code == 40
    assert exc.value.reason == REASON_TOKEN_NOT_FOUND


def test_authorize_expires_stale_session(store: SqliteStore) -> None:
    uid = store.create_user("alice")
    token = store.create_session(uid, now=1000.0)

    with pytest.raises(AuthorizationError) as exc:
        store.authorize(token, now=1000.0 + 901)
    assert exc.value.code == 41
    assert exc.value.reason == REASON_TOKEN_EXPIRED
    assert store.session_active(token) is False

    with pytest.raises(AuthorizationError) as exc:
        store.authorize(token, now=1000.0 + 902)
    assert exc.value.code == 40


def test_load_relationships_only_counts_accepted_contacts(store: SqliteStore) -> None:
    alice = store.create_user("alice")
    bob = store.create_user("bob")
    carol = store.create_user("carol")
    dave = store.create_user("dave")

    store.set_contact(alice, bob, CONTACT_ACCEPTED)
    store.set_contact(carol, alice, CONTACT_PENDING)
    store.set_contact(dave, alice, CONTACT_BLOCKED)
    store.add_member("g1", alice)
    store.add_member("g1", carol)
    store.add_member("g2", dave)

    snapshot = store.load_relationships()

    assert snapshot["contacts"] == {"alice": ["bob"], "bob": ["alice"]}
    assert sorted(snapshot["groups"]["g1"]) == ["alice", "carol"]
    assert snapshot["groups"]["g2"] == ["dave"]


def test_init_schema_is_idempotent(store: SqliteStore) -> None:
    store.create_user("alice")
    store.init_schema()
    assert store.load_relationships() == {"contacts": {}, "groups": {}}
