from __future__ import annotations

import itertools
import json
from typing import Any, Callable

import pytest

from waverelay.config import RelayRuntimeConfig
from waverelay.errors import REASON_TOKEN_NOT_FOUND, UNAUTHORIZED, AuthorizationError
from waverelay.service import RelayService

_conn_ids = itertools.count(1)


class FakeConn:
    """Stands in for a websockets ServerConnection."""

    def __init__(self, name: str | None = None) -> None:
        self.id = name or f"conn-{next(_conn_ids)}"
        self.sent: list[str] = []
        self.closed: list[tuple[int, str]] = []

    def send(self, payload: str) -> None:
        self.sent.append(payload)

    def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed.append((code, reason))


class FakeStore:
    def __init__(
        self,
        sessions: dict[str, Any] | None = None,
        snapshot: dict[str, Any] | None = None,
    ) -> None:
        self.sessions = dict(sessions or {})
        self.snapshot = snapshot or {"contacts": {}, "groups": {}}
        self.calls: list[str] = []

    def authorize(self, token: str) -> str:
        self.calls.append(token)
        result = self.sessions.get(token)
        if result is None:
            raise AuthorizationError(UNAUTHORIZED, REASON_TOKEN_NOT_FOUND)
        if isinstance(result, AuthorizationError):
            raise result
        return result

    def load_relationships(self) -> dict[str, Any]:
        return self.snapshot


def split_packet(text: str) -> tuple[str, dict[str, str], Any]:
    head, sep, body = text.partition("\n\n")
    lines = head.split("\n")
    headers: dict[str, str] = {}
    for line in lines[1:]:
        key, _, value = line.partition(": ")
        headers[key] = value
    return lines[0], headers, (json.loads(body) if sep else None)


@pytest.fixture
def parse_packet() -> Callable[[str], tuple[str, dict[str, str], Any]]:
    return split_packet


@pytest.fixture
def make_conn() -> Callable[..., FakeConn]:
    return FakeConn


@pytest.fixture
def make_relay() -> Callable[..., RelayService]:
    def _make(
        *,
        sessions: dict[str, Any] | None = None,
        snapshot: dict[str, Any] | None = None,
        context: Any = None,
        preload: bool = True,
        **config: Any,
    ) -> RelayService:
        store = FakeStore(sessions=sessions, snapshot=snapshot)
        relay = RelayService(
            RelayRuntimeConfig(**config),
            authorizer=store,
            relationships=store,
            context=context,
        )
        if preload:
            relay.relationships.load(store.load_relationships())
        return relay

    return _make
