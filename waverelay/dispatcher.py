from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Callable

from .codec import encode
from .constants import (
    B_MEMBERS,
    B_USERNAME,
    H_CONTACT,
    H_DIRECTIVE,
    H_GROUP,
    H_MEMBER,
    H_OLD_USERNAME,
    H_USER,
    K_DIRECTIVE,
    K_HEADERS,
    K_ORIGIN,
    K_PAYLOAD,
    K_TOPIC,
    STATUS_ADDS_CONTACT,
    STATUS_REMOVES_CONTACT,
    TOPIC_CONTACT_INFORMATION,
    TOPIC_CONTACT_STATUS,
    V_ERROR,
)
from .envelope import (
    EventKind,
    envelope_body,
    envelope_headers,
    normalize_targets,
    validate_envelope,
)
from .errors import INCORRECT_PACKET_SCHEMA, error_body
from .util import fmt_conn, normalize_identity

if TYPE_CHECKING:
    from .service import RelayService

# Resolves cache-derived recipients for one envelope; applies cache side effects.
_Handler = Callable[[dict, str, dict, Any], list[str]]


class EventDispatcher:
    """
    Turns envelopes pulled off the event transport into client packets.

    This class is responsible for:
    - Decoding and validating envelopes
    - Mapping (directive, topic) to an event handler
    - Resolving recipients from explicit targets or the relationship cache
    - Keeping the relationship cache current (contacts, groups, renames)
    - Queueing encoded packets for recipients that are online
    """

    def __init__(self, relay: RelayService) -> None:
        self.relay = relay
        self.log = logging.getLogger("waverelay.dispatcher")

        self._handlers: dict[EventKind, _Handler] = {
            EventKind.CONTACT_CREATE: self._on_contact_create,
            EventKind.CONTACT_UPDATE: self._on_contact_update,
            EventKind.CONTACT_DELETE: self._on_contact_delete,
            EventKind.GROUP_CREATE: self._on_group_create,
            EventKind.GROUP_UPDATE: self._on_group_update,
            EventKind.GROUP_DELETE: self._on_group_delete,
            EventKind.MEMBER_CREATE: self._on_member_create,
            EventKind.MEMBER_UPDATE: self._on_member_update,
            EventKind.MEMBER_DELETE: self._on_member_delete,
            EventKind.MESSAGE_CREATE: self._on_message,
            EventKind.MESSAGE_UPDATE: self._on_message,
            EventKind.MESSAGE_DELETE: self._on_message,
        }
        # Connections displaced by a rename while routing the current event.
        self._superseded: list[Any] = []

    def route_event(
        self,
        raw: str | bytes,
        outgoing: list[tuple[Any, str]],
        closing: list[Any] | None = None,
    ) -> None:
        """
        Main entry point for one envelope pulled off the transport.

        Connections displaced by a username change are appended to `closing`
        for the caller to close. This method should be called with the state
        lock held.
        """
        stats = self.relay.stats
        stats.inc("events_in")

        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = bytes(raw).decode("utf-8")
            env = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as e:
            stats.inc("events_bad")
            self.log.warning("Protocol error: undecodable envelope bytes=%s err=%s", len(raw), e)
            return

        try:
            validate_envelope(env)
        except (TypeError, ValueError) as e:
            stats.inc("events_bad")
            bad_origin = env.get(K_ORIGIN) if isinstance(env, dict) else None
            self.log.warning("Protocol error: bad envelope origin=%r err=%s", bad_origin, e)
            self._queue_schema_error(bad_origin, outgoing)
            return

        origin: str = env[K_ORIGIN]
        directive: str = env[K_DIRECTIVE]
        topic: str = env[K_TOPIC]

        kind = EventKind.from_pair(directive, topic)
        if kind is None:
            stats.inc("events_unmapped")
            self.log.info(
                "Unmapped event dropped origin=%s directive=%s topic=%s",
                origin,
                directive,
                topic,
            )
            return

        headers = envelope_headers(env)
        body = envelope_body(env)

        self._superseded.clear()
        resolved = self._handlers[kind](env, origin, headers, body)
        if self._superseded and closing is not None:
            closing.extend(self._superseded)
        self._superseded.clear()

        explicit = normalize_targets(env)
        recipients = explicit if explicit is not None else resolved

        payload = env[K_PAYLOAD]
        packet = encode(directive, topic, payload.get(K_HEADERS), body)

        sent = 0
        for recipient in _unique(recipients):
            conn = self.relay.registry.lookup(recipient)
            if conn is None:
                stats.inc("offline_skips")
                continue
            outgoing.append((conn, packet))
            sent += 1

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Event %s origin=%s recipients=%s online=%s explicit=%s",
                kind.value,
                origin,
                len(recipients),
                sent,
                explicit is not None,
            )

    def _queue_schema_error(self, origin: Any, outgoing: list[tuple[Any, str]]) -> None:
        if not isinstance(origin, str) or not origin:
            return
        conn = self.relay.registry.lookup(origin)
        if conn is None:
            return
        self.relay.stats.inc("errors_sent")
        outgoing.append((conn, encode(V_ERROR, body=error_body(INCORRECT_PACKET_SCHEMA))))
        self.log.debug("Queued schema error to origin=%s conn=%s", origin, fmt_conn(conn))

    # Contacts

    def _contact_peer(self, env: dict, headers: dict) -> str | None:
        peer = normalize_identity(headers.get(H_USER))
        if peer is not None:
            return peer
        targets = normalize_targets(env)
        if targets and len(targets) == 1:
            return targets[0]
        return None

    def _on_contact_create(self, env: dict, origin: str, headers: dict, body: Any) -> list[str]:
        peer = self._contact_peer(env, headers)
        if peer is None:
            return []
        self.relay.relationships.add_contact(origin, peer)
        return [peer]

    def _on_contact_update(self, env: dict, origin: str, headers: dict, body: Any) -> list[str]:
        topic = env[K_TOPIC]
        if topic == TOPIC_CONTACT_INFORMATION or (
            topic == TOPIC_CONTACT_STATUS and H_DIRECTIVE not in headers
        ):
            return self._on_information_changed(origin, headers, body)

        peer = self._contact_peer(env, headers)
        if peer is None:
            return []

        status = str(headers.get(H_DIRECTIVE) or "").strip().lower()
        if status in STATUS_ADDS_CONTACT:
            self.relay.relationships.add_contact(origin, peer)
        elif status in STATUS_REMOVES_CONTACT:
            self.relay.relationships.remove_contact(origin, peer)
        return [peer]

    def _on_information_changed(self, origin: str, headers: dict, body: Any) -> list[str]:
        old = normalize_identity(headers.get(H_OLD_USERNAME)) or origin
        new = None
        if isinstance(body, dict):
            new = normalize_identity(body.get(B_USERNAME))
        if new is None:
            new = old

        if new != old:
            self.relay.relationships.rename(old, new)
            stale = self.relay.registry.rename(old, new)
            if stale is not None:
                self._superseded.append(stale)
            self.log.info("Identity renamed %s -> %s", old, new)

        return sorted(self.relay.relationships.contacts_of(new))

    def _on_contact_delete(self, env: dict, origin: str, headers: dict, body: Any) -> list[str]:
        peer = self._contact_peer(env, headers)
        if peer is None:
            return []
        self.relay.relationships.remove_contact(origin, peer)
        return [peer]

    # Groups

    def _group_audience(self, group: str | None, origin: str) -> list[str]:
        if group is None:
            return []
        return sorted(self.relay.relationships.members_of(group) - {origin})

    def _on_group_create(self, env: dict, origin: str, headers: dict, body: Any) -> list[str]:
        group = _group_id(headers)
        if group is None:
            return []
        members: set[str] = {origin}
        raw_members = body.get(B_MEMBERS) if isinstance(body, dict) else None
        if isinstance(raw_members, list):
            members.update(m for m in (normalize_identity(x) for x in raw_members) if m)
        self.relay.relationships.set_group(group, members)
        return self._group_audience(group, origin)

    def _on_group_update(self, env: dict, origin: str, headers: dict, body: Any) -> list[str]:
        return self._group_audience(_group_id(headers), origin)

    def _on_group_delete(self, env: dict, origin: str, headers: dict, body: Any) -> list[str]:
        group = _group_id(headers)
        recipients = self._group_audience(group, origin)
        if group is not None:
            self.relay.relationships.drop_group(group)
        return recipients

    def _member_of_event(self, origin: str, headers: dict, body: Any) -> str:
        member = normalize_identity(headers.get(H_MEMBER))
        if member is None and isinstance(body, dict):
            member = normalize_identity(body.get(B_USERNAME))
        return member or origin

    def _on_member_create(self, env: dict, origin: str, headers: dict, body: Any) -> list[str]:
        group = _group_id(headers)
        if group is None:
            return []
        self.relay.relationships.add_member(group, self._member_of_event(origin, headers, body))
        return self._group_audience(group, origin)

    def _on_member_update(self, env: dict, origin: str, headers: dict, body: Any) -> list[str]:
        return self._group_audience(_group_id(headers), origin)

    def _on_member_delete(self, env: dict, origin: str, headers: dict, body: Any) -> list[str]:
        group = _group_id(headers)
        # Resolve first so the removed member hears about it.
        recipients = self._group_audience(group, origin)
        if group is not None:
            self.relay.relationships.remove_member(
                group, self._member_of_event(origin, headers, body)
            )
        return recipients

    # Messages

    def _on_message(self, env: dict, origin: str, headers: dict, body: Any) -> list[str]:
        group = _group_id(headers)
        if group is not None:
            return self._group_audience(group, origin)
        peer = normalize_identity(headers.get(H_CONTACT)) or normalize_identity(
            headers.get(H_USER)
        )
        return [peer] if peer is not None else []


def _group_id(headers: dict) -> str | None:
    group = headers.get(H_GROUP)
    if group is None or isinstance(group, bool):
        return None
    text = str(group).strip()
    return text or None


def _unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out
