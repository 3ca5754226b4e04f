from __future__ import annotations

from enum import Enum
from typing import Any

from .constants import (
    D_CREATE,
    D_DELETE,
    D_UPDATE,
    K_BODY,
    K_DIRECTIVE,
    K_HEADERS,
    K_ORIGIN,
    K_PAYLOAD,
    K_TARGETS,
    K_TOPIC,
    TOPIC_CONTACT,
    TOPIC_CONTACT_INFORMATION,
    TOPIC_CONTACT_STATUS,
    TOPIC_GROUP,
    TOPIC_GROUP_INFORMATION,
    TOPIC_GROUP_MEMBER,
    TOPIC_MESSAGE,
)


class EventKind(Enum):
    CONTACT_CREATE = "contact-create"
    CONTACT_UPDATE = "contact-update"
    CONTACT_DELETE = "contact-delete"
    GROUP_CREATE = "group-create"
    GROUP_UPDATE = "group-update"
    GROUP_DELETE = "group-delete"
    MEMBER_CREATE = "member-create"
    MEMBER_UPDATE = "member-update"
    MEMBER_DELETE = "member-delete"
    MESSAGE_CREATE = "message-create"
    MESSAGE_UPDATE = "message-update"
    MESSAGE_DELETE = "message-delete"

    @classmethod
    def from_pair(cls, directive: str, topic: str) -> EventKind | None:
        return _KINDS_BY_PAIR.get((directive, topic))


_KINDS_BY_PAIR: dict[tuple[str, str], EventKind] = {
    (D_CREATE, TOPIC_CONTACT): EventKind.CONTACT_CREATE,
    (D_UPDATE, TOPIC_CONTACT_STATUS): EventKind.CONTACT_UPDATE,
    (D_UPDATE, TOPIC_CONTACT_INFORMATION): EventKind.CONTACT_UPDATE,
    (D_DELETE, TOPIC_CONTACT): EventKind.CONTACT_DELETE,
    (D_DELETE, TOPIC_CONTACT_STATUS): EventKind.CONTACT_DELETE,
    (D_CREATE, TOPIC_GROUP): EventKind.GROUP_CREATE,
    (D_UPDATE, TOPIC_GROUP_INFORMATION): EventKind.GROUP_UPDATE,
    (D_DELETE, TOPIC_GROUP): EventKind.GROUP_DELETE,
    (D_CREATE, TOPIC_GROUP_MEMBER): EventKind.MEMBER_CREATE,
    (D_UPDATE, TOPIC_GROUP_MEMBER): EventKind.MEMBER_UPDATE,
    (D_DELETE, TOPIC_GROUP_MEMBER): EventKind.MEMBER_DELETE,
    (D_CREATE, TOPIC_MESSAGE): EventKind.MESSAGE_CREATE,
    (D_UPDATE, TOPIC_MESSAGE): EventKind.MESSAGE_UPDATE,
    (D_DELETE, TOPIC_MESSAGE): EventKind.MESSAGE_DELETE,
}


def make_envelope(
    directive: str,
    topic: str,
    *,
    origin: str,
    target_s: str | list[str] | None = None,
    headers: dict[str, Any] | None = None,
    body: Any = None,
) -> dict:
    env: dict[str, Any] = {
        K_ORIGIN: origin,
        K_DIRECTIVE: directive,
        K_TOPIC: topic,
        K_PAYLOAD: {K_HEADERS: headers, K_BODY: body},
    }
    if target_s is not None:
        env[K_TARGETS] = target_s if isinstance(target_s, str) else list(target_s)
    return env


def validate_envelope(env: Any) -> None:
    if not isinstance(env, dict):
        raise TypeError("envelope must be a JSON object")

    for k in (K_ORIGIN, K_DIRECTIVE, K_TOPIC, K_PAYLOAD):
        if env.get(k) is None:
            raise ValueError(f"missing envelope field {k!r}")

    origin = env[K_ORIGIN]
    if not isinstance(origin, str) or not origin:
        raise TypeError("origin must be a non-empty string")

    directive = env[K_DIRECTIVE]
    if not isinstance(directive, str):
        raise TypeError("directive must be a string")

    topic = env[K_TOPIC]
    if not isinstance(topic, str):
        raise TypeError("topic must be a string")
    if topic == "":
        raise ValueError("topic must not be empty")

    payload = env[K_PAYLOAD]
    if not isinstance(payload, dict):
        raise TypeError("payload must be an object")

    headers = payload.get(K_HEADERS)
    if headers is not None:
        if not isinstance(headers, dict):
            raise TypeError("payload headers must be an object or null")
        for v in headers.values():
            if isinstance(v, (dict, list)):
                raise TypeError("header values must be scalars")

    if K_TARGETS in env and env[K_TARGETS] is not None:
        targets = env[K_TARGETS]
        if isinstance(targets, str):
            if not targets:
                raise ValueError("target must not be empty")
        elif isinstance(targets, list):
            if not all(isinstance(t, str) and t for t in targets):
                raise TypeError("target list must contain non-empty strings")
        else:
            raise TypeError("target_s must be a string or a list of strings")


def normalize_targets(env: dict) -> list[str] | None:
    targets = env.get(K_TARGETS)
    if targets is None:
        return None
    if isinstance(targets, str):
        return [targets]
    return list(targets)


def envelope_headers(env: dict) -> dict[str, Any]:
    payload = env.get(K_PAYLOAD) or {}
    headers = payload.get(K_HEADERS)
    return headers if isinstance(headers, dict) else {}


def envelope_body(env: dict) -> Any:
    payload = env.get(K_PAYLOAD) or {}
    return payload.get(K_BODY)
