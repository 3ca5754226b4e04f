from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .constants import K_TOKEN


@dataclass(frozen=True)
class Handshake:
    token: str | None = None


def _format_header_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode(
    verb: str,
    scope: str | None = None,
    headers: dict[str, Any] | None = None,
    body: Any = None,
) -> str:
    """Format an outbound channel packet.

    VERB SCOPE
    key: value

    {
        "body": ...
    }
    """
    out = str(verb)
    if scope:
        out += f" {scope}"

    if headers:
        for key, value in headers.items():
            out += f"\n{key}: {_format_header_value(value)}"

    if body is not None:
        out += "\n\n" + json.dumps(body, indent=4, ensure_ascii=False)

    return out


def decode(raw: str | bytes | bytearray) -> Handshake:
    # Anything other than {"token": "<non-empty string>"} counts as no token.
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return Handshake()

    try:
        packet = json.loads(raw)
    except (TypeError, ValueError):
        return Handshake()

    if not isinstance(packet, dict):
        return Handshake()

    token = packet.get(K_TOKEN)
    if not isinstance(token, str) or not token:
        return Handshake()

    return Handshake(token=token)
