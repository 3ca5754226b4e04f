from __future__ import annotations

import os
from typing import Any


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_identity(value: Any) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    # Identities end up as map keys and packet header values.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    return s


def fmt_conn(conn: Any) -> str:
    cid = getattr(conn, "id", None)
    if cid is not None:
        return str(cid)
    return f"{id(conn):x}"
