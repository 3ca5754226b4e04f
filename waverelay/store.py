"""Persistence collaborators consumed by the relay.

The relay never writes relationship state. It reads it once at startup and
asks the session table who owns a token during the handshake.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import time
import uuid
from typing import Any, Protocol

from .errors import (
    REASON_TOKEN_EXPIRED,
    REASON_TOKEN_MALFORMED,
    REASON_TOKEN_NOT_FOUND,
    TIMEOUT,
    UNAUTHORIZED,
    AuthorizationError,
)

_TOKEN_RE = re.compile(
    r"^[a-fA-F0-9]{8}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{12}$"
)

# Contact rows: P(ending), A(ccepted), B(locked). Only accepted rows are mutual.
CONTACT_PENDING = "P"
CONTACT_ACCEPTED = "A"
CONTACT_BLOCKED = "B"

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS sessions (
    session_token TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
    last_updated REAL NOT NULL,
    active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS contacts (
    first_user INTEGER NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
    second_user INTEGER NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'P',
    PRIMARY KEY (first_user, second_user)
);

CREATE TABLE IF NOT EXISTS members (
    group_id TEXT NOT NULL,
    user_id INTEGER NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
    PRIMARY KEY (group_id, user_id)
);
"""


class SessionAuthorizer(Protocol):
    def authorize(self, token: str) -> str:
        """Return the identity owning `token` or raise AuthorizationError."""
        ...


class RelationshipSource(Protocol):
    def load_relationships(self) -> dict[str, Any]:
        """Return {"contacts": {identity: [identity]}, "groups": {group: [identity]}}."""
        ...


def get_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


class SqliteStore:
    """SQLite-backed session authorizer and relationship source.

    A fresh connection is opened per call, so one store may be shared by the
    relay's connection threads.
    """

    def __init__(self, db_path: str, *, session_duration_s: float = 15 * 60.0) -> None:
        self.db_path = db_path
        self.session_duration_s = float(session_duration_s)
        self.log = logging.getLogger("waverelay.store")

    def init_schema(self) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.executescript(SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def authorize(self, token: str, *, now: float | None = None) -> str:
        if not isinstance(token, str) or not _TOKEN_RE.match(token):
            raise AuthorizationError(UNAUTHORIZED, REASON_TOKEN_MALFORMED)

        ts = time.time() if now is None else float(now)

        conn = get_connection(self.db_path)
        try:
            with conn:
                row = conn.execute(
                    "SELECT s.last_updated, u.username "
                    "FROM sessions s JOIN users u ON u.user_id = s.user_id "
                    "WHERE s.session_token = ? AND s.active = 1",
                    (token,),
                ).fetchone()

                if row is None:
                    raise AuthorizationError(UNAUTHORIZED, REASON_TOKEN_NOT_FOUND)

                if ts - float(row["last_updated"]) > self.session_duration_s:
                    conn.execute(
                        "UPDATE sessions SET active = 0 WHERE session_token = ?",
                        (token,),
                    )
                    expired = True
                else:
                    conn.execute(
                        "UPDATE sessions SET last_updated = ? WHERE session_token = ?",
                        (ts, token),
                    )
                    expired = False
        finally:
            conn.close()

        # Raised after the commit so the deactivation sticks.
        if expired:
            raise AuthorizationError(TIMEOUT, REASON_TOKEN_EXPIRED)

        return str(row["username"])

    def load_relationships(self) -> dict[str, Any]:
        contacts: dict[str, list[str]] = {}
        groups: dict[str, list[str]] = {}

        conn = get_connection(self.db_path)
        try:
            for row in conn.execute(
                "SELECT a.username AS first_name, b.username AS second_name "
                "FROM contacts c "
                "JOIN users a ON a.user_id = c.first_user "
                "JOIN users b ON b.user_id = c.second_user "
                "WHERE c.status = ?",
                (CONTACT_ACCEPTED,),
            ):
                first = str(row["first_name"])
                second = str(row["second_name"])
                contacts.setdefault(first, []).append(second)
                contacts.setdefault(second, []).append(first)

            for row in conn.execute(
                "SELECT m.group_id, u.username "
                "FROM members m JOIN users u ON u.user_id = m.user_id "
                "ORDER BY m.group_id"
            ):
                groups.setdefault(str(row["group_id"]), []).append(str(row["username"]))
        finally:
            conn.close()

        self.log.debug(
            "Relationships read from %s contacts=%s groups=%s",
            self.db_path,
            len(contacts),
            len(groups),
        )
        return {"contacts": contacts, "groups": groups}

    # Seeding helpers for local setups and tests.

    def create_user(self, username: str) -> int:
        conn = get_connection(self.db_path)
        try:
            with conn:
                cur = conn.execute("INSERT INTO users (username) VALUES (?)", (username,))
            return int(cur.lastrowid)
        finally:
            conn.close()

    def create_session(self, user_id: int, *, now: float | None = None) -> str:
        token = str(uuid.uuid4())
        ts = time.time() if now is None else float(now)
        conn = get_connection(self.db_path)
        try:
            with conn:
                conn.execute(
                    "INSERT INTO sessions (session_token, user_id, last_updated, active) "
                    "VALUES (?, ?, ?, 1)",
                    (token, int(user_id), ts),
                )
        finally:
            conn.close()
        return token

    def set_contact(self, first_user: int, second_user: int, status: str) -> None:
        conn = get_connection(self.db_path)
        try:
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO contacts (first_user, second_user, status) "
                    "VALUES (?, ?, ?)",
                    (int(first_user), int(second_user), status),
                )
        finally:
            conn.close()

    def add_member(self, group_id: str, user_id: int) -> None:
        conn = get_connection(self.db_path)
        try:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO members (group_id, user_id) VALUES (?, ?)",
                    (str(group_id), int(user_id)),
                )
        finally:
            conn.close()

    def session_active(self, token: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT active FROM sessions WHERE session_token = ?", (token,)
            ).fetchone()
        finally:
            conn.close()
        return bool(row is not None and row["active"])
