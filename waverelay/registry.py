from __future__ import annotations

import logging
import threading
from typing import Any

from .util import fmt_conn


class ConnectionRegistry:
    """
    Associates live channel connections with user identities.

    This class is responsible for:
    - Identity -> connection lookup for event delivery
    - Connection -> identity membership for lifecycle cleanup
    - Replacing the mapping when an identity authenticates again
    - Moving associations when a user changes username

    At most one connection is reachable per identity. All methods are safe
    to call from any thread.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("waverelay.registry")
        self._lock = threading.RLock()
        self._by_identity: dict[str, Any] = {}
        self._by_conn: dict[Any, str] = {}

    def attach(self, conn: Any, identity: str) -> Any | None:
        """
        Bind `conn` to `identity`.

        Returns the connection previously bound to `identity` (now displaced),
        or None.
        """
        with self._lock:
            previous_identity = self._by_conn.pop(conn, None)
            if previous_identity is not None and previous_identity != identity:
                if self._by_identity.get(previous_identity) is conn:
                    self._by_identity.pop(previous_identity, None)

            displaced = self._by_identity.get(identity)
            if displaced is conn:
                displaced = None
            if displaced is not None:
                self._by_conn.pop(displaced, None)

            self._by_identity[identity] = conn
            self._by_conn[conn] = identity

        if displaced is not None:
            self.log.info(
                "Replaced connection identity=%s old=%s new=%s",
                identity,
                fmt_conn(displaced),
                fmt_conn(conn),
            )
        return displaced

    def detach(self, conn: Any) -> str | None:
        """Remove `conn` if attached; returns the identity it was bound to."""
        with self._lock:
            identity = self._by_conn.pop(conn, None)
            if identity is not None and self._by_identity.get(identity) is conn:
                self._by_identity.pop(identity, None)
            return identity

    def contains(self, conn: Any) -> bool:
        with self._lock:
            return conn in self._by_conn

    def lookup(self, identity: str) -> Any | None:
        with self._lock:
            return self._by_identity.get(identity)

    def identity_of(self, conn: Any) -> str | None:
        with self._lock:
            return self._by_conn.get(conn)

    def rename(self, old: str, new: str) -> Any | None:
        """
        Move the live association of `old` to `new` (username change).

        Returns the connection previously bound to `new` (now displaced), or None.
        """
        if old == new:
            return None
        with self._lock:
            conn = self._by_identity.pop(old, None)
            if conn is None:
                return None
            stale = self._by_identity.get(new)
            if stale is conn:
                stale = None
            if stale is not None:
                self._by_conn.pop(stale, None)
            self._by_identity[new] = conn
            self._by_conn[conn] = new
        self.log.info("Renamed connection identity %s -> %s", old, new)
        if stale is not None:
            self.log.info(
                "Rename displaced connection identity=%s old=%s new=%s",
                new,
                fmt_conn(stale),
                fmt_conn(conn),
            )
        return stale

    def clear(self) -> list[Any]:
        """Drop every association and return the connections for teardown."""
        with self._lock:
            conns = list(self._by_conn.keys())
            self._by_conn.clear()
            self._by_identity.clear()
            return conns

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "connections": len(self._by_conn),
                "identities": len(self._by_identity),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_identity)
