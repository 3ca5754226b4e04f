from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .codec import decode, encode
from .constants import CLOSE_SUPERSEDED, H_FOR, V_CONNECTED, V_ERROR
from .errors import (
    FORBIDDEN,
    NULL_ATTRIBUTES,
    REASON_TOKEN_NOT_FOUND,
    UNAUTHORIZED,
    AuthorizationError,
    error_body,
)
from .util import fmt_conn, normalize_identity

if TYPE_CHECKING:
    from .service import RelayService


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


class ConnectionHandler:
    """
    Drives each client connection through the channel handshake.

    This class is responsible for:
    - Tracking connections that have opened but not yet authenticated
    - Exchanging the session token for an identity
    - Attaching authenticated connections to the registry
    - Replying CONNECTED / ERROR packets
    - Rate limiting inbound client messages
    - Detaching connections on close or transport error
    """

    def __init__(self, relay: RelayService) -> None:
        self.relay = relay
        self.log = logging.getLogger("waverelay.lifecycle")
        self._pending: dict[Any, float] = {}  # conn -> monotonic open time
        self._rate: dict[Any, _RateState] = {}

    def on_open(self, conn: Any) -> None:
        now = time.monotonic()
        with self.relay._state_lock:
            self._pending[conn] = now
            self._rate[conn] = _RateState(
                tokens=float(self.relay.config.rate_limit_msgs_per_minute),
                last_refill=now,
            )
        self.relay.stats.inc("connections_opened")
        self.log.info("Connection opened conn=%s", fmt_conn(conn))

    def on_message(self, conn: Any, raw: str | bytes) -> None:
        with self.relay._state_lock:
            allowed = self.refill_and_take(conn)
        if not allowed:
            self.relay.stats.inc("rate_limited")
            self.log.debug("Rate limited conn=%s", fmt_conn(conn))
            self._send_error(conn, FORBIDDEN)
            return

        handshake = decode(raw)
        if handshake.token is None:
            self.relay.stats.inc("handshakes_failed")
            self.log.info("Handshake without token conn=%s", fmt_conn(conn))
            self._send_error(conn, NULL_ATTRIBUTES)
            return

        try:
            identity = normalize_identity(self.relay.authorizer.authorize(handshake.token))
            if identity is None:
                raise AuthorizationError(UNAUTHORIZED, REASON_TOKEN_NOT_FOUND)
        except AuthorizationError as e:
            self.relay.stats.inc("handshakes_failed")
            self.log.info(
                "Handshake rejected conn=%s reason=%s code=%s",
                fmt_conn(conn),
                e.reason,
                e.code,
            )
            self._send_error(conn, e.code)
            return

        with self.relay._state_lock:
            if conn not in self._rate:
                # Closed while the token was being checked.
                return
            self._pending.pop(conn, None)
            displaced = self.relay.registry.attach(conn, identity)

        self.relay.stats.inc("handshakes_ok")
        self.log.info("Connection authenticated conn=%s identity=%s", fmt_conn(conn), identity)
        self.relay._send(conn, encode(V_CONNECTED, headers={H_FOR: identity}))

        if displaced is not None and self.relay.config.close_superseded:
            self.relay._close(displaced, CLOSE_SUPERSEDED, "superseded by a newer connection")

    def on_close(self, conn: Any) -> None:
        with self.relay._state_lock:
            self._forget(conn)
            identity = self.relay.registry.detach(conn)
        self.relay.stats.inc("connections_closed")
        self.log.info("Connection closed conn=%s identity=%s", fmt_conn(conn), identity)

    def on_error(self, conn: Any, exc: BaseException) -> None:
        self.log.warning("Connection error conn=%s err=%s", fmt_conn(conn), exc)
        self.on_close(conn)

    def expire_pending(self, now: float | None = None) -> list[Any]:
        """
        Collect connections that did not authenticate within the handshake window.

        Returned connections are no longer tracked as pending; the caller closes them.
        """
        timeout = float(self.relay.config.handshake_timeout_s)
        if timeout <= 0:
            return []

        now = time.monotonic() if now is None else float(now)
        expired: list[Any] = []
        with self.relay._state_lock:
            for conn, opened in list(self._pending.items()):
                if now - opened > timeout:
                    self._pending.pop(conn, None)
                    expired.append(conn)
        return expired

    def refill_and_take(self, conn: Any, cost: float = 1.0) -> bool:
        """
        Spend `cost` from the connection's bucket; False means rate limited.

        The bucket holds one minute's allowance and refills continuously.
        Must be called with state lock held.
        """
        state = self._rate.get(conn)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.relay.config.rate_limit_msgs_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def is_pending(self, conn: Any) -> bool:
        with self.relay._state_lock:
            return conn in self._pending

    def pending_count(self) -> int:
        with self.relay._state_lock:
            return len(self._pending)

    def clear_all(self) -> list[Any]:
        """
        Forget every tracked connection and return all of them.

        This includes connections displaced from the registry but left open.
        Must be called with state lock held.
        """
        conns = list(dict.fromkeys([*self._rate, *self._pending]))
        self._pending.clear()
        self._rate.clear()
        return conns

    def _forget(self, conn: Any) -> None:
        self._pending.pop(conn, None)
        self._rate.pop(conn, None)

    def _send_error(self, conn: Any, code: int) -> None:
        self.relay.stats.inc("errors_sent")
        self.relay._send(conn, encode(V_ERROR, body=error_body(code)))
