from __future__ import annotations

import logging
import signal
import threading
import time
from typing import Any

import zmq
from websockets.exceptions import ConnectionClosed, ConnectionClosedError
from websockets.sync.server import Server, serve

from .config import RelayRuntimeConfig
from .constants import CLOSE_HANDSHAKE_TIMEOUT, CLOSE_SUPERSEDED
from .dispatcher import EventDispatcher
from .lifecycle import ConnectionHandler
from .registry import ConnectionRegistry
from .relationships import RelationshipCache
from .stats import StatsManager
from .store import RelationshipSource, SessionAuthorizer
from .transport import EventSubscriber
from .util import fmt_conn


class RelayService:
    def __init__(
        self,
        config: RelayRuntimeConfig,
        *,
        authorizer: SessionAuthorizer,
        relationships: RelationshipSource,
        context: zmq.Context | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("waverelay.relay")

        # Registry, relationship cache, pending handshakes and counters are
        # touched from connection threads and the transport thread. Guard
        # them with a single re-entrant lock.
        self._state_lock = threading.RLock()

        self._shutdown = threading.Event()

        self.authorizer = authorizer
        self.relationship_source = relationships

        self.registry = ConnectionRegistry()
        self.relationships = RelationshipCache()
        self.stats = StatsManager(self)

        # Envelope routing and relationship bookkeeping
        self.dispatcher = EventDispatcher(self)

        # Handshake state machine for client connections
        self.connection_handler = ConnectionHandler(self)

        self.subscriber = EventSubscriber(
            config.transport_endpoint, self.on_event, context=context
        )

        self._server: Server | None = None
        self._server_thread: threading.Thread | None = None
        self._reaper_thread: threading.Thread | None = None
        self._stats_thread: threading.Thread | None = None

    def start(self) -> None:
        self.stats.set_start_time()

        snapshot = self.relationship_source.load_relationships()
        with self._state_lock:
            self.relationships.load(snapshot)

        self.subscriber.start()

        ping_interval = float(self.config.ping_interval_s) or None
        ping_timeout = float(self.config.ping_timeout_s) or None
        self._server = serve(
            self._handle_connection,
            self.config.ws_host,
            int(self.config.ws_port),
            ping_interval=ping_interval,
            ping_timeout=ping_timeout,
            max_size=int(self.config.max_message_bytes),
        )
        self._server_thread = threading.Thread(
            target=self._server.serve_forever, name="waverelay-ws", daemon=True
        )
        self._server_thread.start()

        self.log.info(
            "Relay running ws=%s:%s endpoint=%s",
            self.config.ws_host,
            self.config.ws_port,
            self.config.transport_endpoint,
        )
        self.log.info(
            "Policy handshake_timeout_s=%s close_superseded=%s rate_limit_msgs_per_minute=%s max_message_bytes=%s",
            self.config.handshake_timeout_s,
            self.config.close_superseded,
            self.config.rate_limit_msgs_per_minute,
            self.config.max_message_bytes,
        )

        if self.config.handshake_timeout_s and self.config.handshake_timeout_s > 0:
            self._reaper_thread = threading.Thread(
                target=self._handshake_reaper_loop,
                name="waverelay-handshake-reaper",
                daemon=True,
            )
            self._reaper_thread.start()

        if self.config.stats_interval_s and self.config.stats_interval_s > 0:
            self._stats_thread = threading.Thread(
                target=self._stats_loop, name="waverelay-stats", daemon=True
            )
            self._stats_thread.start()

    def run_forever(self) -> None:
        if self._server is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        self.subscriber.stop()

        if self._server is not None:
            self._server.shutdown()
        if self._server_thread is not None:
            self._server_thread.join(timeout=5.0)

        with self._state_lock:
            conns = self.registry.clear()
            conns.extend(self.connection_handler.clear_all())

        for conn in dict.fromkeys(conns):
            self._close(conn, 1001, "relay shutting down")

        self.log.info("Relay stopped\n%s", self.stats.format_stats())

    def on_event(self, raw: bytes) -> None:
        """Transport callback: route one envelope, then deliver outside the lock."""
        outgoing: list[tuple[Any, str]] = []
        closing: list[Any] = []
        with self._state_lock:
            self.dispatcher.route_event(raw, outgoing, closing)

        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug("Delivering %d packet(s)", len(outgoing))

        for conn, payload in outgoing:
            self._send(conn, payload)

        if self.config.close_superseded:
            for conn in closing:
                self._close(conn, CLOSE_SUPERSEDED, "superseded by a renamed connection")

    def _handle_connection(self, conn: Any) -> None:
        self.connection_handler.on_open(conn)
        error: BaseException | None = None
        try:
            for message in conn:
                self.connection_handler.on_message(conn, message)
        except ConnectionClosedError as e:
            error = e
        except Exception as e:
            self.log.exception("Connection handler failed conn=%s", fmt_conn(conn))
            error = e
            self._close(conn, 1011, "internal error")
        finally:
            if error is not None:
                self.connection_handler.on_error(conn, error)
            else:
                self.connection_handler.on_close(conn)

    def _send(self, conn: Any, payload: str) -> None:
        size = len(payload.encode("utf-8"))
        self.stats.inc("packets_out")
        self.stats.inc("bytes_out", size)
        try:
            conn.send(payload)
        except ConnectionClosed as e:
            # Recipient went away between lookup and send.
            self.log.debug("Send skipped conn=%s bytes=%s err=%s", fmt_conn(conn), size, e)
        except OSError as e:
            self.log.warning("Send failed conn=%s bytes=%s err=%s", fmt_conn(conn), size, e)
        except Exception:
            self.log.debug(
                "Send failed conn=%s bytes=%s",
                fmt_conn(conn),
                size,
                exc_info=True,
            )

    def _close(self, conn: Any, code: int, reason: str) -> None:
        try:
            conn.close(code, reason)
        except Exception:
            self.log.debug("Close failed conn=%s code=%s", fmt_conn(conn), code, exc_info=True)

    def _handshake_reaper_loop(self) -> None:
        while not self._shutdown.is_set():
            timeout = float(self.config.handshake_timeout_s)
            self._shutdown.wait(min(1.0, max(0.1, timeout / 4.0)))
            if self._shutdown.is_set():
                break

            for conn in self.connection_handler.expire_pending():
                self.log.info("Handshake timeout conn=%s", fmt_conn(conn))
                self._close(conn, CLOSE_HANDSHAKE_TIMEOUT, "handshake timeout")

    def _stats_loop(self) -> None:
        while not self._shutdown.is_set():
            self._shutdown.wait(float(self.config.stats_interval_s))
            if self._shutdown.is_set():
                break
            self.log.info("%s", self.stats.format_stats())
