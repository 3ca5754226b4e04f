"""ZeroMQ event transport between request handlers and the relay.

Request handlers PUSH JSON envelopes; the relay owns the single PULL socket
and consumes them one at a time on its own thread. Delivery is best-effort:
nothing is persisted and nothing is replayed.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable

import zmq

from .envelope import make_envelope


class EventPublisher:
    """PUSH side. Safe to share between request-handling threads."""

    def __init__(
        self,
        endpoint: str,
        *,
        context: zmq.Context | None = None,
        linger_ms: int = 1000,
    ) -> None:
        self.endpoint = endpoint
        self.log = logging.getLogger("waverelay.transport")
        self._context = context or zmq.Context.instance()
        self._lock = threading.Lock()
        self._socket = self._context.socket(zmq.PUSH)
        self._socket.setsockopt(zmq.LINGER, int(linger_ms))
        self._socket.connect(endpoint)
        self._closed = False

    def publish(self, envelope: dict) -> bool:
        """Queue one envelope for the relay. Never raises on delivery problems."""
        try:
            data = json.dumps(envelope, ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            self.log.warning("Envelope not serializable, dropped: %s", e)
            return False

        with self._lock:
            if self._closed:
                self.log.warning("Publisher closed; dropped %s bytes", len(data))
                return False
            try:
                self._socket.send(data, zmq.NOBLOCK)
            except zmq.Again:
                self.log.warning(
                    "Relay not keeping up endpoint=%s; dropped %s bytes",
                    self.endpoint,
                    len(data),
                )
                return False
            except zmq.ZMQError as e:
                self.log.warning("Send failed endpoint=%s err=%s", self.endpoint, e)
                return False
        return True

    def send_channel_packet(
        self,
        directive: str,
        topic: str,
        origin: str,
        target_s: str | list[str] | None = None,
        headers: dict[str, Any] | None = None,
        body: Any = None,
    ) -> bool:
        """Notify the relay of a successful mutation made by `origin`."""
        return self.publish(
            make_envelope(
                directive,
                topic,
                origin=origin,
                target_s=target_s,
                headers=headers,
                body=body,
            )
        )

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._socket.close()


class EventSubscriber:
    """PULL side. Exactly one per relay process."""

    def __init__(
        self,
        endpoint: str,
        callback: Callable[[bytes], None],
        *,
        context: zmq.Context | None = None,
        poll_interval_ms: int = 250,
    ) -> None:
        self.endpoint = endpoint
        self.log = logging.getLogger("waverelay.transport")
        self._callback = callback
        self._context = context or zmq.Context.instance()
        self._poll_interval_ms = int(poll_interval_ms)
        self._socket: zmq.Socket | None = None
        self._thread: threading.Thread | None = None
        self._shutdown = threading.Event()

    def start(self) -> None:
        if self._thread is not None:
            return

        sock = self._context.socket(zmq.PULL)
        sock.setsockopt(zmq.LINGER, 0)
        try:
            sock.bind(self.endpoint)
        except zmq.ZMQError:
            sock.close()
            raise
        self._socket = sock
        self._shutdown.clear()

        self._thread = threading.Thread(
            target=self._pull_loop, name="waverelay-transport", daemon=True
        )
        self._thread.start()
        self.log.info("Event transport listening endpoint=%s", self.endpoint)

    def _pull_loop(self) -> None:
        sock = self._socket
        if sock is None:
            return

        poller = zmq.Poller()
        poller.register(sock, zmq.POLLIN)

        while not self._shutdown.is_set():
            try:
                ready = dict(poller.poll(self._poll_interval_ms))
            except zmq.ZMQError as e:
                if self._shutdown.is_set():
                    break
                self.log.warning("Poll failed endpoint=%s err=%s", self.endpoint, e)
                continue

            if sock not in ready:
                continue

            try:
                data = sock.recv(zmq.NOBLOCK)
            except zmq.Again:
                continue
            except zmq.ZMQError as e:
                self.log.warning("Receive failed endpoint=%s err=%s", self.endpoint, e)
                continue

            try:
                self._callback(data)
            except Exception:
                self.log.exception("Event handling failed bytes=%s", len(data))

    def stop(self) -> None:
        self._shutdown.set()
        if self._thread is not None:
            self._thread.join(timeout=max(1.0, self._poll_interval_ms / 1000.0 * 4))
            self._thread = None
        if self._socket is not None:
            self._socket.close()
            self._socket = None
