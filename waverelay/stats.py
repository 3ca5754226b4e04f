"""Statistics tracking and reporting for the channel relay."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import RelayService


class StatsManager:
    """
    Manages relay statistics collection and reporting.

    Tracks counters for:
    - Events pulled off the transport (accepted, malformed, unmapped)
    - Packets and bytes written to client connections
    - Recipients skipped because they were offline
    - Handshakes, errors sent and rate limiting
    - Connections opened and closed
    """

    def __init__(self, relay: RelayService) -> None:
        self.relay = relay
        self.log = relay.log

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "events_in": 0,
            "events_bad": 0,
            "events_unmapped": 0,
            "packets_out": 0,
            "bytes_out": 0,
            "offline_skips": 0,
            "handshakes_ok": 0,
            "handshakes_failed": 0,
            "errors_sent": 0,
            "rate_limited": 0,
            "connections_opened": 0,
            "connections_closed": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        """Increment a counter by the given delta."""
        with self.relay._state_lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self.relay._state_lock:
            return int(self._counters.get(key, 0))

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        with self.relay._state_lock:
            reg = self.relay.registry.get_stats()
            rel = self.relay.relationships.get_stats()
            pending = self.relay.connection_handler.pending_count()
            c = dict(self._counters)

        cfg = self.relay.config

        lines: list[str] = []
        lines.append(f"waverelay {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"connections: attached={reg['connections']} pending={pending} "
            f"opened={c['connections_opened']} closed={c['connections_closed']}"
        )
        lines.append(
            f"relationships: contacts={rel['contacts']} contact_edges={rel['contact_edges']} "
            f"groups={rel['groups']} memberships={rel['memberships']}"
        )
        lines.append(
            f"limits: rate_limit_msgs_per_minute={cfg.rate_limit_msgs_per_minute} "
            f"max_message_bytes={cfg.max_message_bytes} "
            f"handshake_timeout_s={cfg.handshake_timeout_s}"
        )
        lines.append(
            "events: in={} bad={} unmapped={}".format(
                c.get("events_in", 0),
                c.get("events_bad", 0),
                c.get("events_unmapped", 0),
            )
        )
        lines.append(
            "delivery: packets_out={} bytes_out={} offline_skips={}".format(
                c.get("packets_out", 0),
                c.get("bytes_out", 0),
                c.get("offline_skips", 0),
            )
        )
        lines.append(
            "handshakes: ok={} failed={} errors_sent={} rate_limited={}".format(
                c.get("handshakes_ok", 0),
                c.get("handshakes_failed", 0),
                c.get("errors_sent", 0),
                c.get("rate_limited", 0),
            )
        )

        return "\n".join(lines)
