from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class RelayRuntimeConfig:
    config_path: str | None = None
    database_path: str | None = None
    ws_host: str = "127.0.0.1"
    ws_port: int = 8000
    transport_endpoint: str = "tcp://127.0.0.1:5555"
    session_duration_s: float = 15 * 60.0
    handshake_timeout_s: float = 30.0
    close_superseded: bool = True
    rate_limit_msgs_per_minute: int = 60
    max_message_bytes: int = 4096
    ping_interval_s: float = 20.0
    ping_timeout_s: float = 20.0
    stats_interval_s: float = 0.0
    log_level: str = "INFO"
    log_websockets_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "websockets_level": "log_websockets_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_OPTIONAL_STR_KEYS = ("database_path", "log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: RelayRuntimeConfig, data: dict) -> RelayRuntimeConfig:
    relay = data.get("relay") if isinstance(data, dict) else None
    if isinstance(relay, dict):
        data = {**data, **relay}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped = {
            field: log_table.get(key)
            for key, field in _LOGGING_KEYS.items()
            if key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where to reload from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    for key in _OPTIONAL_STR_KEYS:
        if key in updates and updates[key] == "":
            updates[key] = None

    if "ws_port" in updates:
        try:
            port = int(updates["ws_port"])
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid ws_port {updates['ws_port']!r}") from e
        if not 0 < port < 65536:
            raise ValueError(f"ws_port out of range: {port}")
        updates["ws_port"] = port

    return replace(base, **updates) if updates else base


def write_default_config(config_path: str, cfg: RelayRuntimeConfig) -> None:
    from tomlkit import comment, document, nl, table

    doc = document()
    doc.add(comment("waverelay configuration (TOML)"))
    doc.add(comment(""))
    doc.add(comment("This file was created on first run."))
    doc.add(comment("Edit it, then start waverelay again."))
    doc.add(nl())

    relay = table()
    relay.add(comment("SQLite database shared with the HTTP API (sessions, contacts, members)."))
    relay.add("database_path", cfg.database_path or "")
    relay.add(nl())
    relay.add(comment("WebSocket listener for client channel connections."))
    relay.add("ws_host", cfg.ws_host)
    relay.add("ws_port", cfg.ws_port)
    relay.add(nl())
    relay.add(comment("ZeroMQ endpoint the relay binds (PULL) and request handlers connect to (PUSH)."))
    relay.add("transport_endpoint", cfg.transport_endpoint)
    relay.add(nl())
    relay.add(comment("Session tokens expire after this many seconds of inactivity."))
    relay.add("session_duration_s", float(cfg.session_duration_s))
    relay.add(nl())
    relay.add(comment("Close connections that have not sent a valid token in time (0 disables)."))
    relay.add("handshake_timeout_s", float(cfg.handshake_timeout_s))
    relay.add(nl())
    relay.add(comment("When a user connects again, close their previous connection."))
    relay.add("close_superseded", bool(cfg.close_superseded))
    relay.add(nl())
    relay.add(comment("Limits."))
    relay.add("rate_limit_msgs_per_minute", int(cfg.rate_limit_msgs_per_minute))
    relay.add("max_message_bytes", int(cfg.max_message_bytes))
    relay.add(nl())
    relay.add(comment("WebSocket keepalive pings (0 disables)."))
    relay.add("ping_interval_s", float(cfg.ping_interval_s))
    relay.add("ping_timeout_s", float(cfg.ping_timeout_s))
    relay.add(nl())
    relay.add(comment("Log relay statistics every N seconds (0 disables)."))
    relay.add("stats_interval_s", float(cfg.stats_interval_s))
    doc.add("relay", relay)

    logging_tbl = table()
    logging_tbl.add("level", cfg.log_level)
    logging_tbl.add("websockets_level", cfg.log_websockets_level)
    logging_tbl.add("console", bool(cfg.log_console))
    logging_tbl.add(comment("Optional file path for logs (leave empty to disable)."))
    logging_tbl.add("file", cfg.log_file or "")
    logging_tbl.add("format", cfg.log_format)
    logging_tbl.add("datefmt", cfg.log_datefmt or "")
    doc.add("logging", logging_tbl)

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(doc.as_string())
    try:
        os.chmod(config_path, 0o600)
    except OSError:
        pass
