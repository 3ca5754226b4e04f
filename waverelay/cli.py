from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

from .config import RelayRuntimeConfig, apply_config_data, load_toml, write_default_config
from .logging_config import configure_logging
from .paths import default_config_path, default_database_path, ensure_private_dir
from .service import RelayService
from .store import SqliteStore
from .util import expand_path


def _ensure_first_run_files(config_path: str, database_path: str) -> bool:
    if os.path.exists(config_path):
        return False

    storage_dir = os.path.dirname(config_path)
    if storage_dir:
        ensure_private_dir(Path(storage_dir))
    write_default_config(
        config_path, RelayRuntimeConfig(database_path=database_path)
    )
    return True


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="waverelay", description="Run the Wave real-time channel relay"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument(
        "--database",
        default=None,
        help="Path to the SQLite database shared with the HTTP API",
    )
    p.add_argument("--ws-host", default=None, help="WebSocket listen address")
    p.add_argument("--ws-port", type=int, default=None, help="WebSocket listen port")
    p.add_argument(
        "--endpoint",
        default=None,
        help="ZeroMQ endpoint to bind for incoming events (e.g. tcp://127.0.0.1:5555)",
    )
    p.add_argument(
        "--handshake-timeout",
        type=float,
        default=None,
        help="Seconds a connection may stay unauthenticated (0 disables)",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Write logs to this file (empty string disables)",
    )

    return p


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = expand_path(str(args.config))
    database_path = expand_path(str(args.database or default_database_path()))

    if _ensure_first_run_files(config_path, database_path):
        print(
            "Created default waverelay config. Edit it before starting:\n"
            f"- Config:   {config_path}\n"
            "\nThen re-run waverelay.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = RelayRuntimeConfig(config_path=config_path, database_path=database_path)
    try:
        cfg = apply_config_data(cfg, load_toml(config_path))
    except ValueError as e:
        print(f"Invalid config {config_path}: {e}", file=sys.stderr)
        raise SystemExit(2) from e

    if args.database is not None or not cfg.database_path:
        cfg = replace(cfg, database_path=database_path)
    if args.ws_host is not None:
        cfg = replace(cfg, ws_host=str(args.ws_host))
    if args.ws_port is not None:
        cfg = replace(cfg, ws_port=int(args.ws_port))
    if args.endpoint is not None:
        cfg = replace(cfg, transport_endpoint=str(args.endpoint))
    if args.handshake_timeout is not None:
        cfg = replace(cfg, handshake_timeout_s=float(args.handshake_timeout))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    db_path = expand_path(str(cfg.database_path))
    db_dir = os.path.dirname(db_path)
    if db_dir:
        ensure_private_dir(Path(db_dir))

    store = SqliteStore(db_path, session_duration_s=cfg.session_duration_s)
    store.init_schema()

    svc = RelayService(cfg, authorizer=store, relationships=store)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
