from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any

from .config import RelayRuntimeConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS: dict[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}


def parse_level(value: Any, default: int) -> int:
    """Accept level names (any case), numeric strings or ints."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value

    name = str(value or "").strip().upper()
    if not name:
        return default
    if name in _LEVELS:
        return _LEVELS[name]
    return int(name) if name.isdigit() else default


def _log_file_path(cfg: RelayRuntimeConfig, override_file: str | None) -> Path | None:
    # An explicit empty override disables file logging even if the config sets one.
    raw = override_file if override_file is not None else cfg.log_file
    if raw is None or not str(raw).strip():
        return None
    return Path(os.path.expanduser(str(raw)))


def _open_file_handler(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass
    return handler


def configure_logging(
    cfg: RelayRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install the relay's root handlers and library logger levels.

    Calling it again replaces the root handlers rather than stacking them.
    """

    formatter = logging.Formatter(
        fmt=str(cfg.log_format or "").strip() or DEFAULT_FORMAT,
        datefmt=str(cfg.log_datefmt or "").strip() or None,
    )

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler(sys.stderr))

    log_path = _log_file_path(cfg, override_file)
    if log_path is not None:
        handlers.append(_open_file_handler(log_path))

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(parse_level(override_level or cfg.log_level, logging.INFO))

    # websockets logs every handshake failure and keepalive timeout at INFO.
    logging.getLogger("websockets").setLevel(
        parse_level(cfg.log_websockets_level, logging.WARNING)
    )

    logging.captureWarnings(True)
