from __future__ import annotations

import os
from pathlib import Path

HOME_ENV = "WAVERELAY_HOME"


def default_waverelay_dir() -> Path:
    home = os.environ.get(HOME_ENV, "").strip()
    return Path(home) if home else Path.home() / ".waverelay"


def default_config_path() -> Path:
    return default_waverelay_dir() / "waverelay.toml"


def default_database_path() -> Path:
    return default_waverelay_dir() / "wave.db"


def ensure_private_dir(path: Path) -> Path:
    """Create `path` if needed and restrict it to the current user."""
    path.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, 0o700)
    except OSError:
        # Not every filesystem supports POSIX modes.
        pass
    return path
