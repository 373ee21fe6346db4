from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("CWR_DB_PATH", "cwr.db")
    poll_interval_s: int = _env_int("CWR_POLL_INTERVAL_S", 10)

    # Directory holding the run-history file. No default: run-once tracking
    # must not silently fall back to an arbitrary location.
    data_dir: str | None = os.getenv("CWR_DATA_DIR")

    # Optional desired config applied at startup (YAML or JSON).
    config_file: str | None = os.getenv("CWR_CONFIG_FILE")

    # Remove the previous image once a new digest has been pulled.
    prune_old_images: bool = _env_bool("CWR_PRUNE_OLD_IMAGES", False)


settings = Settings()
