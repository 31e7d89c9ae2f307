"""
Client configuration and logging setup.

Configuration lives in ``<home>/config.yaml``. Missing keys fall back
to the defaults below; a malformed file is ignored with a warning so
a bad edit never stops scores from being recorded.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import SCORESYNC_HOME

logger = logging.getLogger("scoresync.config")

CONFIG_FILE = "config.yaml"
LOG_DIR = "logs"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class ClientConfig(BaseModel):
    """Settings for the sync client."""

    server_url: str = "http://localhost:8080"
    sync_interval_seconds: int = Field(default=300, ge=1)
    initial_sync_delay_seconds: int = Field(default=30, ge=0)
    sync_batch_size: int = Field(default=100, ge=1, le=1000)
    network_check_interval_seconds: int = Field(default=30, ge=1)
    network_timeout_seconds: float = Field(default=5.0, gt=0)
    http_timeout_seconds: float = Field(default=15.0, gt=0)
    token_refresh_margin_seconds: int = Field(default=60, ge=0)
    db_path: Optional[Path] = None
    log_level: str = "INFO"


def resolve_home(home: Optional[Path] = None) -> Path:
    """Expand the client home directory (``SCORESYNC_HOME`` by default)."""
    return Path(home or SCORESYNC_HOME).expanduser()


def load_config(home: Optional[Path] = None) -> ClientConfig:
    """Load configuration from ``<home>/config.yaml``.

    Args:
        home: Client home directory.

    Returns:
        The parsed config, or defaults when the file is absent or invalid.
    """
    config_file = resolve_home(home) / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return ClientConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load config %s: %s", config_file, exc)
    return ClientConfig()


def save_config(config: ClientConfig, home: Optional[Path] = None) -> Path:
    """Write configuration to ``<home>/config.yaml``.

    Returns:
        Path of the written file.
    """
    home_path = resolve_home(home)
    home_path.mkdir(parents=True, exist_ok=True)
    config_file = home_path / CONFIG_FILE
    data = config.model_dump(mode="json", exclude_none=True)
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    logger.info("Config saved to %s", config_file)
    return config_file


def db_path_for(config: ClientConfig, home: Optional[Path] = None) -> Path:
    """Where the local score database lives."""
    if config.db_path:
        return Path(config.db_path).expanduser()
    return resolve_home(home) / "scores.db"


def setup_logging(home: Optional[Path] = None, level: str = "INFO") -> Path:
    """Attach a file handler for the ``scoresync`` logger tree.

    Args:
        home: Client home directory; logs go to ``<home>/logs``.
        level: Logging level name.

    Returns:
        Path of the log file.
    """
    log_dir = resolve_home(home) / LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "scoresync.log"

    root = logging.getLogger("scoresync")
    if not any(
        isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_file
        for h in root.handlers
    ):
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return log_file
