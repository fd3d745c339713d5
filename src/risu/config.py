"""
Configuration and logging setup.

Storage layout:
    ~/.risu/
    ├── config.yaml        # RisuConfig (optional, defaults apply)
    ├── local.db           # LocalStore
    └── logs/
        ├── risu.log       # current run
        └── risu.log.old   # previous run

Environment:
    RISU_HOME      home directory (default ~/.risu)
    RISU_API_URL   overrides api_base_url
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import RISU_HOME

logger = logging.getLogger("risu.config")

DEFAULT_API_BASE_URL = "https://risu-api.laiosys.dev"
CONFIG_FILE = "config.yaml"
LOG_DIR = "logs"
LOG_FILE = "risu.log"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class RisuConfig(BaseModel):
    """Runtime settings. Everything here is safe to edit by hand."""

    api_base_url: str = DEFAULT_API_BASE_URL
    offline_mode: bool = False
    e2e_enabled: bool = True
    collection: str = "notes"
    batch_size: int = Field(default=100, ge=1)
    max_pages: int = Field(default=100, ge=1)
    sync_interval: float = Field(default=60.0, gt=0)
    max_backoff: float = Field(default=900.0, gt=0)
    request_timeout: float = Field(default=10.0, gt=0)
    coalesce_seconds: float = Field(default=5.0, ge=0)
    stale_after_seconds: float = Field(default=600.0, gt=0)
    log_level: str = "INFO"


def resolve_home(home: Optional[Path] = None) -> Path:
    """Expand the configured home directory."""
    return Path(home or RISU_HOME).expanduser()


def load_config(home: Optional[Path] = None) -> RisuConfig:
    """Load config.yaml from the home directory.

    A missing file yields defaults. A file that cannot be parsed is
    moved aside to ``config.yaml.bak`` so the next save does not
    clobber the user's edits, and defaults are used.

    Args:
        home: Home directory. Defaults to RISU_HOME.

    Returns:
        RisuConfig with environment overrides applied.
    """
    config_file = resolve_home(home) / CONFIG_FILE
    config = RisuConfig()
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            config = RisuConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            backup = config_file.with_suffix(".yaml.bak")
            logger.warning(
                "Failed to parse %s: %s; backed up to %s, using defaults",
                config_file, exc, backup,
            )
            try:
                config_file.rename(backup)
            except OSError as rename_exc:
                logger.warning("Could not back up config: %s", rename_exc)

    api_url = os.environ.get("RISU_API_URL")
    if api_url:
        config.api_base_url = api_url
    return config


def save_config(config: RisuConfig, home: Optional[Path] = None) -> Path:
    """Write the config back to config.yaml."""
    home_path = resolve_home(home)
    home_path.mkdir(parents=True, exist_ok=True)
    config_file = home_path / CONFIG_FILE
    config_file.write_text(
        yaml.dump(config.model_dump(mode="json"), default_flow_style=False),
        encoding="utf-8",
    )
    return config_file


def configure_logging(home: Optional[Path] = None, level: str = "INFO") -> Path:
    """Send risu logs to ``<home>/logs/risu.log``.

    The previous run's log is kept as ``risu.log.old``. Only the
    ``risu`` logger tree is touched, so embedding applications keep
    control of the root logger.

    Returns:
        Path of the active log file.
    """
    log_dir = resolve_home(home) / LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / LOG_FILE

    if log_path.exists():
        old_path = log_dir / (LOG_FILE + ".old")
        try:
            old_path.unlink(missing_ok=True)
            log_path.rename(old_path)
        except OSError as exc:
            logger.debug("Log rotation skipped: %s", exc)

    root = logging.getLogger("risu")
    for existing in list(root.handlers):
        if isinstance(existing, logging.FileHandler):
            root.removeHandler(existing)
            existing.close()

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return log_path
