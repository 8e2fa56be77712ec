"""
Application settings loaded from ``<home>/config.yaml``.

Cloud endpoint and auto-sync live in the key/value store alongside the
checklist (see ``local_store``); this file holds the knobs an operator
tunes once.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import CHECKSYNC_HOME
from .auth import DEFAULT_USERINFO_URL
from .local_store import DEFAULT_NAMESPACE
from .remote import DEFAULT_TIMEOUT

logger = logging.getLogger("checksync.config")

CONFIG_FILE = "config.yaml"
STORE_FILE = "store.json"
LOG_DIR = "logs"

_installed_handlers: list[logging.Handler] = []


class AppSettings(BaseModel):
    """Tunable behavior of the sync engine and CLI."""

    namespace: str = DEFAULT_NAMESPACE
    debounce_seconds: float = Field(default=2.0, ge=0)
    request_timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    userinfo_url: str = DEFAULT_USERINFO_URL
    log_to_file: bool = False


def resolve_home(home: Optional[Path] = None) -> Path:
    """Expand ``home``, defaulting to ``$CHECKSYNC_HOME`` or ~/.checksync."""
    return (home or Path(CHECKSYNC_HOME)).expanduser()


def load_settings(home: Optional[Path] = None) -> AppSettings:
    """Read settings from disk, falling back to defaults on any problem."""
    config_file = resolve_home(home) / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return AppSettings(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as exc:
            logger.warning("Failed to load settings from %s: %s", config_file, exc)
    return AppSettings()


def save_settings(settings: AppSettings, home: Optional[Path] = None) -> Path:
    """Write ``settings`` to disk and return the file path."""
    home_path = resolve_home(home)
    home_path.mkdir(parents=True, exist_ok=True)
    config_file = home_path / CONFIG_FILE
    config_file.write_text(
        yaml.dump(settings.model_dump(mode="json"), default_flow_style=False),
        encoding="utf-8",
    )
    return config_file


def setup_logging(
    verbose: bool = False,
    home: Optional[Path] = None,
    to_file: bool = False,
) -> None:
    """Configure root logging for the CLI and the reference server.

    Calling it again replaces the handlers a previous call installed.
    """
    formatter = logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    root = logging.getLogger()
    for handler in _installed_handlers:
        root.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)
    _installed_handlers.append(console_handler)

    if to_file:
        log_dir = resolve_home(home) / LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "checksync.log")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.INFO)
        root.addHandler(file_handler)
        _installed_handlers.append(file_handler)
        if not verbose:
            root.setLevel(logging.INFO)
            console_handler.setLevel(logging.WARNING)
