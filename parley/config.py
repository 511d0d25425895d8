"""Parley application configuration.

Loads settings from a single YAML file:
  * parley.settings.yaml - non-secret configuration (there are no secrets;
    usernames are unauthenticated claims)

The path can be overridden with the ``PARLEY_SETTINGS`` environment variable.
Relative storage and upload paths are resolved against the directory that
holds the settings file, so the service behaves the same regardless of the
working directory it is started from.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path(os.environ.get("PARLEY_SETTINGS", "parley.settings.yaml"))

# In-memory DuckDB marker; never resolved against a directory
MEMORY_DB = ":memory:"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _resolve(path_value: str, base_dir: Path) -> str:
    if path_value == MEMORY_DB:
        return path_value
    path = Path(path_value)
    if path.is_absolute():
        return str(path)
    return str(base_dir / path)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if not isinstance(getattr(logging, value.upper(), None), int):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class StorageSettings(BaseModel):
    db_path:       str = "parley.duckdb"
    files_db_path: str = "file_metadata.duckdb"


class ChatSettings(BaseModel):
    default_rooms:       List[str] = Field(
        default_factory=lambda: ["global", "General", "MERN_Stack", "Family", "Friends"]
    )
    max_username_length: int       = 32
    max_body_length:     int       = 4000
    history_limit:       int       = 200


class UploadSettings(BaseModel):
    upload_dir:         str       = "uploads"
    max_size_bytes:     int       = 10 * 1024 * 1024
    allowed_extensions: List[str] = Field(
        default_factory=lambda: [
            "jpg", "jpeg", "png", "gif", "webp",
            "pdf", "txt", "doc", "docx", "ppt", "pptx", "zip",
        ]
    )
    public_path:        str       = "/uploads"

    @field_validator("allowed_extensions")
    @classmethod
    def _normalise_extensions(cls, value: List[str]) -> List[str]:
        return [ext.lower().lstrip(".") for ext in value]


class ClientSettings(BaseModel):
    """Defaults for the Python chat client session."""
    server_url:              str   = "ws://localhost:5000/ws/chat"
    typing_idle_seconds:     float = 0.8
    pending_timeout_seconds: float = 10.0
    reconnect_delay_seconds: float = 1.0
    max_reconnect_attempts:  int   = 5


class AppSettings(BaseModel):
    server:   ServerSettings  = Field(default_factory=ServerSettings)
    logging:  LoggingSettings = Field(default_factory=LoggingSettings)
    storage:  StorageSettings = Field(default_factory=StorageSettings)
    chat:     ChatSettings    = Field(default_factory=ChatSettings)
    uploads:  UploadSettings  = Field(default_factory=UploadSettings)
    client:   ClientSettings  = Field(default_factory=ClientSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppSettings] = None


def load_config(settings_path: Optional[Path] = None) -> AppSettings:
    """Load settings from YAML into an *AppSettings* object.

    Args:
        settings_path: Settings file to read. Defaults to ``SETTINGS_FILE``.

    Returns:
        Validated settings with storage and upload paths made absolute.
    """
    path = Path(settings_path) if settings_path else SETTINGS_FILE
    settings = AppSettings(**_load_yaml(path))

    base_dir = path.resolve().parent
    settings.storage.db_path = _resolve(settings.storage.db_path, base_dir)
    settings.storage.files_db_path = _resolve(settings.storage.files_db_path, base_dir)
    settings.uploads.upload_dir = _resolve(settings.uploads.upload_dir, base_dir)

    logger.info(
        "Settings loaded (server=%s:%s, db=%s, uploads=%s)",
        settings.server.host,
        settings.server.port,
        settings.storage.db_path,
        settings.uploads.upload_dir,
    )
    return settings


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(settings: Optional[AppSettings]) -> None:
    """Replace the process-wide settings (``None`` forces a reload)."""
    global _config
    _config = settings
