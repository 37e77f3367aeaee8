"""MyFlow application configuration.

Loads settings from a single YAML file:
  * myflow.settings.yaml  (path overridable via the MYFLOW_SETTINGS env var)

A missing file is not an error; every section has working defaults so the
service can start with no configuration at all.
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

SETTINGS_FILE = Path("myflow.settings.yaml")
SETTINGS_ENV_VAR = "MYFLOW_SETTINGS"

IN_MEMORY_DB = ":memory:"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _resolve_path(value: str, base_dir: Path) -> str:
    """Resolve a relative path against the directory holding the settings file."""
    if value == IN_MEMORY_DB:
        return value
    path = Path(value)
    if path.is_absolute():
        return str(path)
    return str(base_dir / path)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    """Where the DuckDB database and the uploaded files live."""
    db_path:    str = "data/myflow.duckdb"
    upload_dir: str = "uploads"


class RoomSettings(BaseModel):
    resync_page_size:         int   = 20
    default_page_size:        int   = 20
    max_page_size:            int   = 100
    # 0 disables leave-on-disconnect; clients send leave_room themselves.
    disconnect_grace_seconds: float = 0.0

    @field_validator("resync_page_size", "default_page_size", "max_page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("page sizes must be positive")
        return value


class RetentionSettings(BaseModel):
    soft_delete_days:       float = 7
    sweep_interval_seconds: float = 60 * 60

    @property
    def retention_seconds(self) -> float:
        return self.soft_delete_days * 24 * 60 * 60


class LinkPreviewSettings(BaseModel):
    enabled:         bool  = True
    # Fetch a preview server-side when the client sent none.
    auto_fetch:      bool  = True
    timeout_seconds: float = 3.0
    # Only the first max_bytes of a page are read when looking for tags.
    max_bytes:       int   = 512 * 1024
    user_agent:      str   = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
    )


class UploadSettings(BaseModel):
    # 0 = unlimited
    max_file_size_bytes: int       = 0
    blocked_extensions:  List[str] = Field(default_factory=lambda: [
        ".exe", ".bat", ".cmd", ".sh", ".vbs", ".msi", ".dll", ".scr",
        ".pif", ".application", ".gadget", ".com", ".cpl", ".jar",
    ])


class AppConfig(BaseModel):
    server:       ServerSettings      = Field(default_factory=ServerSettings)
    logging:      LoggingSettings     = Field(default_factory=LoggingSettings)
    storage:      StorageSettings     = Field(default_factory=StorageSettings)
    rooms:        RoomSettings        = Field(default_factory=RoomSettings)
    retention:    RetentionSettings   = Field(default_factory=RetentionSettings)
    link_preview: LinkPreviewSettings = Field(default_factory=LinkPreviewSettings)
    uploads:      UploadSettings      = Field(default_factory=UploadSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load *settings_path* (or the default location) into an AppConfig."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_path = Path(settings_path)

    config = AppConfig(**_load_yaml(settings_path))

    base_dir = settings_path.resolve().parent
    config.storage.db_path = _resolve_path(config.storage.db_path, base_dir)
    config.storage.upload_dir = _resolve_path(config.storage.upload_dir, base_dir)

    logger.info(
        "Settings loaded (db=%s, uploads=%s, retention=%sd)",
        config.storage.db_path,
        config.storage.upload_dir,
        config.retention.soft_delete_days,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    """Install *config* as the process-wide configuration (used by tests)."""
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
