"""chatrelay application configuration.

Loads settings from a single YAML file (``chatrelay.settings.yaml`` by
default, or the path in ``CHATRELAY_SETTINGS``). Environment variables
``PORT`` and ``CORS_ORIGIN`` (comma-separated) are applied on top so the
server can be deployed without editing the file.
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

SETTINGS_FILE = Path("chatrelay.settings.yaml")

# Local dev front-ends that are always allowed to connect.
DEFAULT_ALLOWED_ORIGINS = [
    "http://127.0.0.1:5500",
    "http://localhost:5500",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
]


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _split_origins(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 4000
    allowed_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))

    def is_origin_allowed(self, origin: Optional[str]) -> bool:
        """Admission rule for browser origins.

        Non-browser clients send no Origin header (or the literal ``"null"``
        from file:// pages) and are always admitted.
        """
        if not origin or origin == "null":
            return True
        if "*" in self.allowed_origins:
            return True
        return origin in self.allowed_origins


class StoreSettings(BaseModel):
    """Message store location and history page sizes."""
    db_path:            str = "chatrelay_messages.duckdb"
    history_seed_limit: int = Field(default=50, ge=1)
    default_page_size:  int = Field(default=50, ge=1)
    max_page_size:      int = Field(default=200, ge=1, le=200)


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        return value.strip().lower() or "info"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    store:   StoreSettings   = Field(default_factory=StoreSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, settings_path: Path) -> str:
    """Resolve a relative store path against the settings file's directory."""
    if db_path == ":memory:" or Path(db_path).is_absolute():
        return db_path
    return str(settings_path.resolve().parent / db_path)


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings from YAML and apply environment overrides."""
    if settings_path is None:
        settings_path = Path(os.getenv("CHATRELAY_SETTINGS", str(SETTINGS_FILE)))
    settings_path = Path(settings_path)

    data = _load_yaml(settings_path)
    config = AppConfig(**data)

    env_port = os.getenv("PORT")
    if env_port:
        config.server.port = int(env_port)

    # Env origins are merged with (not substituted for) the configured list.
    merged = list(config.server.allowed_origins)
    for origin in _split_origins(os.getenv("CORS_ORIGIN")):
        if origin not in merged:
            merged.append(origin)
    config.server.allowed_origins = merged

    if "db_path" in data.get("store", {}):
        config.store.db_path = _resolve_db_path(config.store.db_path, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, store=%s, origins=%d)",
        config.server.host,
        config.server.port,
        config.store.db_path,
        len(config.server.allowed_origins),
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config (used by tests)."""
    global _config
    _config = None
