"""Chatroom application configuration.

Loads settings from two YAML files:
  * chatroom.settings.yaml: non-secret configuration
  * chatroom.secrets.yaml: secrets (never committed)

Both files are optional; missing files fall back to model defaults.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chatroom.settings.yaml")
SECRETS_FILE  = Path("chatroom.secrets.yaml")

DEFAULT_SESSION_SECRET = "dev-secret-key"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class SessionSecrets(BaseModel):
    secret_key: str = DEFAULT_SESSION_SECRET


class Secrets(BaseModel):
    session: SessionSecrets = Field(default_factory=SessionSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 3000
    reload:          bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    db_path: str = "chatroom.duckdb"


class ChatSettings(BaseModel):
    """Limits applied by the message relay and the identity service.

    ``max_inline_image_bytes`` gates image payloads that transit the relay
    inline (``data:`` URLs). ``client_upload_limit_bytes`` is only advertised
    to clients, which enforce it before the out-of-band upload.
    """
    max_inline_image_bytes:    int = 500 * 1024
    client_upload_limit_bytes: int = 2 * 1024 * 1024
    history_limit:             int = 100
    display_name_max_length:   int = 50
    group_name:                str = "group"

    @field_validator("max_inline_image_bytes", "client_upload_limit_bytes", "history_limit")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value


class SessionSettings(BaseModel):
    cookie_name:   str  = "chatroom_session"
    ttl_seconds:   int  = 24 * 60 * 60
    cookie_secure: bool = False
    algorithm:     str  = "HS256"


class AppConfig(BaseModel):
    server:   ServerSettings  = Field(default_factory=ServerSettings)
    logging:  LoggingSettings = Field(default_factory=LoggingSettings)
    storage:  StorageSettings = Field(default_factory=StorageSettings)
    chat:     ChatSettings    = Field(default_factory=ChatSettings)
    session:  SessionSettings = Field(default_factory=SessionSettings)
    secrets:  Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_db_path(config: AppConfig, settings_dir: Path) -> None:
    """Resolve a relative storage path against the settings file directory."""
    db_path = config.storage.db_path
    if db_path == ":memory:" or Path(db_path).is_absolute():
        return
    config.storage.db_path = str(settings_dir / db_path)


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    if settings_path.exists():
        _resolve_db_path(config, settings_path.resolve().parent)

    if config.secrets.session.secret_key == DEFAULT_SESSION_SECRET:
        logger.warning("Using the default session secret; set session.secret_key in %s", secrets_path)

    if config.chat.max_inline_image_bytes >= config.chat.client_upload_limit_bytes:
        logger.warning(
            "chat.max_inline_image_bytes (%d) is not below client_upload_limit_bytes (%d)",
            config.chat.max_inline_image_bytes,
            config.chat.client_upload_limit_bytes,
        )

    logger.info(
        "Settings loaded (server=%s:%s, storage=%s)",
        config.server.host,
        config.server.port,
        config.storage.db_path,
    )
    return config


@lru_cache
def get_config() -> AppConfig:
    """Return the process-wide configuration (loaded once)."""
    return load_config()
