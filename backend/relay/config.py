"""Chat relay application configuration.

Loads settings from two YAML files:
  * relay.settings.yaml : non-secret configuration
  * relay.secrets.yaml  : secrets such as the database URL (never committed)

Environment variables override the files, matching the variables the relay
has always been deployed with:
  * DATABASE_URL   : persistence connection string (DuckDB path or :memory:)
  * CLIENT_ORIGIN  : comma separated allow-list of calling origins
  * PORT           : listening port
  * RELAY_SETTINGS_FILE / RELAY_SECRETS_FILE : alternate YAML locations
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from relay.errors import ConfigError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")
SECRETS_FILE  = Path("relay.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class DatabaseSecrets(BaseModel):
    url: Optional[str] = None


class Secrets(BaseModel):
    database: DatabaseSecrets = Field(default_factory=DatabaseSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 3000
    log_level:       str       = "info"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [o.strip() for o in value.split(",") if o.strip()]
        return value

    def allows_origin(self, origin: Optional[str]) -> bool:
        """True when *origin* may talk to either transport."""
        if "*" in self.allowed_origins:
            return True
        return origin is not None and origin in self.allowed_origins


class DatabaseSettings(BaseModel):
    timeout_seconds: float = Field(default=5.0, gt=0)


class HistorySettings(BaseModel):
    """How much history a single query may return."""
    default_limit: int = Field(default=100, ge=1)
    max_limit:     int = Field(default=100, ge=1)


class ChatSettings(BaseModel):
    default_user: str = "Anonymous"
    default_room: str = "global"


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    history:  HistorySettings  = Field(default_factory=HistorySettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)

    @property
    def database_url(self) -> Optional[str]:
        return self.secrets.database.url


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def _apply_env_overrides(data: Dict[str, Any]) -> None:
    """Fold deployment environment variables into the raw settings dict."""
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        data.setdefault("secrets", {}).setdefault("database", {})["url"] = database_url

    server = data.setdefault("server", {})
    origins = os.environ.get("CLIENT_ORIGIN")
    if origins:
        server["allowed_origins"] = origins
    port = os.environ.get("PORT")
    if port:
        server["port"] = port


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets + environment into an *AppConfig*."""
    settings_path = Path(
        settings_path or os.environ.get("RELAY_SETTINGS_FILE") or SETTINGS_FILE
    )
    secrets_path = Path(
        secrets_path or os.environ.get("RELAY_SECRETS_FILE") or SECRETS_FILE
    )
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data
    _apply_env_overrides(settings_data)

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, origins=%s, database_url_set=%s)",
        config.server.host,
        config.server.port,
        config.server.allowed_origins,
        bool(config.database_url),
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
    """Forget the cached config (used by tests)."""
    global _config
    _config = None


def require_database_url(config: AppConfig) -> str:
    """Return the database URL or fail startup.

    Raises:
        ConfigError: If no persistence connection string is configured.
    """
    if not config.database_url:
        raise ConfigError(
            "DATABASE_URL not set. Set it in relay.secrets.yaml "
            "(database.url) or in the environment."
        )
    return config.database_url
