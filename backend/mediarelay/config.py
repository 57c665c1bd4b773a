"""MediaRelay application configuration.

Loads settings from two YAML files:
  * mediarelay.settings.yaml  — non-secret configuration
  * mediarelay.secrets.yaml   — secrets (never committed)

A handful of environment variables override the YAML values so container
deployments can run without a settings file:
  * DRIVE_MODE, ACCESS_KEYWORD, ADMIN_USER_ID
  * LINE_CHANNEL_ACCESS_TOKEN (or LINE_ACCESS_TOKEN), LINE_CHANNEL_SECRET
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("mediarelay.settings.yaml")
SECRETS_FILE  = Path("mediarelay.secrets.yaml")

DriveMode = Literal["google", "onedrive", "both"]
DenialPolicy = Literal["silent", "explicit"]


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class LineSecrets(BaseModel):
    channel_access_token: str = ""
    channel_secret:       str = ""


class GoogleSecrets(BaseModel):
    """OAuth client + refresh token for the Drive account that owns the archive.

    ``access_token`` may be given instead of a refresh token for short-lived
    deployments; it is never refreshed.
    """
    client_id:     str = ""
    client_secret: str = ""
    refresh_token: str = ""
    access_token:  str = ""


class OneDriveSecrets(BaseModel):
    tenant_id:     str = "common"
    client_id:     str = ""
    client_secret: str = ""
    refresh_token: str = ""


class Secrets(BaseModel):
    line:     LineSecrets     = Field(default_factory=LineSecrets)
    google:   GoogleSecrets   = Field(default_factory=GoogleSecrets)
    onedrive: OneDriveSecrets = Field(default_factory=OneDriveSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:      str = "0.0.0.0"
    port:      int = 3000
    log_level: str = "info"


class LoggingSettings(BaseModel):
    level: str = "info"


class LineSettings(BaseModel):
    api_base:         str  = "https://api.line.me"
    data_api_base:    str  = "https://api-data.line.me"
    verify_signature: bool = True
    timeout_seconds:  float = 30.0


class AccessSettings(BaseModel):
    """Access control: passphrase enrollment, administrator, denial policy."""
    passphrase:               str          = "解鎖備份"
    admin_user_id:            str          = ""
    denial_policy:            DenialPolicy = "silent"
    refresh_interval_seconds: int          = 300

    @field_validator("refresh_interval_seconds")
    @classmethod
    def _positive_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("refresh_interval_seconds must be >= 1")
        return v


class WhitelistSettings(BaseModel):
    """Where the durable whitelist lives."""
    backend:       Literal["duckdb", "google_drive"] = "duckdb"
    path:          str = "whitelist.duckdb"
    document_name: str = "whitelist.json"


class StorageSettings(BaseModel):
    drive_mode:    DriveMode = "google"
    root_folder:   str       = "LINE-bot"
    month_folders: bool      = False
    timezone:      str       = "Asia/Taipei"
    staging_dir:   str       = ""
    chunk_size:    int       = 5 * 1024 * 1024

    @field_validator("drive_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @property
    def backend_names(self) -> List[str]:
        """Backends enabled by ``drive_mode`` in upload order."""
        if self.drive_mode == "both":
            return ["google", "onedrive"]
        return [self.drive_mode]


class ReplySettings(BaseModel):
    debounce_ms:       int  = 2000
    processing_notice: bool = False

    @field_validator("debounce_ms")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("debounce_ms must be >= 0")
        return v


class RelayConfig(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    line:      LineSettings      = Field(default_factory=LineSettings)
    access:    AccessSettings    = Field(default_factory=AccessSettings)
    whitelist: WhitelistSettings = Field(default_factory=WhitelistSettings)
    storage:   StorageSettings   = Field(default_factory=StorageSettings)
    replies:   ReplySettings     = Field(default_factory=ReplySettings)
    secrets:   Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

_ENV_OVERRIDES = (
    ("DRIVE_MODE",                ("storage", "drive_mode")),
    ("ACCESS_KEYWORD",            ("access", "passphrase")),
    ("ADMIN_USER_ID",             ("access", "admin_user_id")),
    ("LINE_ACCESS_TOKEN",         ("secrets", "line", "channel_access_token")),
    ("LINE_CHANNEL_ACCESS_TOKEN", ("secrets", "line", "channel_access_token")),
    ("LINE_CHANNEL_SECRET",       ("secrets", "line", "channel_secret")),
)


def _apply_env_overrides(data: Dict[str, Any]) -> None:
    for env_name, keys in _ENV_OVERRIDES:
        value = os.environ.get(env_name)
        if not value:
            continue
        node = data
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        node[keys[-1]] = value
        logger.debug("Config override from env: %s", env_name)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> RelayConfig:
    """Load and merge settings + secrets into a single *RelayConfig* object."""
    settings_data = _load_yaml(Path(settings_path) if settings_path else SETTINGS_FILE)
    secrets_data  = _load_yaml(Path(secrets_path) if secrets_path else SECRETS_FILE)

    # Merge: secrets live under the "secrets" key in RelayConfig
    settings_data["secrets"] = secrets_data
    _apply_env_overrides(settings_data)

    config = RelayConfig(**settings_data)
    logger.info(
        "Settings loaded (drive_mode=%s, whitelist=%s, denial_policy=%s, debounce_ms=%d)",
        config.storage.drive_mode,
        config.whitelist.backend,
        config.access.denial_policy,
        config.replies.debounce_ms,
    )
    if not config.access.admin_user_id:
        logger.warning("No administrator configured; admin commands are disabled.")
    return config


_config: Optional[RelayConfig] = None


def get_config() -> RelayConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration (for testing)."""
    global _config
    _config = None
