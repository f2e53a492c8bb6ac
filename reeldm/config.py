"""Configuration management for the reel DM dispatcher."""

import os
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, SecretStr


class InstagramConfig(BaseModel):
    """Instagram Graph API and webhook settings."""

    access_token: SecretStr = Field(..., description="Long-lived Instagram access token")
    account_id: str = Field(..., description="Instagram business account ID")
    token_expires_at: Optional[datetime] = Field(
        default=None, description="When the access token stops working"
    )
    api_version: str = Field(default="v24.0", pattern=r"^v\d+\.\d+$")
    api_base_url: str = "https://graph.instagram.com"
    request_timeout: float = Field(default=15.0, gt=0)


class WebhookConfig(BaseModel):
    """Inbound webhook verification settings."""

    verify_token: SecretStr = Field(..., description="Token echoed back during subscription")
    app_secret: Optional[SecretStr] = Field(
        default=None, description="App secret for X-Hub-Signature-256 checks"
    )


class QueueConfig(BaseModel):
    """DM queue pacing and retry settings."""

    max_dms_per_hour: int = Field(default=195, ge=1, le=200)
    min_send_spacing_ms: int = Field(default=1000, ge=0)
    tick_spacing_ms: int = Field(default=2000, ge=0, description="Delay between worker ticks")
    rate_limit_backoff_ms: int = Field(default=10000, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    message_char_limit: int = Field(default=1000, ge=100)
    truncate_at: int = Field(default=950, ge=1)


class ServerConfig(BaseModel):
    """Web server and site settings."""

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    site_url: str = Field(default="http://localhost:3000", description="Public site for list links")

    # Database settings
    database_path: str = Field(
        default="~/.reeldm/reeldm.db", description="Path to SQLite database file"
    )


class Config(BaseModel):
    """Root configuration model."""

    webhook: WebhookConfig
    instagram: Optional[InstagramConfig] = None
    queue: QueueConfig = QueueConfig()
    server: ServerConfig = ServerConfig()


def load_config(config_path: str | Path = "config.yaml") -> Config:
    """Load and validate configuration from YAML file.

    Supports ${VAR_NAME} syntax for environment variable expansion.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Validated Config object.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValidationError: If config is invalid.
        ValueError: If referenced environment variable is not set.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}\n"
            "Copy config.example.yaml to config.yaml and fill in your values."
        )

    with path.open() as f:
        raw_config = yaml.safe_load(f) or {}

    # Expand environment variables in the format ${VAR_NAME}
    def expand_env_vars(obj):
        if isinstance(obj, dict):
            return {k: expand_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [expand_env_vars(item) for item in obj]
        elif isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
            env_var = obj[2:-1]
            value = os.getenv(env_var)
            if value is None:
                raise ValueError(f"Environment variable '{env_var}' is not set")
            return value
        return obj

    raw_config = expand_env_vars(raw_config)

    return Config(**raw_config)
