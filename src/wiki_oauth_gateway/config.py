"""Configuration management for the wiki OAuth gateway.

Provides configuration loading from environment variables, .env files,
and optional configuration files with proper precedence handling.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "WIKI_OAUTH_"

DEFAULT_ALLOWED_ORIGINS = [
    "https://localhost:3000",
    "http://localhost:3000",
    "https://localhost:8080",
    "http://localhost:8080",
]


class ConfigError(Exception):
    """Raised when configuration validation fails."""


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Environment(str, Enum):
    """Deployment environments."""

    LOCAL = "local"
    DEV = "dev"
    STAGE = "stage"
    PROD = "prod"


class CallbackMode(str, Enum):
    """How the user returns from the provider's authorization page.

    One mode is active per deployment.
    """

    REDIRECT = "redirect"
    POPUP = "popup"
    OOB = "oob"


class Config(BaseModel):
    """Main configuration model for the gateway.

    Configuration can be loaded from:
    - Environment variables with WIKI_OAUTH_ prefix
    - Optional .env file in project root
    - Optional configuration file passed via CLI
    """

    # Core settings
    app_name: str = Field(default="Wiki OAuth Gateway", description="Application name")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    environment: Environment = Field(
        default=Environment.LOCAL, description="Deployment environment"
    )

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server bind host")  # noqa: S104  # nosec B104
    port: int = Field(default=8000, ge=1, le=65535, description="Server bind port")

    # OAuth 1.0a consumer
    consumer_key: str | None = Field(default=None, description="OAuth consumer key")
    consumer_secret: SecretStr | None = Field(
        default=None, description="OAuth consumer secret"
    )
    callback_mode: CallbackMode = Field(
        default=CallbackMode.POPUP, description="How authorization completes"
    )
    callback_url: str | None = Field(
        default=None,
        description="Callback URL registered with the consumer (derived from request if unset)",
    )

    # Provider endpoints
    request_token_url: str = Field(
        default="https://meta.wikimedia.org/w/index.php?title=Special:OAuth/initiate",
        description="Request-token endpoint",
    )
    authorize_url: str = Field(
        default="https://meta.wikimedia.org/wiki/Special:OAuth/authorize",
        description="Browser authorization page",
    )
    access_token_url: str = Field(
        default="https://meta.wikimedia.org/w/index.php?title=Special:OAuth/token",
        description="Access-token endpoint",
    )
    api_url: str = Field(
        default="https://en.wikipedia.org/w/api.php", description="Wiki action API endpoint"
    )
    user_agent: str = Field(
        default="wiki-oauth-gateway/0.1.0", description="User-Agent sent to the provider"
    )
    http_timeout: float = Field(
        default=30.0, gt=0, description="Timeout in seconds for provider requests"
    )

    # Browser front-end
    frontend_url: str | None = Field(default=None, description="Front-end origin URL")
    allowed_origins: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS),
        description="Origins allowed to call the gateway",
    )
    allowed_origin_regex: str | None = Field(
        default=None, description="Additional origin pattern, e.g. preview deployments"
    )

    # Session storage
    pending_session_ttl: int = Field(
        default=3600, ge=1, description="Seconds a login may stay unauthorized"
    )
    session_ttl: int = Field(
        default=86400, ge=1, description="Idle seconds before an authenticated session expires"
    )
    redis_url: str | None = Field(default=None, description="Durable session backend URL")
    memory_fallback_enabled: bool = Field(
        default=True, description="Fall back to memory when the durable backend fails"
    )
    session_encryption_key: SecretStr | None = Field(
        default=None, description="Fernet key encrypting records in the durable backend"
    )

    enable_debug_endpoint: bool = Field(
        default=False, description="Expose redacted diagnostics at /debug"
    )

    model_config = {
        "extra": "allow",
        "validate_assignment": True,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("environment", "callback_mode", mode="before")
    @classmethod
    def normalize_lowercase(cls, v: Any) -> Any:
        """Normalize enum strings to lowercase."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("consumer_key", mode="before")
    @classmethod
    def strip_consumer_key(cls, v: Any) -> Any:
        """Consumer keys pasted into env files often carry whitespace."""
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("consumer_secret", mode="before")
    @classmethod
    def strip_consumer_secret(cls, v: Any) -> Any:
        """Strip whitespace from the consumer secret."""
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def split_origins(cls, v: Any) -> Any:
        """Accept a comma-separated string of origins."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @model_validator(mode="after")
    def validate_redirect_mode(self) -> Config:
        """Redirect mode sends the browser back to the front-end."""
        if self.callback_mode == CallbackMode.REDIRECT and not self.frontend_url:
            msg = "frontend_url is required when callback_mode is 'redirect'"
            raise ValueError(msg)
        return self

    @property
    def is_out_of_band(self) -> bool:
        """Whether logins complete with a copied verification code."""
        return self.callback_mode == CallbackMode.OOB

    @property
    def has_consumer_credentials(self) -> bool:
        """Whether both halves of the consumer credential are set."""
        return bool(self.consumer_key and self.consumer_secret)

    @property
    def cors_origins(self) -> list[str]:
        """Allowed origins with the front-end URL first."""
        origins: list[str] = []
        if self.frontend_url:
            origins.append(self.frontend_url.rstrip("/"))
        for origin in self.allowed_origins:
            if origin not in origins:
                origins.append(origin)
        return origins

    @property
    def frontend_origin(self) -> str | None:
        """Scheme and host of the front-end URL, for postMessage targeting."""
        if not self.frontend_url:
            return None
        parts = urlsplit(self.frontend_url)
        if not parts.scheme or not parts.netloc:
            return None
        return f"{parts.scheme}://{parts.netloc}"


_ENV_MAPPING = {
    "app_name": "APP_NAME",
    "log_level": "LOG_LEVEL",
    "environment": "ENVIRONMENT",
    "host": "HOST",
    "port": "PORT",
    "consumer_key": "CONSUMER_KEY",
    "consumer_secret": "CONSUMER_SECRET",
    "callback_mode": "CALLBACK_MODE",
    "callback_url": "CALLBACK_URL",
    "request_token_url": "REQUEST_TOKEN_URL",
    "authorize_url": "AUTHORIZE_URL",
    "access_token_url": "ACCESS_TOKEN_URL",
    "api_url": "API_URL",
    "user_agent": "USER_AGENT",
    "http_timeout": "HTTP_TIMEOUT",
    "frontend_url": "FRONTEND_URL",
    "allowed_origins": "ALLOWED_ORIGINS",
    "allowed_origin_regex": "ALLOWED_ORIGIN_REGEX",
    "pending_session_ttl": "PENDING_SESSION_TTL",
    "session_ttl": "SESSION_TTL",
    "redis_url": "REDIS_URL",
    "memory_fallback_enabled": "MEMORY_FALLBACK_ENABLED",
    "session_encryption_key": "SESSION_ENCRYPTION_KEY",
    "enable_debug_endpoint": "ENABLE_DEBUG_ENDPOINT",
}

_INT_FIELDS = frozenset({"port", "pending_session_ttl", "session_ttl"})
_FLOAT_FIELDS = frozenset({"http_timeout"})
_BOOL_FIELDS = frozenset({"memory_fallback_enabled", "enable_debug_endpoint"})

_SECRET_FIELDS = frozenset({"consumer_secret", "session_encryption_key"})


def _get_env_value(key: str, prefix: str = ENV_PREFIX) -> str | None:
    """Get environment variable value with prefix."""
    return os.environ.get(f"{prefix}{key.upper()}")


def _load_env_config() -> dict[str, Any]:
    """Load configuration from environment variables."""
    config: dict[str, Any] = {}
    for field_name, env_suffix in _ENV_MAPPING.items():
        value: Any = _get_env_value(env_suffix)
        if value is None:
            continue
        if field_name in _BOOL_FIELDS:
            value = value.strip().lower() in ("true", "1", "yes")
        elif field_name in _INT_FIELDS:
            with contextlib.suppress(ValueError):
                value = int(value)
        elif field_name in _FLOAT_FIELDS:
            with contextlib.suppress(ValueError):
                value = float(value)
        config[field_name] = value

    return config


def _load_file_config(path: str | Path) -> dict[str, Any]:
    """Load configuration from a file (JSON or YAML)."""
    path = Path(path)
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise ConfigError(msg)

    suffix = path.suffix.lower()
    content = path.read_text()

    if suffix == ".json":
        return dict(json.loads(content))

    if suffix in (".yaml", ".yml"):
        import yaml

        return dict(yaml.safe_load(content) or {})

    msg = f"Unsupported configuration file format: {suffix}"
    raise ConfigError(msg)


def _redact_for_log(key: str, value: Any) -> str:
    """Redact sensitive values for logging."""
    if key in _SECRET_FIELDS and value:
        return "***"
    return str(value)


def load_config(
    path: str | Path | None = None,
    cli_args: dict[str, Any] | None = None,
) -> Config:
    """Load and validate configuration.

    Precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Configuration file
    4. Model defaults

    Args:
        path: Optional path to configuration file
        cli_args: Optional CLI argument overrides

    Returns:
        Validated Config instance

    Raises:
        ConfigError: If configuration is invalid
    """
    load_dotenv()

    config_dict: dict[str, Any] = {}
    if path:
        logger.debug("Loading configuration from file: %s", path)
        config_dict.update(_load_file_config(path))

    for key, value in _load_env_config().items():
        config_dict[key] = value
        logger.debug("Config %s from environment: %s", key, _redact_for_log(key, value))

    if cli_args:
        for key, value in cli_args.items():
            if value is not None:
                config_dict[key] = value
                logger.debug("Config %s from CLI: %s", key, _redact_for_log(key, value))

    try:
        return Config(**config_dict)
    except Exception as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigError(msg) from e
