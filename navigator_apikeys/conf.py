"""
API Keys Configuration — validated settings for the key lifecycle manager.

Reads tuning values from environment variables:
    KEYS_DIRECTORY = <path for encrypted key files and backups>
    APIKEYS_ROTATION_INTERVAL = <seconds>
    APIKEYS_GRACE_PERIOD = <seconds>
    APIKEYS_MEMORY_TTL = <seconds>
    APIKEYS_AUTO_ROTATE = <bool>
    ...

Security Note:
    Settings never hold key material. The master secret and service keys are
    read by the components that need them and are never logged.
"""
import os
import logging
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("navigator.apikeys")

MASTER_SECRET_ENV = "API_KEYS_ENCRYPTION_KEY"
JWT_SECRET_ENV = "JWT_SECRET"

MINUTE = 60.0
HOUR = 60 * MINUTE
DAY = 24 * HOUR

# Service id -> environment variables holding its key, in lookup order.
DEFAULT_SERVICES: dict[str, tuple[str, ...]] = {
    "openRouteService": ("OPENROUTESERVICE_API_KEY", "OPENROUTE_API_KEY"),
    "strava": ("STRAVA_API_KEY", "STRAVA_CLIENT_SECRET"),
    "weatherService": ("WEATHERSERVICE_API_KEY", "OPENWEATHER_API_KEY"),
    "mapbox": ("MAPBOX_API_KEY", "MAPBOX_SECRET_TOKEN"),
    "openai": ("OPENAI_API_KEY",),
}

# Environment variable -> settings field.
_ENV_FIELDS = {
    "KEYS_DIRECTORY": "keys_directory",
    "APIKEYS_ROTATION_INTERVAL": "rotation_interval",
    "APIKEYS_GRACE_PERIOD": "grace_period",
    "APIKEYS_MEMORY_TTL": "memory_ttl",
    "APIKEYS_CLEANUP_INTERVAL": "cleanup_interval",
    "APIKEYS_METRICS_INTERVAL": "metrics_interval",
    "APIKEYS_METRICS_RETENTION": "metrics_retention",
    "APIKEYS_ROTATION_CHECK_INTERVAL": "rotation_check_interval",
    "APIKEYS_BACKUP_INTERVAL": "backup_interval",
    "APIKEYS_MAX_BACKUPS": "max_backups",
    "APIKEYS_AUTO_ROTATE": "auto_rotate",
    "APIKEYS_STRICT_SECRETS": "strict_secrets",
    "APIKEYS_CIPHER_BACKEND": "cipher_backend",
}


def default_services() -> dict[str, list[str]]:
    return {service: list(names) for service, names in DEFAULT_SERVICES.items()}


class ApiKeySettings(BaseModel):
    """Validated key lifecycle configuration. Durations are in seconds."""

    keys_directory: Optional[Path] = None
    master_secret_name: str = MASTER_SECRET_ENV
    required_secrets: list[str] = Field(
        default_factory=lambda: [MASTER_SECRET_ENV, JWT_SECRET_ENV]
    )
    services: dict[str, list[str]] = Field(default_factory=default_services)
    rotation_interval: float = Field(default=30 * DAY, gt=0)
    grace_period: float = Field(default=DAY, ge=0)
    memory_ttl: float = Field(default=30 * MINUTE, gt=0)
    cleanup_interval: float = Field(default=MINUTE, gt=0)
    metrics_interval: float = Field(default=MINUTE, gt=0)
    metrics_retention: float = Field(default=7 * DAY, gt=0)
    rotation_check_interval: float = Field(default=MINUTE, gt=0)
    backup_interval: float = Field(default=DAY, gt=0)
    max_backups: int = Field(default=10, ge=1)
    auto_rotate: bool = True
    strict_secrets: bool = True
    cipher_backend: str = Field(default="aesgcm")

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in ("aesgcm", "chacha20"):
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @field_validator("services")
    @classmethod
    def validate_services(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        for service in v:
            if not service or "/" in service or service.startswith("."):
                raise ValueError(f"Invalid service id: {service!r}")
        return v

    @model_validator(mode="after")
    def validate_master_secret_required(self) -> "ApiKeySettings":
        """The master secret is always a required bootstrap secret."""
        if self.master_secret_name not in self.required_secrets:
            self.required_secrets.insert(0, self.master_secret_name)
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "ApiKeySettings":
        """Create ApiKeySettings by loading values from environment.

        Args:
            environ: Mapping to read instead of ``os.environ``.
            overrides: Explicit field values, taking precedence over the environment.

        Returns:
            Populated ApiKeySettings instance.
        """
        environ = os.environ if environ is None else environ
        values = {
            field: environ[name]
            for name, field in _ENV_FIELDS.items()
            if environ.get(name)
        }
        values.update(overrides)
        settings = cls(**values)
        logger.debug(
            "API key settings loaded: services=%s keys_directory=%s auto_rotate=%s",
            sorted(settings.services), settings.keys_directory, settings.auto_rotate,
        )
        return settings
