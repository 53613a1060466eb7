"""
Service configuration, read from the environment (and .env) with pydantic-settings.

Reservation timing is configuration, not code: the default hold TTL, the
upper bound a caller may ask for, the per-variant lock wait and the sweeper
cadence all come from here.
"""
import socket
from typing import List, Optional
from urllib.parse import quote_plus

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOCAL_HOSTS = ("", "localhost", "127.0.0.1")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # PostgreSQL
    DB_USER: str = Field(..., description="PostgreSQL username")
    DB_PASSWORD: str = Field(..., description="PostgreSQL password")
    DB_NAME: str = Field(..., description="PostgreSQL database name")
    DB_HOST: str = Field(default="localhost")
    DB_PORT: str = Field(default="5432")
    DB_POOL_SIZE: int = Field(default=20, gt=0)
    DB_MAX_OVERFLOW: int = Field(default=40, ge=0)
    DB_POOL_RECYCLE: int = Field(default=3600, gt=0, description="Seconds before a pooled connection is replaced")

    # HTTP / runtime
    ALLOWED_ORIGINS: str = Field(default="", description="Comma-separated CORS origins")
    ENVIRONMENT: str = Field(default="production", description="development or production")
    LOG_LEVEL: str = Field(default="INFO")

    # Reservations
    RESERVATION_TTL_SECONDS: int = Field(default=1800, gt=0, description="Hold duration when the caller gives none")
    MAX_RESERVATION_TTL_SECONDS: int = Field(default=7200, gt=0, description="Longest hold a caller may request")
    LOCK_TIMEOUT_SECONDS: float = Field(default=15.0, gt=0, description="Max wait for a per-variant lock")

    # Expiry sweeper
    SWEEPER_ENABLED: bool = Field(default=True, description="Run the sweeper inside the API process")
    SWEEP_INTERVAL_SECONDS: float = Field(default=300.0, gt=0)
    SWEEP_BATCH_SIZE: int = Field(default=500, gt=0, description="Max holds expired per pass")

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("development", "production"):
            raise ValueError("ENVIRONMENT must be 'development' or 'production'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL: {v}")
        return level

    @model_validator(mode="after")
    def validate_ttl_bounds(self) -> "Settings":
        if self.RESERVATION_TTL_SECONDS > self.MAX_RESERVATION_TTL_SECONDS:
            raise ValueError("RESERVATION_TTL_SECONDS must not exceed MAX_RESERVATION_TTL_SECONDS")
        return self

    def validate_production_settings(self) -> List[str]:
        """Problems that are tolerated in development but not in production."""
        if not self.is_production:
            return []
        errors = []
        if not self.ALLOWED_ORIGINS:
            errors.append("ALLOWED_ORIGINS is required in production")
        if not self.SWEEPER_ENABLED:
            errors.append("SWEEPER_ENABLED must be true in production (expired holds would never be reclaimed)")
        return errors

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def db_url(self) -> str:
        # asyncpg resolves names through getaddrinfo on the event loop; hand it an address up front
        host = self.DB_HOST
        if host not in _LOCAL_HOSTS:
            try:
                host = socket.gethostbyname(host)
            except socket.gaierror:
                pass
        return (
            f"postgresql+asyncpg://{self.DB_USER}:{quote_plus(self.DB_PASSWORD)}"
            f"@{host}:{self.DB_PORT}/{self.DB_NAME}"
        )

    @property
    def allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Load settings once; refuse to start on production misconfiguration."""
    global _settings
    if _settings is None:
        settings = Settings()
        errors = settings.validate_production_settings()
        if errors:
            raise ValueError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))
        _settings = settings
    return _settings
