"""
Application Configuration
Environment-driven settings for the NPHIES claim submission backend
Source: https://docs.pydantic.dev/latest/concepts/pydantic_settings/
Verified: 2025-12-18
"""

import json
from functools import lru_cache
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

Environment = Literal["development", "staging", "production", "testing"]


def _split_list(value: Any) -> Any:
    """Accept a JSON array or a comma-separated string for list settings."""
    if not isinstance(value, str):
        return value

    raw = value.strip()
    if raw.startswith("[") and raw.endswith("]"):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, list):
            return decoded
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseSettings):
    """
    Settings read from the process environment and an optional ``.env`` file.

    Names are matched case-insensitively; unknown variables are ignored so the
    service can share an environment with sidecars.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================================================
    # Runtime
    # ============================================================================
    ENVIRONMENT: Environment = Field(default="development", description="Deployment tier")
    DEBUG: bool = Field(default=False, description="Echo SQL and verbose errors")
    LOG_LEVEL: str = Field(default="INFO", description="Minimum log level")
    LOG_FILE: str | None = Field(default=None, description="Rotating log file, if any")

    # ============================================================================
    # NPHIES clearinghouse
    # ============================================================================
    NPHIES_BASE_URL: str = Field(
        default="http://176.105.150.83", description="Gateway root; /$process-message is appended"
    )
    NPHIES_TIMEOUT: float = Field(
        default=60.0, gt=0, description="Per-request timeout in seconds"
    )
    NPHIES_PROVIDER_ID: str = Field(
        default="1010613708", description="Sender license when the provider has none"
    )
    NPHIES_INSURER_ID: str = Field(
        default="INS-FHIR", description="Receiver license when the insurer has none"
    )
    NPHIES_PROVIDER_ENDPOINT: str = Field(
        default="http://provider.com", description="Prefix for bundle entry fullUrls"
    )
    NPHIES_POLL_COUNT: int = Field(
        default=50, gt=0, le=200, description="Messages requested per poll"
    )

    @field_validator("NPHIES_BASE_URL", "NPHIES_PROVIDER_ENDPOINT")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    # ============================================================================
    # Database
    # ============================================================================
    DATABASE_URL: str | None = Field(default=None, description="Overrides the POSTGRES_* parts")
    POSTGRES_HOST: str = Field(default="db")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="nphies_claims")
    POSTGRES_USER: str = Field(default="nphies")
    POSTGRES_PASSWORD: str = Field(..., description="Required; no default")

    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30, description="Seconds to wait for a connection")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # ============================================================================
    # HTTP surface
    # ============================================================================
    # NoDecode keeps env values raw so CSV reaches parse_cors_fields
    CORS_ORIGINS: Annotated[list[str], NoDecode] = Field(
        default=["http://localhost:3000", "http://localhost:5173"]
    )
    CORS_CREDENTIALS: bool = Field(default=True)
    CORS_METHODS: Annotated[list[str], NoDecode] = Field(default=["*"])
    CORS_HEADERS: Annotated[list[str], NoDecode] = Field(default=["*"])

    @field_validator("CORS_ORIGINS", "CORS_METHODS", "CORS_HEADERS", mode="before")
    @classmethod
    def parse_cors_fields(cls, v: Any) -> Any:
        return _split_list(v)

    # ============================================================================
    # Environment flags
    # ============================================================================
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_testing(self) -> bool:
        return self.ENVIRONMENT == "testing"


@lru_cache
def get_settings() -> Settings:
    """Settings are parsed once per process."""
    return Settings()


settings = get_settings()
