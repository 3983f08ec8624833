"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates provider/backend choices and provides typed access to settings.
Pipeline tuning (governor, retry and batching knobs) lives in dataclasses
next to the code that uses them and is selected by IMPORT_PROFILE.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from screener.exceptions import ConfigurationError

PROVIDERS = ("polygon", "fmp")
STORAGE_BACKENDS = ("json", "sqlite")
IMPORT_PROFILES = ("conservative", "adaptive", "turbo")


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Provider keys (one is required for the selected PROVIDER):
        POLYGON_API_KEY: Polygon.io API key
        FMP_API_KEY: Financial Modeling Prep API key

    Optional:
        PROVIDER: Listing/enrichment provider (polygon|fmp)
        IMPORT_PROFILE: Governor profile (conservative|adaptive|turbo)
        STORAGE_BACKEND: Record store (json|sqlite)
        DATA_DIR: Directory for the snapshot, database and status files
        REQUEST_TIMEOUT_SECONDS: Per-request timeout
        MAX_RUN_SECONDS: Deadline for a whole run (unset = none)
        MAX_PAGES: Safety cap on listing pages (unset = none)
        YAHOO_FALLBACK: Consult Yahoo Finance when ratios are missing
        SKIP_EXISTING: Skip symbols whose stored record is already complete
        LOG_LEVEL: Logging level
        LOG_FILE: JSON-lines log file (unset = console only)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider API keys
    POLYGON_API_KEY: str | None = Field(default=None, description="Polygon.io API key")
    FMP_API_KEY: str | None = Field(
        default=None, description="Financial Modeling Prep API key"
    )

    # Pipeline selection
    PROVIDER: str = Field(default="polygon", description="Primary data provider")
    IMPORT_PROFILE: str = Field(default="adaptive", description="Governor tuning profile")
    STORAGE_BACKEND: str = Field(default="json", description="Record store backend")

    # Directories
    DATA_DIR: Path = Field(default=Path("data"), description="Data directory")

    # Limits
    REQUEST_TIMEOUT_SECONDS: float = Field(
        default=15.0, gt=0.0, description="Per-request timeout in seconds"
    )
    MAX_RUN_SECONDS: float | None = Field(
        default=None, gt=0.0, description="Deadline for a whole run"
    )
    MAX_PAGES: int | None = Field(
        default=None, ge=1, description="Safety cap on listing pages"
    )

    # Behaviour toggles
    YAHOO_FALLBACK: bool = Field(
        default=True, description="Use Yahoo Finance when ratios are missing"
    )
    SKIP_EXISTING: bool = Field(
        default=True, description="Skip symbols already complete in the store"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON-lines log file")

    @field_validator("PROVIDER")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Normalize and validate the provider name."""
        value = v.strip().lower()
        if value not in PROVIDERS:
            raise ValueError(f"PROVIDER must be one of {', '.join(PROVIDERS)}")
        return value

    @field_validator("STORAGE_BACKEND")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        """Normalize and validate the storage backend."""
        value = v.strip().lower()
        if value not in STORAGE_BACKENDS:
            raise ValueError(f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}")
        return value

    @field_validator("IMPORT_PROFILE")
    @classmethod
    def validate_import_profile(cls, v: str) -> str:
        """Normalize and validate the import profile."""
        value = v.strip().lower()
        if value not in IMPORT_PROFILES:
            raise ValueError(f"IMPORT_PROFILE must be one of {', '.join(IMPORT_PROFILES)}")
        return value

    @property
    def snapshot_path(self) -> Path:
        """JSON snapshot of all stocks."""
        return self.DATA_DIR / "all_stocks.json"

    @property
    def database_path(self) -> Path:
        """SQLite document database."""
        return self.DATA_DIR / "stocks.db"

    @property
    def status_path(self) -> Path:
        """Run status document."""
        return self.DATA_DIR / "import_status.json"

    def api_key_for(self, provider: str | None = None) -> str:
        """Return the API key of a provider.

        Raises:
            ConfigurationError: If the key is not configured.
        """
        provider = (provider or self.PROVIDER).lower()
        key = {"polygon": self.POLYGON_API_KEY, "fmp": self.FMP_API_KEY}.get(provider)
        if not key:
            raise ConfigurationError(
                f"No API key configured for provider '{provider}'",
                context={"provider": provider, "env_var": f"{provider.upper()}_API_KEY"},
            )
        return key

    def ensure_directories(self) -> None:
        """Create the data directory if it doesn't exist."""
        self.DATA_DIR.mkdir(parents=True, exist_ok=True)

    def redacted_display(self) -> dict[str, str | int | float | bool | None]:
        """Return settings with API keys redacted for display."""
        def redact(value: str | None) -> str | None:
            if value is None:
                return None
            return f"{value[:4]}...{value[-4:]}" if len(value) > 12 else "***"

        return {
            "POLYGON_API_KEY": redact(self.POLYGON_API_KEY),
            "FMP_API_KEY": redact(self.FMP_API_KEY),
            "PROVIDER": self.PROVIDER,
            "IMPORT_PROFILE": self.IMPORT_PROFILE,
            "STORAGE_BACKEND": self.STORAGE_BACKEND,
            "DATA_DIR": str(self.DATA_DIR),
            "REQUEST_TIMEOUT_SECONDS": self.REQUEST_TIMEOUT_SECONDS,
            "MAX_RUN_SECONDS": self.MAX_RUN_SECONDS,
            "MAX_PAGES": self.MAX_PAGES,
            "YAHOO_FALLBACK": self.YAHOO_FALLBACK,
            "SKIP_EXISTING": self.SKIP_EXISTING,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
