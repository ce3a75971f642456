"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables (or a local .env file).
"""

import json
from functools import lru_cache
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "SurveyGuard"
    APP_ENV: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Secrets
    CHALLENGE_SECRET_KEY: str = ""  # Required - loaded from environment
    FINGERPRINT_SALT: str | None = None  # Falls back to CHALLENGE_SECRET_KEY

    @field_validator("CHALLENGE_SECRET_KEY")
    @classmethod
    def validate_required_secrets(cls, v: str, info: Any) -> str:
        """Validate that required secrets are set."""
        if not v:
            raise ValueError(f"{info.field_name} must be set in environment")
        return v

    # IP intelligence providers
    IPINFO_TOKEN: str | None = None
    ABUSEIPDB_KEY: str | None = None
    ABUSEIPDB_MIN_CONFIDENCE: int = 50
    TOR_EXIT_LIST_URL: str = "https://check.torproject.org/torbulkexitlist"
    TOR_LIST_REFRESH_MINUTES: int = 60
    VPN_PORT_PROBE_ENABLED: bool = False  # Outbound TCP probes against the client IP

    # Geolocation sources
    GEO_IP_API_URL: str = "http://ip-api.com/json/{ip}"
    GEO_IPINFO_URL: str = "https://ipinfo.io/{ip}/json"
    GEO_FREEGEOIP_URL: str = "https://freegeoip.app/json/{ip}"
    GEO_SOURCE_TIMEOUT_SECONDS: float = 8.0

    # Domain reputation (RDAP registration age)
    DOMAIN_RDAP_CHECK_ENABLED: bool = False
    RDAP_BASE_URL: str = "https://rdap.org/domain/{domain}"

    # Third-party captcha tokens (hCaptcha / Turnstile compatible siteverify)
    CAPTCHA_VERIFY_URL: str | None = None
    CAPTCHA_SECRET_KEY: str | None = None

    # Timeouts
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    LOOKUP_HTTP_TIMEOUT_SECONDS: float = 5.0

    # Result cache
    VPN_CACHE_TTL_SECONDS: int = 3600
    GEO_CACHE_TTL_SECONDS: int = 4 * 3600
    DOMAIN_CACHE_TTL_SECONDS: int = 3600
    FINGERPRINT_CACHE_TTL_SECONDS: int = 24 * 3600
    CACHE_MAX_ENTRIES: int = 1000

    # Session state
    HONEYPOT_SESSION_TTL_MINUTES: int = 30
    CHALLENGE_MAX_AGE_SECONDS: int = 300
    SESSION_SWEEP_INTERVAL_MINUTES: int = 5
    ENABLE_BACKGROUND_JOBS: bool = True

    # Access decision thresholds
    GEO_CONFIDENCE_FLOOR: int = 60
    PROXY_DENY_CONFIDENCE: int = 70
    CAPTCHA_DENY_SCORE: float = 0.5

    # CORS - stored as comma-separated string to avoid pydantic-settings JSON parsing issues
    CORS_ORIGINS: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        try:
            return json.loads(self.CORS_ORIGINS)
        except json.JSONDecodeError:
            return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def fingerprint_salt(self) -> str:
        """Salt used when hashing device fingerprints."""
        return self.FINGERPRINT_SALT or self.CHALLENGE_SECRET_KEY


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
