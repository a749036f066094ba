"""Application configuration using Pydantic settings."""

import os
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_SECRETS = [
    "dev-secret-key-change-in-production",
    "dev-state-secret-change-in-production",
    "your-secret-key-here",
    "change-me",
    "secret",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "LinkBio"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./linkbio.db"
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis (rate limiting)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Bearer tokens
    SECRET_KEY: str = "dev-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_DAYS: int = 7

    # Server-side sessions
    SESSION_COOKIE_NAME: str = "linkbio.sid"
    SESSION_TTL_DAYS: int = 7
    SESSION_COOKIE_SECURE: bool = True

    # OAuth state signing (separate key so a leaked state never helps forge tokens)
    STATE_SECRET_KEY: str = "dev-state-secret-change-in-production"
    OAUTH_STATE_TTL_SECONDS: int = 600

    # Google OAuth2
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_AUTHORIZE_URL: str = "https://accounts.google.com/o/oauth2/v2/auth"
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    GOOGLE_USERINFO_URL: str = "https://openidconnect.googleapis.com/v1/userinfo"
    OAUTH_REDIRECT_URI: str = "http://localhost:5000/auth/oauth/callback"

    # Client bridge
    APP_BASE_URL: str = "http://localhost:5000"
    POST_LOGIN_PATH: str = "/dashboard"
    BRIDGE_TIMEOUT_SECONDS: float = 5.0

    # Rate limiting
    LOGIN_RATE_LIMIT_PER_MINUTE: int = 10

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:5000", "http://localhost:5173"]

    # Monitoring
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # 'text' or 'json' (json for production)

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @field_validator("SECRET_KEY", "STATE_SECRET_KEY")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Reject insecure signing secrets in production."""
        # Read ENVIRONMENT directly, Settings is not fully initialized yet
        environment = os.getenv("ENVIRONMENT", "development")

        if environment == "production" and (v in _INSECURE_SECRETS or len(v) < 32):
            raise ValueError(
                "Insecure signing secret detected in production! "
                "Generate a secure key with: openssl rand -hex 32"
            )

        return v

    @property
    def oauth_enabled(self) -> bool:
        """True when Google OAuth client credentials are configured."""
        return bool(self.GOOGLE_CLIENT_ID and self.GOOGLE_CLIENT_SECRET)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
