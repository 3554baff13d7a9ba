from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./crm.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Authentication
    SESSION_TTL_DAYS: int = 30
    RESET_TOKEN_TTL_MINUTES: int = 60
    BCRYPT_ROUNDS: int = Field(12, ge=4, le=31)
    # No mail delivery exists, so development setups hand the token back
    RETURN_RESET_TOKEN: bool = False

    # WhatsApp Cloud API
    WHATSAPP_API_BASE_URL: str = "https://graph.facebook.com"
    WHATSAPP_API_VERSION: str = "v18.0"
    WHATSAPP_GATEWAY_TIMEOUT_SECONDS: float = 10.0
    WHATSAPP_VERIFY_TOKEN: Optional[str] = None
    WHATSAPP_APP_SECRET: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
