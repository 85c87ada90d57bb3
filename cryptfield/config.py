"""
Configuration management using Pydantic Settings.
Loads configuration from environment variables and .env file.
"""
from typing import Dict, List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    DATABASE_URL: str = "sqlite+aiosqlite:///./cryptfield.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # Application Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # Development/Debug
    DEBUG: bool = False
    RELOAD: bool = False

    # File locations backing the private:// and public:// schemes
    CRYPTFIELD_PRIVATE_PATH: str = "./private"
    CRYPTFIELD_PUBLIC_PATH: str = "./files"

    # Key management
    # The nonce is read from the environment so it never shares a medium
    # with the wrapping key held in the configuration store.
    CRYPTFIELD_NONCE: Optional[str] = None  # base64, 12 bytes
    CRYPTFIELD_SECRETBOX_KEY_KEY: Optional[str] = None  # base64, 32 bytes; pins the wrapping key
    CRYPTFIELD_KEY_PATH: Optional[str] = None  # pins the key envelope location

    # Languages enabled on the site (translatable fields also accept "und")
    CRYPTFIELD_LANGUAGES: str = "en"

    # Logging Configuration (Optional - per-module log levels)
    APP_LOG_LEVEL: Optional[str] = None
    SQLALCHEMY_LOG_LEVEL: Optional[str] = None
    UVICORN_LOG_LEVEL: Optional[str] = None
    AIOSQLITE_LOG_LEVEL: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def languages_list(self) -> List[str]:
        """Parse site languages from comma-separated string."""
        return [lang.strip() for lang in self.CRYPTFIELD_LANGUAGES.split(",") if lang.strip()]

    @property
    def config_overrides(self) -> Dict[str, str]:
        """
        Configuration store entries pinned by the deployment.

        Pinned entries win over values persisted in the database and are
        never written back to it.
        """
        overrides = {}
        if self.CRYPTFIELD_SECRETBOX_KEY_KEY:
            overrides["cryptfield_secretbox_key_key"] = self.CRYPTFIELD_SECRETBOX_KEY_KEY
        if self.CRYPTFIELD_KEY_PATH:
            overrides["cryptfield_key_path"] = self.CRYPTFIELD_KEY_PATH
        return overrides


# Global settings instance
settings = Settings()
