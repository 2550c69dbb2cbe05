"""Application configuration using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./chatpay.db"
    # Applied to non-SQLite backends only
    database_isolation_level: str | None = "SERIALIZABLE"

    # JWT
    jwt_secret: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 1440  # 24 hours

    # Money
    default_currency: str = "KES"

    # Sweeps
    request_expiry_days: int = 7
    inactivity_pause_minutes: int = 5
    sweep_interval_seconds: float = 300.0
    sweeper_enabled: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Development
    debug: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
