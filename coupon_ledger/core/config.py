from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "coupon-ledger"
    version: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    APP_DATABASE_DSN: str = "sqlite:////tmp/coupon_ledger.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Admin endpoints are open when no key is configured
    ADMIN_API_KEY: str = ""

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Rate limiting for public validate/apply
    RATE_LIMIT_COUPON_CHECKS_PER_MINUTE: int = 60

    # Redemption policy
    ONE_REDEMPTION_PER_USER: bool = False

    # Ledger write after a committed increment
    LEDGER_WRITE_MAX_ATTEMPTS: int = 5
    LEDGER_WRITE_BACKOFF_SECONDS: float = 0.05


settings = Settings()
