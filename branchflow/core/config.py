"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str = "sqlite:///./branchflow.db"

    # Session Token (supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 8

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Reminder scheduler (read once at start, then live-updated via API)
    REMINDER_INTERVAL_MINUTES: int = 60
    REMINDER_SCHEDULER_ENABLED: bool = True
    REMINDER_SEND_DELAY_SECONDS: float = 1.0

    # No-show sweeper
    NO_SHOW_INTERVAL_MINUTES: int = 5
    NO_SHOW_GRACE_MINUTES: int = 1
    NO_SHOW_SCHEDULER_ENABLED: bool = True

    # Run schedulers inside the API process (disable when using worker.py)
    RUN_SCHEDULERS_IN_API: bool = True

    # Email (Resend). Empty key = dry run.
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "no-reply@branchflow.local"
    EMAIL_FROM_NAME: str = "Branchflow"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Current secret first, then previous (for rotation)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def is_dev(self) -> bool:
        return self.ENV.lower() in ("dev", "development", "test")


settings = Settings()
