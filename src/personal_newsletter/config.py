from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    """Raised when required process configuration is missing."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Claude API
    anthropic_api_key: str = ""
    summary_model: str = "claude-sonnet-4-5-20250929"
    summary_max_tokens: int = 4096

    # Resend
    resend_api_key: str = ""
    newsletter_from_email: str = "newsletter@example.com"

    # DB
    database_path: str = "newsletter.db"

    # Web
    base_url: str = "http://localhost:8080"
    mask_dashboard_email: bool = False

    # Articles
    articles_per_category: int = 5
    news_language: str = "en-US"
    news_country: str = "US"

    # Delivery
    delivery_hour: int = 9

    # Job policy
    enforce_active_check: bool = True
    reschedule_inactive: bool = True
    reschedule_on_failure: bool = True

    # Dispatcher
    max_job_attempts: int = 3
    retry_delay_minutes: int = 10
    scheduler_poll_seconds: int = 30

    def validate_startup(self) -> None:
        """Fail fast when the process cannot summarize newsletters."""
        if not self.anthropic_api_key:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY is required. Set it in .env or environment."
            )


settings = Settings()
