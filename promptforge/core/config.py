from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_timeout_seconds: float = 120.0
    openrouter_app_title: str = "Prompt Forge"
    openrouter_referer: str = "http://localhost:8000"  # Sent as HTTP-Referer

    # Document store
    data_dir: str = "data/test_sets"

    # Test execution
    concurrency_limit: int = 3  # Cases executed concurrently within one batch window
    max_retries: int = 2  # Additional attempts for transient invoker failures
    retry_base_delay: float = 1.0  # Linear backoff: (attempt + 1) * base seconds
    window_delay: float = 0.1  # Pause between batch windows (seconds)
    default_temperature: float = 1.0
    default_max_tokens: int = 1024

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    allowed_origins: str = "http://localhost:3000"  # comma-separated
    rate_limit_enabled: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.concurrency_limit < 1:
        errors.append("CONCURRENCY_LIMIT must be at least 1")

    if settings.max_retries < 0:
        errors.append("MAX_RETRIES must not be negative")

    if settings.app_env == "production":
        if not settings.openrouter_api_key:
            errors.append("OPENROUTER_API_KEY must be set in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
