from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "vt_user"
    postgres_password: str = "changeme"
    postgres_db: str = "visibility_tracker"
    database_url: str = ""  # full async URL, overrides the postgres_* fields when set

    @property
    def postgres_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def postgres_url_sync(self) -> str:
        """For Alembic migrations and maintenance SQL (sync driver)."""
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (Celery broker + result backend)
    redis_url: str = "redis://localhost:6379/0"

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # Provider credentials
    brightdata_api_key: str = ""
    oxylabs_username: str = ""
    oxylabs_password: str = ""
    serpapi_api_key: str = ""
    dataforseo_login: str = ""
    dataforseo_password: str = ""
    openrouter_api_key: str = ""
    openrouter_site_url: str = ""
    openrouter_site_title: str = "Visibility Tracker"
    google_gemini_api_key: str = ""
    google_gemini_model: str = "gemini-2.5-flash"

    # Collection
    collection_batch_size: int = 3
    collection_batch_pause_seconds: float = 1.0
    collection_default_timeout_ms: int = 60_000
    collection_default_retries: int = 2
    brightdata_poll_interval_seconds: float = 10.0
    brightdata_max_poll_attempts: int = 60
    default_country: str = "US"
    fallback_chain_source: str = "static"  # static | database

    # Scoring
    scoring_batch_limit: int = 50
    scoring_worker_poll_seconds: int = 30
    scoring_stale_claim_minutes: int = 30
    scoring_max_claim_failures: int = 10
    scoring_engine_model: str = "openai/gpt-4o-mini"
    scoring_engine_timeout_seconds: float = 120.0
    scoring_max_answer_chars: int = 50_000
    scoring_refresh_view: bool = True
    scoring_view_name: str = "extracted_positions_compat"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    def provider_credentials(self) -> dict[str, dict[str, str]]:
        """Credentials per provider name, as accepted by gateway.vendor_adapters.get_adapter."""
        return {
            "brightdata": {"api_key": self.brightdata_api_key},
            "oxylabs": {"username": self.oxylabs_username, "password": self.oxylabs_password},
            "serpapi": {"api_key": self.serpapi_api_key},
            "dataforseo": {"username": self.dataforseo_login, "password": self.dataforseo_password},
            "openrouter": {
                "api_key": self.openrouter_api_key,
                "site_url": self.openrouter_site_url,
                "site_title": self.openrouter_site_title,
            },
            "google_gemini_direct": {"api_key": self.google_gemini_api_key, "model": self.google_gemini_model},
        }


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.app_env == "production":
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")
        if not settings.openrouter_api_key:
            errors.append("OPENROUTER_API_KEY must be set (used by the scoring extraction engine)")
        configured = [
            name
            for name, creds in settings.provider_credentials().items()
            if all(value for key, value in creds.items() if key in ("api_key", "username", "password"))
        ]
        if not configured:
            errors.append("At least one provider must have credentials configured")

    if settings.fallback_chain_source not in ("static", "database"):
        errors.append("FALLBACK_CHAIN_SOURCE must be 'static' or 'database'")

    if settings.collection_batch_size < 1:
        errors.append("COLLECTION_BATCH_SIZE must be >= 1")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
