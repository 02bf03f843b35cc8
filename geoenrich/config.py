from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_env: str = "development"
    app_debug: bool = False
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # Storage: SQLite file by default, any async SQLAlchemy URL works
    database_url: str = ""

    @property
    def effective_database_url(self) -> str:
        """Return the async database URL to use."""
        if self.database_url:
            url = self.database_url
            if url.startswith("sqlite://"):
                url = "sqlite+aiosqlite://" + url[len("sqlite://"):]
            return url
        db_path = Path(__file__).parent.parent / "data" / "geoenrich.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite+aiosqlite:///{db_path}"

    @property
    def is_sqlite(self) -> bool:
        return self.effective_database_url.startswith("sqlite")

    # API key for securing run-control endpoints (empty = open)
    api_key: str = ""

    # CORS: allowed origins (comma-separated, or "*" for dev only)
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Provider credentials
    mapbox_access_token: str = ""
    geocodio_api_key: str = ""
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"

    # Provider endpoints
    mapbox_base_url: str = "https://api.mapbox.com"
    geocodio_base_url: str = "https://api.geocod.io"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    provider_timeout_seconds: float = 15.0

    # Daily quotas
    mapbox_daily_limit: int = 50_000
    geocodio_daily_limit: int = 50_000
    gemini_daily_limit: int = 100_000
    quota_debounce_ms: int = 100

    # Scheduling
    concurrency_limit: int = 8
    pacing_delay_seconds: float = 1.5

    # Retry
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 6.0
    transient_retry_delay_seconds: float = 3.0
    retry_after_max_seconds: float = 60.0

    # Circuit breaker
    auth_failure_threshold: int = 3

    # Cache TTLs
    geocode_cache_ttl_days: int = 30
    enrichment_cache_ttl_days: int = 7

    # Checkpointing
    checkpoint_interval: int = 5
    checkpoint_max_age_days: int = 7

    # Neighborhood-as-community fallback
    enable_community_heuristic: bool = True

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def provider_limits(self) -> dict[str, int]:
        return {
            "mapbox": self.mapbox_daily_limit,
            "geocodio": self.geocodio_daily_limit,
            "gemini": self.gemini_daily_limit,
        }

    def provider_credentials(self) -> dict[str, bool]:
        """Which providers have a credential configured."""
        return {
            "mapbox": bool(self.mapbox_access_token),
            "geocodio": bool(self.geocodio_api_key),
            "gemini": bool(self.gemini_api_key),
        }

    def validate_production(self) -> list[str]:
        """Check provider credentials and critical env vars. Returns list of warnings."""
        warnings = []
        if not self.mapbox_access_token:
            warnings.append("MAPBOX_ACCESS_TOKEN not set, primary geocoder disabled")
        if not self.geocodio_api_key:
            warnings.append("GEOCODIO_API_KEY not set, fallback geocoder disabled")
        if not self.gemini_api_key:
            warnings.append("GEMINI_API_KEY not set, neighborhood/community enrichment disabled")
        if self.app_env == "production":
            if not self.api_key:
                warnings.append("API_KEY is required in production")
            if not self.database_url:
                warnings.append("DATABASE_URL recommended in production")
        return warnings


settings = Settings()
