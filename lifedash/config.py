"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "LifeDash"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Supabase ---
    supabase_db_url: str  # direct postgres connection string for asyncpg
    supabase_jwt_secret: str  # HS256 secret used to sign user access tokens
    supabase_jwt_audience: str = "authenticated"

    # --- Terra (Garmin aggregator) ---
    terra_api_base: str = "https://api.tryterra.co/v2"
    terra_dev_id: str = ""
    terra_api_key: str = ""  # empty means every provider call fails with ConfigurationError
    terra_signing_secret: str = ""  # webhook signatures are only verified when set
    terra_provider: str = "GARMIN"
    terra_request_timeout_seconds: float = 15.0

    # --- Ingestion pipeline ---
    ingestion_max_attempts: int = 10
    ingestion_claim_lease_seconds: int = 300
    ingestion_batch_limit: int = 500

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:8080"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
