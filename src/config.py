"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Oura Sync"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str  # postgres connection string for asyncpg

    # --- API access ---
    api_secret: str  # bearer secret for every route except /health and the OAuth callback

    # --- Oura ---
    oura_client_id: str = ""
    oura_client_secret: str = ""
    oura_scopes: str = (
        "email personal daily heartrate workout tag session spo2 stress "
        "heart_health ring_configuration"
    )
    oura_personal_token: str = ""  # long-lived fallback when no OAuth credential is stored
    oura_redirect_uri: str = "http://localhost:8000/oauth/callback"
    oura_api_base: str = "https://api.ouraring.com"
    oura_openapi_url: str = "https://cloud.ouraring.com/v2/static/json/openapi-1.27.json"

    # --- Sync ---
    scheduled_sync_enabled: bool = True
    scheduled_sync_days: int = 3
    scheduled_sync_interval_hours: int = 24
    backfill_default_days: int = 730
    backfill_max_days: int = 3650
    sync_inline_max_days: int = 7  # larger backfills run in the background

    # --- Rate Limiting ---
    rate_limit_per_minute: int = 60

    # --- CORS ---
    cors_origins: list[str] = ["*"]

    # --- Ad-hoc SQL bounds ---
    sql_max_length: int = 50_000
    sql_max_params: int = 100
    sql_reader_role: str = "oura_reader"  # role ad-hoc queries run as; empty keeps the pool user

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
