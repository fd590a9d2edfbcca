from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core API Settings
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8000, alias="API_PORT")
    environment: str = Field("development", alias="ENVIRONMENT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    app_env: str = Field("dev", alias="APP_ENV")

    # Database: explicit URL wins, otherwise the Supabase DSN is assembled
    database_url: str | None = Field(None, alias="DATABASE_URL")
    supabase_project_ref: str | None = Field(None, alias="SUPABASE_PROJECT_REF")
    supabase_db_password: str | None = Field(None, alias="SUPABASE_DB_PASSWORD")
    supabase_db_user: str = Field("postgres", alias="SUPABASE_DB_USER")
    supabase_db_name: str = Field("postgres", alias="SUPABASE_DB_NAME")
    migrate_on_start: bool = Field(False, alias="MIGRATE_ON_START")
    storage_retry_attempts: int = Field(3, alias="STORAGE_RETRY_ATTEMPTS")

    # Task broker
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")

    # Principal keys (X-API-Key header). The anon key is public by nature.
    anon_key: str | None = Field(None, alias="ANON_KEY")
    service_role_key: str | None = Field(None, alias="SERVICE_ROLE_KEY")

    # Governance
    retention_years: int = Field(2, alias="RETENTION_YEARS")
    audit_privileged_reads: bool = Field(False, alias="AUDIT_PRIVILEGED_READS")
    enable_rls: bool = Field(False, alias="ENABLE_RLS")
    partition_months_ahead: int = Field(1, alias="PARTITION_MONTHS_AHEAD")

    # Stats / query limits
    stats_window_days: int = Field(30, alias="STATS_WINDOW_DAYS")
    daily_activity_days: int = Field(90, alias="DAILY_ACTIVITY_DAYS")
    query_max_rows: int = Field(10000, alias="QUERY_MAX_ROWS")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra environment variables


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()
