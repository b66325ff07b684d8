# experiment_service/config.py
from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    # Database DSN
    db_dsn: str = Field(
        default="sqlite+aiosqlite:///./dev.db",
        description="Async SQLAlchemy connection string (asyncpg for PostgreSQL)"
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level for application (INFO, DEBUG, ERROR)"
    )

    # Upper bound for a single storage round-trip during evaluation (in seconds)
    storage_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Storage calls slower than this degrade to the unavailable default"
    )

    # Flag definition cache TTL (in seconds); 0 disables the cache
    flag_cache_ttl: int = Field(
        default=0,
        ge=0,
        description="Time-to-live for cached flag definitions; never applies to assignments"
    )

    # CORS origin returned on SDK endpoints
    sdk_cors_origin: str = Field(
        default="*",
        description="Access-Control-Allow-Origin value for the browser SDK routes"
    )

    class Config:
        env_file = ".env"
        case_sensitive = False

# Instantiate settings once
settings: Settings = Settings()
