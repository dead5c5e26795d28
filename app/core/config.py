"""
Application settings.
Loaded from environment variables (or .env) at import time.
"""
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    # Database. DATABASE_URL wins; otherwise a Postgres URL is built from the parts.
    DATABASE_URL: Optional[str] = None
    DB_HOST: Optional[str] = None
    DB_PORT: int = 5432
    DB_NAME: Optional[str] = None
    DB_USER: Optional[str] = None
    DB_PASS: Optional[str] = None

    # Redis (session store written by the auth service)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    SESSION_TTL: int = 86400  # 24 hours in seconds

    # Realtime core
    SOFT_REMOVE_GRACE_MS: int = 500
    FEED_RECONNECT_ATTEMPTS: int = 5
    FEED_BACKOFF_BASE_SECONDS: float = 0.5
    FEED_BACKOFF_MAX_SECONDS: float = 10.0
    UNREAD_RECOUNT_INTERVAL_SECONDS: float = 60.0  # 0 disables the periodic recount
    SEEN_MESSAGE_CACHE_SIZE: int = 512
    OPTIMISTIC_MATCH_WINDOW_SECONDS: float = 30.0

    # Optional
    DEBUG: bool = False
    PROJECT_NAME: str = "Campus Rides Backend"
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if self.DB_HOST:
            return (
                f"postgresql+psycopg2://{self.DB_USER}:{self.DB_PASS}"
                f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            )
        return "sqlite:///./campus_rides.db"

    @property
    def use_sqlite(self) -> bool:
        return self.sqlalchemy_database_uri.startswith("sqlite")

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
