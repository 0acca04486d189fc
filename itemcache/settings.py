from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Durable store (empty => memory-only)
    CACHE_DB_URL: str = "sqlite+aiosqlite:///./itemcache.db"

    # TTLs in seconds
    ITEM_TTL: float = 24 * 60 * 60
    QUERY_TTL: float = 2 * 60
    LIST_FILE_TTL: float = 60
    ITEM_TTL_FLOOR: float = 5.0
    QUERY_TTL_FLOOR: float = 3.0

    # Fetching
    ALLOW_STALE_ON_ERROR: bool = True
    MAX_CONCURRENT: int = 6
    BATCH_SIZE: int = 60

    # Delta watcher
    WATCH_USER_ID: Optional[str] = None
    WATCH_ITEM_TYPES: Optional[str] = None  # e.g. "Movie,Series"
    WATCH_INTERVAL: float = 60.0
    WATCH_MIN_INTERVAL: float = 10.0
    WATCH_LIMIT: int = 50
    WATCH_PREFETCH: int = 20

    # Upstream
    REMOTE_BASE_URL: str = "http://localhost:8096"
    REMOTE_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT: float = 10.0
    MAX_RETRIES: int = 5

    class Config:
        env_file = ".env"

settings = Settings()
