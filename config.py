import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        redis_url: Optional[str],
        cache_timeout_secs: float,
        cache_retry_secs: float,
        cache_sweep_minutes: int,
        ttl_dashboard_secs: int,
        ttl_category_secs: int,
        ttl_trends_secs: int,
        ttl_transactions_secs: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.redis_url = redis_url
        self.cache_timeout_secs = cache_timeout_secs
        self.cache_retry_secs = cache_retry_secs
        self.cache_sweep_minutes = cache_sweep_minutes
        self.ttl_dashboard_secs = ttl_dashboard_secs
        self.ttl_category_secs = ttl_category_secs
        self.ttl_trends_secs = ttl_trends_secs
        self.ttl_transactions_secs = ttl_transactions_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fintrack.db"
    database_url = os.getenv("FINTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINTRACK_TIMEZONE", "UTC")
    # Empty means "no Redis": the in-process store is used instead.
    redis_url = os.getenv("FINTRACK_REDIS_URL") or None
    cache_timeout_secs = float(os.getenv("FINTRACK_CACHE_TIMEOUT_SECS", "0.25"))
    cache_retry_secs = float(os.getenv("FINTRACK_CACHE_RETRY_SECS", "30"))
    cache_sweep_minutes = int(os.getenv("FINTRACK_CACHE_SWEEP_MINUTES", "5"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        redis_url=redis_url,
        cache_timeout_secs=cache_timeout_secs,
        cache_retry_secs=cache_retry_secs,
        cache_sweep_minutes=cache_sweep_minutes,
        ttl_dashboard_secs=int(os.getenv("FINTRACK_TTL_DASHBOARD_SECS", "600")),
        ttl_category_secs=int(os.getenv("FINTRACK_TTL_CATEGORY_SECS", "600")),
        ttl_trends_secs=int(os.getenv("FINTRACK_TTL_TRENDS_SECS", "900")),
        ttl_transactions_secs=int(
            os.getenv("FINTRACK_TTL_TRANSACTIONS_SECS", "300")
        ),
    )
