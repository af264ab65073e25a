import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_hours: int,
        cache_ttl_secs: float,
        log_level: str,
        admin_user_ids: frozenset[str] = frozenset(),
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.cache_ttl_secs = cache_ttl_secs
        self.log_level = log_level
        self.admin_user_ids = admin_user_ids


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_id_list(raw: str) -> frozenset[str]:
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgets.db"
    database_url = os.getenv("BUDGETS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETS_TIMEZONE", "Europe/Berlin")
    session_secret = os.getenv(
        "BUDGETS_SESSION_SECRET",
        "3f0c6d1e9a7b4c2d8e5f1a0b6c9d2e7f4a1b8c5d2e9f6a3b0c7d4e1f8a5b2c9d",
    )
    session_max_age_hours = int(os.getenv("BUDGETS_SESSION_MAX_AGE_HOURS", "12"))
    cache_ttl_secs = float(os.getenv("BUDGETS_CACHE_TTL_SECS", "60"))
    log_level = os.getenv("BUDGETS_LOG_LEVEL", "INFO").upper()
    # Comma-separated user ids allowed to trigger a full spending rebuild.
    admin_user_ids = _parse_id_list(os.getenv("BUDGETS_ADMIN_USER_IDS", ""))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        cache_ttl_secs=cache_ttl_secs,
        log_level=log_level,
        admin_user_ids=admin_user_ids,
    )
