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
        default_user_id: int,
        log_level: str,
        allow_anonymous: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.default_user_id = default_user_id
        self.log_level = log_level
        self.allow_anonymous = allow_anonymous


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "America/Sao_Paulo")
    session_secret = os.getenv(
        "FINANCE_SESSION_SECRET",
        "5c1d0e7b9a4f6e2d8c3b1a0f9e8d7c6b5a4f3e2d1c0b9a8f7e6d5c4b3a2f1e0d",
    )
    session_max_age_hours = int(os.getenv("FINANCE_SESSION_MAX_AGE_HOURS", "720"))
    default_user_id = int(os.getenv("FINANCE_DEFAULT_USER_ID", "1"))
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    allow_anonymous = os.getenv("FINANCE_ALLOW_ANONYMOUS", "true").lower() in (
        "1",
        "true",
        "yes",
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        default_user_id=default_user_id,
        log_level=log_level,
        allow_anonymous=allow_anonymous,
    )
