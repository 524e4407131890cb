import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        session_max_age_hours: int,
        fx_provider: str,
        fx_markup_bps: int,
        fx_timeout_secs: float,
        log_level: str = "INFO",
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.session_max_age_hours = session_max_age_hours
        self.fx_provider = fx_provider
        self.fx_markup_bps = fx_markup_bps
        self.fx_timeout_secs = fx_timeout_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("WALLET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("WALLET_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'wallet.db'}"
    timezone = os.getenv("WALLET_TIMEZONE", "Europe/Kiev")
    secret_key = os.getenv(
        "WALLET_SECRET_KEY",
        "5d0c3f7e0b9a4c61a8f2e6d4b7c19a3e2f8d6b4a0c7e9f1d3b5a7c9e1f3d5b7a",
    )
    session_max_age_hours = int(os.getenv("WALLET_SESSION_MAX_AGE_HOURS", "72"))
    fx_provider = os.getenv("WALLET_FX_PROVIDER", "frankfurter")
    fx_markup_bps = int(os.getenv("WALLET_FX_MARKUP_BPS", "0"))
    fx_timeout_secs = float(os.getenv("WALLET_FX_TIMEOUT_SECS", "5"))
    log_level = os.getenv("WALLET_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        session_max_age_hours=session_max_age_hours,
        fx_provider=fx_provider,
        fx_markup_bps=fx_markup_bps,
        fx_timeout_secs=fx_timeout_secs,
        log_level=log_level,
    )
