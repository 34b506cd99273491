import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        access_token_max_age_secs: int,
        plaid_client_id: str,
        plaid_secret: str,
        plaid_env: str,
        sync_enabled: bool,
        sync_hour: int,
        sync_minute: int,
        sync_interval_hours: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.access_token_max_age_secs = access_token_max_age_secs
        self.plaid_client_id = plaid_client_id
        self.plaid_secret = plaid_secret
        self.plaid_env = plaid_env
        self.sync_enabled = sync_enabled
        self.sync_hour = sync_hour
        self.sync_minute = sync_minute
        self.sync_interval_hours = sync_interval_hours


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BALANCES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("BALANCES_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'balances.db'}"
    return Settings(
        database_url=database_url,
        timezone=os.getenv("BALANCES_TIMEZONE", "UTC"),
        auth_secret=os.getenv(
            "BALANCES_AUTH_SECRET",
            "3b1f0c6e2d9a47a8b5e4c1d2f7a9e8b60c3d5f1a2b4c6d8e0f1a3b5c7d9e1f20",
        ),
        access_token_max_age_secs=int(
            os.getenv("BALANCES_ACCESS_TOKEN_MAX_AGE_SECS", "900")
        ),
        plaid_client_id=os.getenv("PLAID_CLIENT_ID", ""),
        plaid_secret=os.getenv("PLAID_SECRET", ""),
        plaid_env=os.getenv("PLAID_ENV", "sandbox").lower(),
        sync_enabled=_env_flag("BALANCES_SYNC_ENABLED", True),
        sync_hour=int(os.getenv("BALANCES_SYNC_HOUR", "3")),
        sync_minute=int(os.getenv("BALANCES_SYNC_MINUTE", "15")),
        sync_interval_hours=int(os.getenv("BALANCES_SYNC_INTERVAL_HOURS", "1")),
    )
