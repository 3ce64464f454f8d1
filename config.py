import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        provider_name: str,
        provider_api_url: str,
        provider_client_id: Optional[str],
        provider_client_secret: Optional[str],
        provider_timeout_secs: float,
        webhook_secret: Optional[str],
        cron_secret: Optional[str],
        sync_batch_size: int = 50,
        sync_window_days: int = 7,
        scheduler_enabled: bool = False,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.provider_name = provider_name
        self.provider_api_url = provider_api_url
        self.provider_client_id = provider_client_id
        self.provider_client_secret = provider_client_secret
        self.provider_timeout_secs = provider_timeout_secs
        self.webhook_secret = webhook_secret
        self.cron_secret = cron_secret
        self.sync_batch_size = sync_batch_size
        self.sync_window_days = sync_window_days
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    return Settings(
        database_url=os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo"),
        provider_name=os.getenv("LEDGER_PROVIDER_NAME", "pluggy"),
        provider_api_url=os.getenv("LEDGER_PROVIDER_API_URL", "https://api.pluggy.ai"),
        provider_client_id=os.getenv("LEDGER_PROVIDER_CLIENT_ID") or None,
        provider_client_secret=os.getenv("LEDGER_PROVIDER_CLIENT_SECRET") or None,
        provider_timeout_secs=float(os.getenv("LEDGER_PROVIDER_TIMEOUT_SECS", "10")),
        webhook_secret=os.getenv("LEDGER_WEBHOOK_SECRET") or None,
        cron_secret=os.getenv("LEDGER_CRON_SECRET") or None,
        sync_batch_size=int(os.getenv("LEDGER_SYNC_BATCH_SIZE", "50")),
        sync_window_days=int(os.getenv("LEDGER_SYNC_WINDOW_DAYS", "7")),
        scheduler_enabled=_env_flag("LEDGER_SCHEDULER_ENABLED"),
    )
