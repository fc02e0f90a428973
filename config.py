import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        card_lookback_days: int,
        retry_base_secs: float,
        retry_max_secs: float,
        safety_net_minutes: int,
        remote_provider: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.card_lookback_days = card_lookback_days
        self.retry_base_secs = retry_base_secs
        self.retry_max_secs = retry_max_secs
        self.safety_net_minutes = safety_net_minutes
        self.remote_provider = remote_provider


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger_cache.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")
    # A due date can be reached from purchases up to two billing months back.
    card_lookback_days = int(os.getenv("LEDGER_CARD_LOOKBACK_DAYS", "60"))
    retry_base_secs = float(os.getenv("LEDGER_RETRY_BASE_SECS", "5"))
    retry_max_secs = float(os.getenv("LEDGER_RETRY_MAX_SECS", "60"))
    safety_net_minutes = int(os.getenv("LEDGER_SAFETY_NET_MINUTES", "15"))
    remote_provider = os.getenv("LEDGER_REMOTE_PROVIDER", "memory")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        card_lookback_days=card_lookback_days,
        retry_base_secs=retry_base_secs,
        retry_max_secs=retry_max_secs,
        safety_net_minutes=safety_net_minutes,
        remote_provider=remote_provider,
    )
