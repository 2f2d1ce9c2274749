import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        sweep_hour: int,
        sweep_minute: int,
        sweep_interval_minutes: int,
        sweep_workers: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.sweep_hour = sweep_hour
        self.sweep_minute = sweep_minute
        self.sweep_interval_minutes = sweep_interval_minutes
        self.sweep_workers = sweep_workers
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    sweep_hour = int(os.getenv("LEDGER_SWEEP_HOUR", "3"))
    sweep_minute = int(os.getenv("LEDGER_SWEEP_MINUTE", "15"))
    sweep_interval_minutes = int(os.getenv("LEDGER_SWEEP_INTERVAL_MINUTES", "10"))
    sweep_workers = max(1, int(os.getenv("LEDGER_SWEEP_WORKERS", "1")))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        sweep_hour=sweep_hour,
        sweep_minute=sweep_minute,
        sweep_interval_minutes=sweep_interval_minutes,
        sweep_workers=sweep_workers,
        log_level=log_level,
    )
