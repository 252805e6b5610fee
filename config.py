import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        auth_max_age_secs: int,
        catch_up_cap: int,
        drift_tolerance: Decimal,
        store_timeout_secs: float,
        conflict_max_attempts: int,
        conflict_backoff_secs: float,
        isolation_level: Optional[str],
        sweep_interval_minutes: int,
        default_currency: str,
        log_level: str,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.auth_max_age_secs = auth_max_age_secs
        self.catch_up_cap = catch_up_cap
        self.drift_tolerance = drift_tolerance
        self.store_timeout_secs = store_timeout_secs
        self.conflict_max_attempts = conflict_max_attempts
        self.conflict_backoff_secs = conflict_backoff_secs
        self.isolation_level = isolation_level
        self.sweep_interval_minutes = sweep_interval_minutes
        self.default_currency = default_currency
        self.log_level = log_level
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    auth_secret = os.getenv(
        "LEDGER_AUTH_SECRET",
        "5f0d8c3be1a94f5e9f0b6a47c2d1e8a3b9c7d6e5f4a3b2c1d0e9f8a7b6c5d4e3",
    )
    auth_max_age_secs = int(os.getenv("LEDGER_AUTH_MAX_AGE_SECS", "86400"))
    catch_up_cap = int(os.getenv("LEDGER_CATCH_UP_CAP", "12"))
    drift_tolerance = Decimal(os.getenv("LEDGER_DRIFT_TOLERANCE", "0.01"))
    store_timeout_secs = float(os.getenv("LEDGER_STORE_TIMEOUT_SECS", "10"))
    conflict_max_attempts = int(os.getenv("LEDGER_CONFLICT_MAX_ATTEMPTS", "5"))
    conflict_backoff_secs = float(os.getenv("LEDGER_CONFLICT_BACKOFF_SECS", "0.05"))
    isolation_level = os.getenv("LEDGER_ISOLATION_LEVEL") or None
    sweep_interval_minutes = int(os.getenv("LEDGER_SWEEP_INTERVAL_MINUTES", "60"))
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "USD").upper()
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    scheduler_enabled = os.getenv("LEDGER_SCHEDULER_ENABLED", "1").lower() not in {
        "0",
        "false",
        "no",
    }
    return Settings(
        database_url=database_url,
        timezone=timezone,
        auth_secret=auth_secret,
        auth_max_age_secs=auth_max_age_secs,
        catch_up_cap=catch_up_cap,
        drift_tolerance=drift_tolerance,
        store_timeout_secs=store_timeout_secs,
        conflict_max_attempts=conflict_max_attempts,
        conflict_backoff_secs=conflict_backoff_secs,
        isolation_level=isolation_level,
        sweep_interval_minutes=sweep_interval_minutes,
        default_currency=default_currency,
        log_level=log_level,
        scheduler_enabled=scheduler_enabled,
    )
