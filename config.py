import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        fx_provider: str,
        fx_timeout_secs: float,
        rate_sync_cooldown_hours: float,
        rate_sync_interval_hours: float,
        intermediate_currencies: tuple[str, ...],
        allow_overdraft: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.fx_provider = fx_provider
        self.fx_timeout_secs = fx_timeout_secs
        self.rate_sync_cooldown_hours = rate_sync_cooldown_hours
        self.rate_sync_interval_hours = rate_sync_interval_hours
        self.intermediate_currencies = intermediate_currencies
        self.allow_overdraft = allow_overdraft


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_codes(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(code.strip().upper() for code in raw.split(",") if code.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'ledger.db'}"
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Caracas")
    fx_provider = os.getenv("LEDGER_FX_PROVIDER", "er-api")
    fx_timeout_secs = float(os.getenv("LEDGER_FX_TIMEOUT_SECS", "5"))
    rate_sync_cooldown_hours = float(
        os.getenv("LEDGER_RATE_SYNC_COOLDOWN_HOURS", "6")
    )
    rate_sync_interval_hours = float(
        os.getenv("LEDGER_RATE_SYNC_INTERVAL_HOURS", "0")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        fx_provider=fx_provider,
        fx_timeout_secs=fx_timeout_secs,
        rate_sync_cooldown_hours=rate_sync_cooldown_hours,
        rate_sync_interval_hours=rate_sync_interval_hours,
        intermediate_currencies=_env_codes("LEDGER_INTERMEDIATE_CURRENCIES", "USD,USDT"),
        allow_overdraft=_env_flag("LEDGER_ALLOW_OVERDRAFT", "true"),
    )
