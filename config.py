import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        preferences_path: Path,
        default_currency: str,
        fx_base_url: str,
        fx_timeout_secs: float,
        migration_verify_before_clear: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.preferences_path = preferences_path
        self.default_currency = default_currency
        self.fx_base_url = fx_base_url
        self.fx_timeout_secs = fx_timeout_secs
        self.migration_verify_before_clear = migration_verify_before_clear
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("PENNYKEEP_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "pennykeep.db"
    database_url = os.getenv("PENNYKEEP_DATABASE_URL", f"sqlite:///{default_db}")
    preferences_path = Path(
        os.getenv("PENNYKEEP_PREFERENCES_PATH", str(data_dir / "preferences.json"))
    )
    default_currency = os.getenv("PENNYKEEP_DEFAULT_CURRENCY", "USD").upper()
    fx_base_url = os.getenv(
        "PENNYKEEP_FX_BASE_URL",
        "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api",
    )
    fx_timeout_secs = float(os.getenv("PENNYKEEP_FX_TIMEOUT_SECS", "5"))
    return Settings(
        database_url=database_url,
        preferences_path=preferences_path,
        default_currency=default_currency,
        fx_base_url=fx_base_url,
        fx_timeout_secs=fx_timeout_secs,
        migration_verify_before_clear=_env_flag(
            "PENNYKEEP_MIGRATION_VERIFY_BEFORE_CLEAR"
        ),
        log_level=os.getenv("PENNYKEEP_LOG_LEVEL", "INFO").upper(),
    )
