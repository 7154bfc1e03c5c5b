"""
Runtime settings read from the environment.

Call env.load_env() first if values should come from a .env file.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

DEFAULT_DB_PATH = "data/credits.db"
DEFAULT_PROVIDER_API_BASE = "https://api.stripe.com/v1"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Ledger configuration."""

    db_path: Path = Path(DEFAULT_DB_PATH)
    database_url: Optional[str] = None
    sweep_threshold_minutes: int = 60
    sweep_limit: int = 100
    log_level: str = "INFO"
    log_dir: Optional[Path] = None
    provider_api_base: str = DEFAULT_PROVIDER_API_BASE
    provider_api_key: Optional[str] = None

    @property
    def db_target(self) -> Union[str, Path]:
        """JOBCREDITS_DATABASE_URL if set, otherwise the SQLite file path."""
        return self.database_url or self.db_path

    @classmethod
    def from_env(cls) -> "Settings":
        log_dir = os.getenv("JOBCREDITS_LOG_DIR")
        return cls(
            db_path=Path(os.getenv("JOBCREDITS_DB_PATH", DEFAULT_DB_PATH)),
            database_url=os.getenv("JOBCREDITS_DATABASE_URL") or None,
            sweep_threshold_minutes=_env_int("JOBCREDITS_SWEEP_THRESHOLD_MINUTES", 60),
            sweep_limit=_env_int("JOBCREDITS_SWEEP_LIMIT", 100),
            log_level=os.getenv("JOBCREDITS_LOG_LEVEL", "INFO"),
            log_dir=Path(log_dir) if log_dir else None,
            provider_api_base=os.getenv("PAYMENT_PROVIDER_API_BASE", DEFAULT_PROVIDER_API_BASE),
            provider_api_key=os.getenv("PAYMENT_PROVIDER_API_KEY") or None,
        )
