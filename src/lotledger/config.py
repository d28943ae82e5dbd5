from __future__ import annotations

from functools import cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    db_file: Path = Path("artifacts/lot_ledger.db")
    lock_dir: Path | None = None
    price_cache_dir: Path = Path(".cache/prices")
    current_price_ttl_seconds: float = 30.0
    coingecko_api_key: str | None = None
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="LOT_LEDGER_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @property
    def resolved_lock_dir(self) -> Path:
        return self.lock_dir if self.lock_dir is not None else self.db_file.parent


@cache
def config() -> AppSettings:
    return AppSettings()
