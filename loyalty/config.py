import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from .tiers import TierTable


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./loyalty.db"
    log_level: str = "INFO"
    sql_echo: bool = False
    db_timeout: float = 30.0
    tiers_json: Optional[str] = None
    seed_rewards: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("LOYALTY_DATABASE_URL", cls.database_url),
            log_level=os.getenv("LOYALTY_LOG_LEVEL", cls.log_level).upper(),
            sql_echo=_env_bool("LOYALTY_SQL_ECHO", cls.sql_echo),
            db_timeout=float(os.getenv("LOYALTY_DB_TIMEOUT", cls.db_timeout)),
            tiers_json=os.getenv("LOYALTY_TIERS") or None,
            seed_rewards=_env_bool("LOYALTY_SEED_REWARDS", cls.seed_rewards),
        )

    def tier_table(self) -> TierTable:
        if self.tiers_json:
            return TierTable.from_json(self.tiers_json)
        return TierTable()


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
