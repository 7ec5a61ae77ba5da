import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./circulation.db"
    log_level: str = "INFO"
    fine_per_day: Decimal = Decimal("0.50")
    reservation_expiry_days: int = 7
    pickup_deadline_days: int = 3
    renewal_blocked_by_queue: bool = True
    sweep_page_size: int = 200
    scheduler_enabled: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("ELIB_DB", cls.database_url),
            log_level=os.getenv("ELIB_LOG", cls.log_level),
            fine_per_day=Decimal(os.getenv("ELIB_FINE_PER_DAY", str(cls.fine_per_day))),
            reservation_expiry_days=int(os.getenv("ELIB_RESERVATION_EXPIRY_DAYS", cls.reservation_expiry_days)),
            pickup_deadline_days=int(os.getenv("ELIB_PICKUP_DEADLINE_DAYS", cls.pickup_deadline_days)),
            renewal_blocked_by_queue=_env_bool("ELIB_RENEWAL_BLOCKED_BY_QUEUE", cls.renewal_blocked_by_queue),
            sweep_page_size=int(os.getenv("ELIB_SWEEP_PAGE_SIZE", cls.sweep_page_size)),
            scheduler_enabled=_env_bool("ELIB_SCHEDULER", cls.scheduler_enabled),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=level or get_settings().log_level, format=LOG_FORMAT)
