"""
Runtime configuration for the store API.

Everything comes from environment variables so the same image runs locally,
in CI and in production.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _csv(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    port: int = 8000
    environment: str = "development"
    log_level: Optional[str] = None
    log_dir: Optional[str] = None
    use_transactions: bool = False
    stock_update_workers: int = 4
    default_page_limit: int = 10
    max_page_limit: int = 100
    admin_emails: List[str] = field(default_factory=list)
    password_schemes: List[str] = field(default_factory=lambda: ["bcrypt"])

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            port=int(os.getenv("PORT", 8000)),
            environment=(os.getenv("ENVIRONMENT") or "development").lower(),
            log_level=os.getenv("LOG_LEVEL"),
            log_dir=os.getenv("LOG_DIR"),
            use_transactions=_flag("USE_TRANSACTIONS"),
            stock_update_workers=max(1, int(os.getenv("STOCK_UPDATE_WORKERS", 4))),
            default_page_limit=int(os.getenv("DEFAULT_PAGE_LIMIT", 10)),
            max_page_limit=int(os.getenv("MAX_PAGE_LIMIT", 100)),
            admin_emails=_csv("ADMIN_EMAILS"),
            password_schemes=_csv("PASSWORD_SCHEMES") or ["bcrypt"],
        )


settings = Settings.from_env()
