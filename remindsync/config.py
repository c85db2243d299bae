import os
import logging
from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./remindsync.db"


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on", "y")


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not an integer, falling back to {default}")
        return default


def to_async_database_url(url: str) -> str:
    """Convert a plain database URL to its asyncio driver form."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


@dataclass
class Settings:
    """Runtime configuration gathered from the environment."""

    database_url: str = DEFAULT_DATABASE_URL
    jobstore_url: Optional[str] = None
    remote_store_url: Optional[str] = None
    remote_store_api_key: Optional[str] = None
    user_timezone: str = "UTC"
    min_lead_seconds: int = 60
    sweep_interval_minutes: int = 30
    sync_interval_minutes: int = 5
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[int] = None
    log_level: str = "INFO"
    db_echo: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        chat_id = os.getenv("TELEGRAM_CHAT_ID")
        return cls(
            database_url=to_async_database_url(os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)),
            jobstore_url=os.getenv("JOBSTORE_URL") or None,
            remote_store_url=os.getenv("REMOTE_STORE_URL") or None,
            remote_store_api_key=os.getenv("REMOTE_STORE_API_KEY") or None,
            user_timezone=os.getenv("USER_TIMEZONE", "UTC"),
            min_lead_seconds=_parse_int("MIN_LEAD_SECONDS", 60),
            sweep_interval_minutes=_parse_int("SWEEP_INTERVAL_MINUTES", 30),
            sync_interval_minutes=_parse_int("SYNC_INTERVAL_MINUTES", 5),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            telegram_chat_id=int(chat_id) if chat_id else None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            db_echo=_parse_bool("DB_ECHO", False),
        )

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.user_timezone)
        except ZoneInfoNotFoundError:
            logger.warning(f"Unknown USER_TIMEZONE {self.user_timezone}, using UTC")
            return ZoneInfo("UTC")
