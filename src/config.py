import os
import time
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv

# .env is loaded from the working directory (where the bot is started)
env_path = Path.cwd() / ".env"
load_dotenv(env_path)


def _set_process_timezone() -> None:
    """Apply TZ from env so datetime.now() matches local time."""
    tz = os.getenv("BOT_TIMEZONE") or "America/Mexico_City"
    if tz:
        os.environ["TZ"] = tz
        if hasattr(time, "tzset"):
            try:
                time.tzset()
            except Exception:
                # tzset is not available on every platform
                pass


_set_process_timezone()


@dataclass
class Config:
    token: str
    admin_ids: list[int]  # Telegram ids promoted to `admin` on /start
    dev_ids: list[int]  # Fixed dev list sharing the 20% commission pool
    owner_id: int | None  # Receives the 60% owner commission
    bot_name: str
    bot_username: str
    currency: str
    # Rate limiting (per Telegram user)
    rate_limit_window_sec: int
    rate_limit_max_requests: int
    # Cached user lookups
    auth_cache_ttl_sec: int
    # Payment proof hosting
    api_port: int
    public_base_url: str
    media_dir: str
    # Confirmation scheduler
    scheduler_enabled: bool
    scheduler_interval_sec: int


def _clean(value: str | None) -> str:
    return (value or "").strip().strip('"').strip("'")


def parse_admin_ids(env_value: str) -> list[int]:
    """Parse a comma/space separated list of Telegram ids."""
    if not env_value:
        return []
    env_value = _clean(env_value)
    ids = [id.strip() for id in env_value.replace(",", " ").split()]
    return [int(id) for id in ids if id.isdigit()]


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean env value."""
    if value is None:
        return default
    value = _clean(value).lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_int(value: str | None) -> int | None:
    """Parse an optional int env value."""
    if value is None:
        return None
    value = _clean(value)
    if not value:
        return None
    return int(value)


CFG = Config(
    token=os.environ["BOT_TOKEN"],
    admin_ids=parse_admin_ids(os.getenv("ADMIN_IDS", "")),
    dev_ids=parse_admin_ids(os.getenv("DEV_IDS", "")),
    owner_id=parse_int(os.getenv("OWNER_ID")),
    bot_name=_clean(os.getenv("BOT_NAME")) or "Credits Bot",
    bot_username=_clean(os.getenv("BOT_USERNAME")),
    currency=_clean(os.getenv("CURRENCY")) or "MXN",
    rate_limit_window_sec=int(os.getenv("RATE_LIMIT_WINDOW_SEC", "60")),
    rate_limit_max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "10")),
    auth_cache_ttl_sec=int(os.getenv("AUTH_CACHE_TTL_SEC", "300")),
    api_port=int(os.getenv("API_PORT", "8080")),
    public_base_url=_clean(os.getenv("PUBLIC_BASE_URL")).rstrip("/") or "http://localhost:8080",
    media_dir=_clean(os.getenv("MEDIA_DIR")) or str(Path.cwd() / "media"),
    scheduler_enabled=parse_bool(os.getenv("CONFIRMATION_SCHEDULER", "1"), default=True),
    scheduler_interval_sec=int(os.getenv("CONFIRMATION_SCHEDULER_INTERVAL_SEC", "3600")),
)

# DB path: from env or relative to the working directory
DB_PATH = os.getenv("DB_PATH", str(Path.cwd() / "state.db"))


def role_for_telegram_id(tg_user_id: int) -> str:
    """Resolve the configured role for a Telegram user."""
    if CFG.owner_id is not None and int(tg_user_id) == CFG.owner_id:
        return "owner"
    if int(tg_user_id) in CFG.dev_ids:
        return "dev"
    if int(tg_user_id) in CFG.admin_ids:
        return "admin"
    return "client"
