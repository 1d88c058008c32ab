# settings.py
import logging
import os
from dataclasses import dataclass, field

DEFAULT_DB_PATH = "castqueue.db"

# Retry limit before a job is marked as permanently failed.
MAX_ATTEMPTS = 5
BACKOFF_BASE_MINUTES = 5

# Reminder windows before race lock, in minutes (24h, 1h).
LOCK_REMINDER_OFFSETS_MINUTES = (1440, 60)

MAX_JOBS_PER_RUN = 10
LOCK_LOOKBACK_HOURS = 2
LOCK_SCAN_LIMIT = 25
DOTD_SCAN_LIMIT = 20

# Hard cap enforced by Neynar.
CAST_TEXT_MAX_LENGTH = 320

REQUEST_TIMEOUT = 15
POLL_INTERVAL = 60

DEFAULT_APP_URL = "https://farcaster.xyz/miniapps/nw5lvCQqZ8rd/gridguessr"

logger = logging.getLogger(__name__)


def get_env(*names):
    """First non-blank value among the given environment variables."""
    for name in names:
        value = os.environ.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def env_flag(*names):
    value = get_env(*names)
    return value is not None and value.lower() in ("true", "1")


def app_url():
    return get_env("APP_URL") or DEFAULT_APP_URL


def db_path():
    return get_env("CASTQUEUE_DB") or DEFAULT_DB_PATH


def _config_value(db, key, default, convert=int):
    raw = db.get_config(key, default=default)
    try:
        return convert(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid config %s=%r, using %r", key, raw, default)
        return default


def _parse_offsets(raw):
    if isinstance(raw, (tuple, list)):
        return tuple(int(m) for m in raw)
    offsets = []
    for part in str(raw).replace(" ", "").split(","):
        if part:
            offsets.append(int(part))
    return tuple(offsets)


@dataclass
class Settings:
    max_attempts: int = MAX_ATTEMPTS
    backoff_base_minutes: int = BACKOFF_BASE_MINUTES
    lock_reminder_offsets: tuple = field(default=LOCK_REMINDER_OFFSETS_MINUTES)
    max_jobs_per_run: int = MAX_JOBS_PER_RUN
    lock_lookback_hours: int = LOCK_LOOKBACK_HOURS
    lock_scan_limit: int = LOCK_SCAN_LIMIT
    dotd_scan_limit: int = DOTD_SCAN_LIMIT
    request_timeout: float = REQUEST_TIMEOUT
    poll_interval: float = POLL_INTERVAL

    @classmethod
    def from_storage(cls, db):
        """Defaults overridden by whatever the config table holds."""
        return cls(
            max_attempts=_config_value(db, "max_attempts", MAX_ATTEMPTS),
            backoff_base_minutes=_config_value(db, "backoff_base_minutes", BACKOFF_BASE_MINUTES),
            lock_reminder_offsets=_config_value(
                db, "lock_reminder_offsets", LOCK_REMINDER_OFFSETS_MINUTES, convert=_parse_offsets
            ),
            max_jobs_per_run=_config_value(db, "max_jobs_per_run", MAX_JOBS_PER_RUN),
            lock_lookback_hours=_config_value(db, "lock_lookback_hours", LOCK_LOOKBACK_HOURS),
            lock_scan_limit=_config_value(db, "lock_scan_limit", LOCK_SCAN_LIMIT),
            dotd_scan_limit=_config_value(db, "dotd_scan_limit", DOTD_SCAN_LIMIT),
            request_timeout=_config_value(db, "request_timeout", REQUEST_TIMEOUT, convert=float),
            poll_interval=_config_value(db, "poll_interval", POLL_INTERVAL, convert=float),
        )
