"""
Runtime configuration for reply-sync.

All tunables are environment-level knobs with documented defaults. Numeric
knobs are clamped to sane ranges so a typo in a scheduler's env block cannot
turn a bounded run into an unbounded one.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or malformed."""

    pass


def _clamped_int(env: Mapping[str, str], name: str, default: int, low: int, high: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    return max(low, min(high, value))


def _clamped_float(env: Mapping[str, str], name: str, default: float, low: float, high: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    return max(low, min(high, value))


def _parse_iso(env: Mapping[str, str], name: str) -> Optional[datetime]:
    raw = (env.get(name) or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise ConfigurationError(f"{name} must be an ISO-8601 timestamp, got {raw!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SyncSettings(BaseModel):
    """Validated settings for one sync process."""

    intercom_access_token: str = Field(min_length=1)
    database_url: Optional[str] = None

    # Backfill caps
    backfill_per_page: int = Field(default=50, ge=1, le=150)  # Intercom max is 150
    backfill_max_conversations: int = Field(default=60, ge=1)
    backfill_max_rows: int = Field(default=1500, ge=1)
    backfill_start: Optional[datetime] = None

    # Live caps
    live_per_page: int = Field(default=50, ge=1, le=150)
    live_max_conversations: int = Field(default=500, ge=1)
    live_lookback_minutes: int = Field(default=30, ge=0)
    live_deadline_seconds: float = Field(default=240.0, ge=0)  # 0 = no deadline

    # Courtesy throttle between pages, independent of retry backoff
    page_delay_seconds: float = Field(default=0.2, ge=0)

    # Retry policy
    max_attempts: int = Field(default=6, ge=1)
    retry_delay_base: float = Field(default=0.5, gt=0)
    retry_delay_max: float = Field(default=30.0, gt=0)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, require_database: bool = True) -> "SyncSettings":
        """Build settings from the process environment (or an explicit mapping).

        Raises:
            ConfigurationError: credential missing, DATABASE_URL missing when
                required, or a knob that does not parse.
        """
        env = os.environ if env is None else env

        token = (env.get("INTERCOM_ACCESS_TOKEN") or "").strip()
        if not token:
            raise ConfigurationError("INTERCOM_ACCESS_TOKEN not set")

        database_url = (env.get("DATABASE_URL") or "").strip() or None
        if require_database and not database_url:
            raise ConfigurationError("DATABASE_URL not set")

        try:
            return cls(
                intercom_access_token=token,
                database_url=database_url,
                backfill_per_page=_clamped_int(env, "SYNC_BACKFILL_PER_PAGE", 50, 1, 150),
                backfill_max_conversations=_clamped_int(env, "SYNC_BACKFILL_MAX_CONVERSATIONS", 60, 1, 10_000),
                backfill_max_rows=_clamped_int(env, "SYNC_BACKFILL_MAX_ROWS", 1500, 1, 100_000),
                backfill_start=_parse_iso(env, "SYNC_BACKFILL_START"),
                live_per_page=_clamped_int(env, "SYNC_LIVE_PER_PAGE", 50, 1, 150),
                live_max_conversations=_clamped_int(env, "SYNC_LIVE_MAX_CONVERSATIONS", 500, 1, 10_000),
                live_lookback_minutes=_clamped_int(env, "SYNC_LIVE_LOOKBACK_MINUTES", 30, 0, 24 * 60),
                live_deadline_seconds=_clamped_float(env, "SYNC_LIVE_DEADLINE_SECONDS", 240.0, 0.0, 3600.0),
                page_delay_seconds=_clamped_float(env, "SYNC_PAGE_DELAY_SECONDS", 0.2, 0.0, 10.0),
                max_attempts=_clamped_int(env, "INTERCOM_MAX_ATTEMPTS", 6, 1, 10),
                retry_delay_base=_clamped_float(env, "INTERCOM_RETRY_DELAY_BASE", 0.5, 0.05, 10.0),
                retry_delay_max=_clamped_float(env, "INTERCOM_RETRY_DELAY_MAX", 30.0, 0.1, 300.0),
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid sync settings: {e}") from e
