"""
Typed checkpoint access over a key/value store.

The store itself only offers get/set by key (see db.state_store). This
module owns the key names, the string encoding of timestamps and flags, and
the validity rules for combinations of keys. Invalid combinations raise
StateCorruptionError before the controller does any upstream I/O.

Multi-key writes go through `set_many` when the store supports it, and are
otherwise ordered so that a crash between two writes leaves a state that is
still valid and at worst causes a page to be redone.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from pydantic import ValidationError

from .models import BackfillCursor, LiveCursor, SyncPhase, SyncWindow

logger = logging.getLogger(__name__)

BF_START_KEY = "bf_start_iso"
BF_END_KEY = "bf_end_iso"
BF_CURSOR_KEY = "bf_starting_after"
BF_DONE_KEY = "bf_done"

LIVE_LAST_RUN_KEY = "live_last_run_iso"
LIVE_WINDOW_END_KEY = "live_window_end_iso"
LIVE_CURSOR_KEY = "live_starting_after"

ALL_KEYS = (
    BF_START_KEY, BF_END_KEY, BF_CURSOR_KEY, BF_DONE_KEY,
    LIVE_LAST_RUN_KEY, LIVE_WINDOW_END_KEY, LIVE_CURSOR_KEY,
)

CURSOR_KEYS = {
    SyncPhase.BACKFILL: BF_CURSOR_KEY,
    SyncPhase.LIVE: LIVE_CURSOR_KEY,
}


class StateCorruptionError(Exception):
    """Persisted checkpoint keys are in a combination the engine cannot resume from."""

    pass


class KeyValueStore(Protocol):
    def get(self, key: str) -> str: ...

    def set(self, key: str, value) -> None: ...


def format_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(raw: str, key: str) -> Optional[datetime]:
    """Parse a stored timestamp; "" means unset."""
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise StateCorruptionError(f"{key} is not an ISO-8601 timestamp: {raw!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_flag(raw: str, key: str) -> bool:
    value = (raw or "").strip().lower()
    if value in ("", "false"):
        return False
    if value == "true":
        return True
    raise StateCorruptionError(f"{key} must be 'true' or 'false', got {raw!r}")


class SyncStateRepository:
    """Loads and persists BackfillCursor / LiveCursor through a KeyValueStore."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def _get(self, key: str) -> str:
        return self.store.get(key) or ""

    def _set_many(self, values: Dict[str, str]) -> None:
        """Write several keys, atomically if the store supports it, else in order."""
        set_many = getattr(self.store, "set_many", None)
        if callable(set_many):
            set_many(values)
            return
        for key, value in values.items():
            self.store.set(key, value)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_backfill(self) -> BackfillCursor:
        start = parse_timestamp(self._get(BF_START_KEY), BF_START_KEY)
        end = parse_timestamp(self._get(BF_END_KEY), BF_END_KEY)
        cursor = self._get(BF_CURSOR_KEY) or None
        done = _parse_flag(self._get(BF_DONE_KEY), BF_DONE_KEY)

        if (start is None) != (end is None):
            missing = BF_END_KEY if end is None else BF_START_KEY
            raise StateCorruptionError(f"Backfill window is half-written: {missing} is missing")

        window = None
        if start is not None:
            try:
                window = SyncWindow(start=start, end=end)
            except ValidationError:
                raise StateCorruptionError(
                    f"Backfill window start {start.isoformat()} is after end {end.isoformat()}"
                )
        elif cursor:
            raise StateCorruptionError(f"{BF_CURSOR_KEY} is set but the backfill window is not")
        elif done:
            raise StateCorruptionError(f"{BF_DONE_KEY} is true but the backfill window is not set")

        return BackfillCursor(window=window, starting_after=cursor, done=done)

    def load_live(self) -> LiveCursor:
        last_run = parse_timestamp(self._get(LIVE_LAST_RUN_KEY), LIVE_LAST_RUN_KEY)
        window_end = parse_timestamp(self._get(LIVE_WINDOW_END_KEY), LIVE_WINDOW_END_KEY)
        cursor = self._get(LIVE_CURSOR_KEY) or None

        if window_end is not None and last_run is None:
            raise StateCorruptionError(f"{LIVE_WINDOW_END_KEY} is set but {LIVE_LAST_RUN_KEY} is not")
        if cursor and window_end is None:
            raise StateCorruptionError(f"{LIVE_CURSOR_KEY} is set but no live window is open")
        if window_end is not None and last_run > window_end:
            raise StateCorruptionError(
                f"Live window start {last_run.isoformat()} is after end {window_end.isoformat()}"
            )
        return LiveCursor(last_run=last_run, window_end=window_end, starting_after=cursor)

    def load(self) -> tuple:
        """Validate and return (BackfillCursor, LiveCursor)."""
        return self.load_backfill(), self.load_live()

    # ------------------------------------------------------------------
    # Backfill writes
    # ------------------------------------------------------------------

    def init_backfill(self, window: SyncWindow) -> BackfillCursor:
        # cursor/done first: a crash before the window lands leaves "uninitialized"
        self._set_many({
            BF_CURSOR_KEY: "",
            BF_DONE_KEY: "false",
            BF_START_KEY: format_timestamp(window.start),
            BF_END_KEY: format_timestamp(window.end),
        })
        return BackfillCursor(window=window, starting_after=None, done=False)

    def complete_backfill(self) -> None:
        # cursor first: a crash before bf_done lands only redoes the window
        self._set_many({BF_CURSOR_KEY: "", BF_DONE_KEY: "true"})

    # ------------------------------------------------------------------
    # Live writes
    # ------------------------------------------------------------------

    def seed_live(self, last_run: datetime) -> LiveCursor:
        self._set_many({
            LIVE_CURSOR_KEY: "",
            LIVE_WINDOW_END_KEY: "",
            LIVE_LAST_RUN_KEY: format_timestamp(last_run),
        })
        return LiveCursor(last_run=last_run)

    def open_live_window(self, window_end: datetime) -> None:
        self._set_many({LIVE_CURSOR_KEY: "", LIVE_WINDOW_END_KEY: format_timestamp(window_end)})

    def complete_live_window(self, window_end: datetime) -> None:
        # clearing the open window before moving last_run means a crash here
        # reopens a wider window next run, never a narrower one
        self._set_many({
            LIVE_CURSOR_KEY: "",
            LIVE_WINDOW_END_KEY: "",
            LIVE_LAST_RUN_KEY: format_timestamp(window_end),
        })

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def save_page_cursor(self, phase: SyncPhase, starting_after: Optional[str]) -> None:
        self.store.set(CURSOR_KEYS[phase], starting_after or "")

    def snapshot(self) -> Dict[str, str]:
        """Raw values of every known key, for status output."""
        return {key: self._get(key) for key in ALL_KEYS}
