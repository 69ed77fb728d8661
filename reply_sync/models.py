"""Pydantic models shared by the sync engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["operator", "end_user"]


class SyncPhase(str, Enum):
    """Lifecycle phase of the sync engine."""

    BACKFILL = "backfill"
    LIVE = "live"


class SyncWindow(BaseModel):
    """Closed `[start, end]` range bounding an "updated between" query."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> "SyncWindow":
        if self.start > self.end:
            raise ValueError(f"window start {self.start.isoformat()} is after end {self.end.isoformat()}")
        return self

    @property
    def start_ts(self) -> int:
        return int(self.start.timestamp())

    @property
    def end_ts(self) -> int:
        return int(self.end.timestamp())


class SearchPage(BaseModel):
    """One page of conversation summaries from the search endpoint."""

    conversations: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class Message(BaseModel):
    """A conversation source or part, normalized to plain text."""

    part_id: Optional[str] = None
    created_at: Optional[int] = None  # unix seconds
    role: Role = "end_user"
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    body_text: str = ""
    sequence: int = 0  # upstream emission order, source first

    @property
    def has_body(self) -> bool:
        return bool(self.body_text.strip())

    @property
    def created_at_utc(self) -> Optional[datetime]:
        if not self.created_at:
            return None
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc)


class ReplyRecord(BaseModel):
    """An operator reply paired with the end-user message it answers.

    Keyed by `part_id`. Derivation is a pure function of the conversation
    object, so two derivations from the same upstream state compare equal.
    """

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    part_id: str
    reply_created_at: Optional[datetime] = None
    teammate_id: Optional[str] = None
    teammate_name: Optional[str] = None
    user_prev_message: Optional[str] = None
    agent_reply: str
    tags: Optional[str] = None
    assignee_id: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_external_id: Optional[str] = None

    # Column order used by the replies table insert
    COLUMNS: ClassVar[Tuple[str, ...]] = (
        "conversation_id", "part_id", "reply_created_at",
        "teammate_id", "teammate_name",
        "user_prev_message", "agent_reply",
        "tags", "assignee_id",
        "user_id", "user_name", "user_email", "user_external_id",
    )

    def as_row(self) -> tuple:
        return tuple(getattr(self, column) for column in self.COLUMNS)


class BackfillCursor(BaseModel):
    """Persisted backfill checkpoint."""

    window: Optional[SyncWindow] = None
    starting_after: Optional[str] = None
    done: bool = False

    @property
    def initialized(self) -> bool:
        return self.window is not None


class LiveCursor(BaseModel):
    """Persisted live-tail checkpoint.

    `last_run` is the end of the last fully consumed window. `window_end` is
    set only while a window is being paginated, so an interrupted run
    resumes with the same bounds as its cursor.
    """

    last_run: Optional[datetime] = None
    window_end: Optional[datetime] = None
    starting_after: Optional[str] = None

    @property
    def initialized(self) -> bool:
        return self.last_run is not None

    @property
    def in_progress(self) -> bool:
        return self.window_end is not None


class PhaseResult(BaseModel):
    """Counters for one phase of one run."""

    phase: SyncPhase
    ran: bool = True
    pages: int = 0
    processed: int = 0
    skipped: int = 0
    upserted: int = 0
    exhausted: bool = False
    stop_reason: Optional[str] = None

    def describe(self) -> str:
        if not self.ran:
            return f"{self.phase.value}: skipped ({self.stop_reason})"
        return (
            f"{self.phase.value}: pages={self.pages} processed={self.processed} "
            f"skipped={self.skipped} upserted={self.upserted} "
            f"exhausted={self.exhausted} stop={self.stop_reason}"
        )


class RunSummary(BaseModel):
    """Result of one bounded run, including the cursors it left behind."""

    backfill: Optional[PhaseResult] = None
    live: Optional[PhaseResult] = None
    backfill_cursor: Optional[BackfillCursor] = None
    live_cursor: Optional[LiveCursor] = None

    @property
    def total_upserted(self) -> int:
        return sum(r.upserted for r in (self.backfill, self.live) if r is not None)
