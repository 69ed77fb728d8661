"""
Incremental sync controller.

Walks the Intercom search API in two lifecycle phases:

- BACKFILL: one fixed window `[most recent week start, first run time]`,
  paginated across as many runs as it takes. When the window is exhausted
  the completion flag is set (once, irreversibly) and the live cursor is
  seeded at the backfill window's end.
- LIVE: rolling windows `[end of last consumed window, now]`, queried with
  a lookback overlap so late-indexed updates are not missed.

Both phases share one page loop (`_run_pages`); they differ only in how the
window is set up and what happens when it is exhausted.

Checkpoint invariant: a persisted pagination cursor never points past a
conversation that was neither upserted nor explicitly skipped. Each page's
batch is upserted before its cursor is saved, and a page cut short by a cap
or deadline keeps its current cursor so the page is redone next run.
Re-processing is harmless because the sink overwrites by part_id.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .config import SyncSettings
from .intercom_client import IntercomClient
from .models import (
    BackfillCursor,
    LiveCursor,
    PhaseResult,
    ReplyRecord,
    RunSummary,
    SearchPage,
    SyncPhase,
    SyncWindow,
)
from .reply_extractor import build_reply_records
from .sync_state import KeyValueStore, SyncStateRepository

logger = logging.getLogger(__name__)

STOP_EXHAUSTED = "exhausted"
STOP_CONVERSATION_CAP = "conversation_cap"
STOP_ROW_CAP = "row_cap"
STOP_DEADLINE = "deadline"
STOP_SEARCH_FAILED = "search_failed"


def most_recent_week_start(now: datetime) -> datetime:
    """Midnight UTC of the most recent Sunday (today, if today is Sunday)."""
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=(midnight.weekday() + 1) % 7)


@dataclass
class PhasePlan:
    """Everything the page loop needs for one phase of one run."""

    phase: SyncPhase
    window: SyncWindow  # persisted bounds
    query_window: SyncWindow  # bounds sent upstream (live widens the start)
    starting_after: Optional[str]
    per_page: int
    max_conversations: int
    max_rows: Optional[int] = None
    deadline_seconds: Optional[float] = None


class SyncController:
    """Runs one bounded sync invocation against injected collaborators.

    Args:
        client: IntercomClient (or anything with search_conversations/get_conversation)
        state_store: key/value checkpoint store (get/set, optionally set_many)
        sink: object with upsert_replies(records) -> int
        settings: SyncSettings
        now_fn: wall clock, injectable for tests
    """

    def __init__(
        self,
        client: IntercomClient,
        state_store: KeyValueStore,
        sink,
        settings: SyncSettings,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.state = SyncStateRepository(state_store)
        self.sink = sink
        self.settings = settings
        self._now = now_fn or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    @staticmethod
    def current_phase(backfill: BackfillCursor) -> SyncPhase:
        return SyncPhase.LIVE if backfill.done else SyncPhase.BACKFILL

    def run(self) -> RunSummary:
        """Advance backfill if it is unfinished, then make one live pass if live is ready."""
        backfill, live = self.state.load()
        logger.info("Sync starting in %s phase", self.current_phase(backfill).value.upper())
        summary = RunSummary()

        if not backfill.done:
            summary.backfill = self._run_backfill(backfill)
            backfill = self.state.load_backfill()
        else:
            summary.backfill = PhaseResult(phase=SyncPhase.BACKFILL, ran=False, stop_reason="complete")

        if backfill.done:
            live = self._ensure_live_seeded(backfill)
            summary.live = self._run_live(live)
        else:
            summary.live = PhaseResult(phase=SyncPhase.LIVE, ran=False, stop_reason="backfill in progress")

        summary.backfill_cursor, summary.live_cursor = self.state.load()
        return summary

    def poll(self) -> RunSummary:
        """Live tail only. Seeds the live cursor at now - lookback if it was never set."""
        live = self.state.load_live()
        if not live.initialized:
            seed = self._now() - timedelta(minutes=self.settings.live_lookback_minutes)
            live = self.state.seed_live(seed)
            logger.info("Live: initialized last run at %s", seed.isoformat())

        summary = RunSummary(live=self._run_live(live))
        summary.backfill_cursor, summary.live_cursor = self.state.load()
        return summary

    # ------------------------------------------------------------------
    # Phase setup and transitions
    # ------------------------------------------------------------------

    def _run_backfill(self, cursor: BackfillCursor) -> PhaseResult:
        if not cursor.initialized:
            now = self._now()
            start = min(self.settings.backfill_start or most_recent_week_start(now), now)
            cursor = self.state.init_backfill(SyncWindow(start=start, end=now))
            logger.info(
                "Backfill: initialized window %s -> %s",
                cursor.window.start.isoformat(), cursor.window.end.isoformat(),
            )

        plan = PhasePlan(
            phase=SyncPhase.BACKFILL,
            window=cursor.window,
            query_window=cursor.window,
            starting_after=cursor.starting_after,
            per_page=min(self.settings.backfill_per_page, self.settings.backfill_max_conversations),
            max_conversations=self.settings.backfill_max_conversations,
            max_rows=self.settings.backfill_max_rows,
        )
        result = self._run_pages(plan)

        if result.exhausted:
            self.state.complete_backfill()
            logger.info("Backfill complete; switching to LIVE")
            self._ensure_live_seeded(BackfillCursor(window=cursor.window, done=True))
        return result

    def _ensure_live_seeded(self, backfill: BackfillCursor) -> LiveCursor:
        """Seed the live cursor at the backfill window end unless it already exists."""
        live = self.state.load_live()
        if live.initialized:
            return live
        live = self.state.seed_live(backfill.window.end)
        logger.info("Live: initialized last run at backfill end %s", backfill.window.end.isoformat())
        return live

    def _run_live(self, live: LiveCursor) -> PhaseResult:
        if not live.initialized:
            logger.info("Live: last run not set (waiting for backfill hand-off)")
            return PhaseResult(phase=SyncPhase.LIVE, ran=False, stop_reason="not initialized")

        if live.in_progress:
            window_end = live.window_end
            starting_after = live.starting_after
            logger.info("Live: resuming open window ending %s", window_end.isoformat())
        else:
            window_end = max(self._now(), live.last_run)
            self.state.open_live_window(window_end)
            starting_after = None

        window = SyncWindow(start=live.last_run, end=window_end)
        overlap = timedelta(minutes=self.settings.live_lookback_minutes)
        plan = PhasePlan(
            phase=SyncPhase.LIVE,
            window=window,
            query_window=SyncWindow(start=window.start - overlap, end=window.end),
            starting_after=starting_after,
            per_page=min(self.settings.live_per_page, self.settings.live_max_conversations),
            max_conversations=self.settings.live_max_conversations,
            deadline_seconds=self.settings.live_deadline_seconds or None,
        )
        result = self._run_pages(plan)

        if result.exhausted:
            self.state.complete_live_window(window_end)
            logger.info("Live: window consumed; last run advanced to %s", window_end.isoformat())
        return result

    # ------------------------------------------------------------------
    # Shared page loop
    # ------------------------------------------------------------------

    def _run_pages(self, plan: PhasePlan) -> PhaseResult:
        result = PhaseResult(phase=plan.phase)
        label = plan.phase.value.capitalize()
        starting_after = plan.starting_after
        deadline = time.monotonic() + plan.deadline_seconds if plan.deadline_seconds else None

        while True:
            stop = self._cap_reached(plan, result, pending_rows=0, deadline=deadline)
            if stop:
                result.stop_reason = stop
                break

            page = self.client.search_conversations(plan.query_window, plan.per_page, starting_after)
            if page is None:
                # never read a failed search as an empty window
                logger.warning("%s: search failed; stopping with cursor unchanged", label)
                result.stop_reason = STOP_SEARCH_FAILED
                break

            if not page.conversations:
                result.exhausted = True
                result.stop_reason = STOP_EXHAUSTED
                logger.info("%s: no conversations on page; window exhausted", label)
                break

            batch, cut = self._process_page(plan, page, result, deadline, allow_cut=result.pages > 0)

            # SinkError propagates: the cursor below must not move past unpersisted rows
            result.upserted += self.sink.upsert_replies(batch)
            result.pages += 1

            if cut:
                logger.info(
                    "%s page %d: cut short by %s after processed=%d skipped=%d; cursor kept",
                    label, result.pages, cut, result.processed, result.skipped,
                )
                result.stop_reason = cut
                break

            starting_after = page.next_cursor
            self.state.save_page_cursor(plan.phase, starting_after)
            logger.info(
                "%s page %d: processed=%d skipped=%d upserted=%d next_cursor=%s",
                label, result.pages, result.processed, result.skipped, result.upserted,
                starting_after or "none",
            )

            if not starting_after:
                result.exhausted = True
                result.stop_reason = STOP_EXHAUSTED
                break

            time.sleep(self.settings.page_delay_seconds)

        return result

    def _process_page(
        self,
        plan: PhasePlan,
        page: SearchPage,
        result: PhaseResult,
        deadline: Optional[float],
        allow_cut: bool,
    ) -> tuple:
        """Fetch, normalize and extract every conversation on a page.

        The first page of a run is always finished, so a page that alone
        exceeds a cap cannot stall the sync forever.

        Returns:
            (records, cut_reason) where cut_reason is None if the whole page was handled.
        """
        batch: List[ReplyRecord] = []
        for summary in page.conversations:
            if allow_cut:
                stop = self._cap_reached(plan, result, pending_rows=len(batch), deadline=deadline)
                if stop:
                    return batch, stop

            conv_id = summary.get("id")
            if not conv_id:
                logger.warning("%s: conversation summary without id; skipping", plan.phase.value)
                result.skipped += 1
                continue

            conversation = self.client.get_conversation(str(conv_id))
            if conversation is None:
                logger.warning("%s: could not fetch conversation %s; skipping", plan.phase.value, conv_id)
                result.skipped += 1
                continue

            batch.extend(build_reply_records(conversation))
            result.processed += 1

        return batch, None

    @staticmethod
    def _cap_reached(
        plan: PhasePlan,
        result: PhaseResult,
        pending_rows: int,
        deadline: Optional[float],
    ) -> Optional[str]:
        if result.processed + result.skipped >= plan.max_conversations:
            return STOP_CONVERSATION_CAP
        if plan.max_rows is not None and result.upserted + pending_rows >= plan.max_rows:
            return STOP_ROW_CAP
        if deadline is not None and time.monotonic() >= deadline:
            return STOP_DEADLINE
        return None
