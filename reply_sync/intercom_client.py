"""
Intercom API client for incremental reply sync.

Wraps the two upstream calls the sync engine needs (conversation search by
`updated_at` window, and full conversation fetch) behind a bounded retry
loop. Upstream failures never raise out of this module: every request ends
as a RequestOutcome, and the public methods turn anything but SUCCESS into
None so the caller can skip the item and keep going.
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import requests

from .config import ConfigurationError
from .models import SearchPage, SyncWindow
from .normalizer import conversation_parts

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass
class RequestOutcome:
    """Classified result of a request (or of the final retry attempt)."""

    kind: OutcomeKind
    data: Optional[Dict[str, Any]] = None
    status: Optional[int] = None
    error: Optional[str] = None
    retry_after: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


class IntercomClient:
    """Client for the Intercom conversations API."""

    BASE_URL = "https://api.intercom.io"
    API_VERSION = "2.11"

    # (connect_timeout, read_timeout) in seconds
    DEFAULT_TIMEOUT = (10, 30)

    # 6 attempts, 0.5s base doubling per attempt, 30s ceiling
    MAX_ATTEMPTS = 6
    RETRY_DELAY_BASE = 0.5
    RETRY_DELAY_MAX = 30.0
    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    # Cap on follow-up part pages per conversation
    MAX_PART_PAGES = 50

    def __init__(
        self,
        access_token: Optional[str] = None,
        timeout: tuple = None,
        max_attempts: int = None,
        retry_delay_base: float = None,
        retry_delay_max: float = None,
    ):
        self.access_token = access_token
        if not self.access_token:
            raise ConfigurationError("INTERCOM_ACCESS_TOKEN not set")

        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.max_attempts = max_attempts if max_attempts is not None else self.MAX_ATTEMPTS
        self.retry_delay_base = retry_delay_base if retry_delay_base is not None else self.RETRY_DELAY_BASE
        self.retry_delay_max = retry_delay_max if retry_delay_max is not None else self.RETRY_DELAY_MAX

        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Intercom-Version": self.API_VERSION,
        })

    @classmethod
    def from_settings(cls, settings) -> "IntercomClient":
        return cls(
            access_token=settings.intercom_access_token,
            max_attempts=settings.max_attempts,
            retry_delay_base=settings.retry_delay_base,
            retry_delay_max=settings.retry_delay_max,
        )

    @staticmethod
    def _parse_retry_after(header_value: str) -> int:
        """
        Parse a Retry-After header value.

        The header can be either an integer number of seconds or an HTTP-date.

        Returns:
            Number of seconds to wait (minimum 1)
        """
        try:
            return max(1, int(header_value))
        except ValueError:
            try:
                retry_at = parsedate_to_datetime(header_value)
                if retry_at.tzinfo is None:
                    retry_at = retry_at.replace(tzinfo=timezone.utc)
                delta = (retry_at - datetime.now(timezone.utc)).total_seconds()
                return max(1, int(delta))
            except (ValueError, TypeError):
                # 10s is the typical rate limit window
                return 10

    @staticmethod
    def _add_jitter(base_delay: float) -> float:
        """Add 0-50% of base delay so concurrent schedulers don't retry in lockstep."""
        return base_delay + random.uniform(0, 0.5 * base_delay)

    def _backoff_delay(self, attempt: int, retry_after: Optional[str] = None) -> float:
        """Delay before the retry following zero-based `attempt`, capped at the ceiling."""
        if retry_after:
            base_delay = self._parse_retry_after(retry_after)
        else:
            base_delay = self.retry_delay_base * (2 ** attempt)
        base_delay = min(self.retry_delay_max, base_delay)
        return min(self.retry_delay_max, self._add_jitter(base_delay))

    def _log_rate_limit(self, response, endpoint: str) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is None:
            return
        try:
            remaining_int = int(remaining)
        except (ValueError, TypeError):
            return
        if remaining_int < 100:
            logger.warning(f"Rate limit low: {remaining_int} requests remaining on {endpoint}")
        else:
            logger.debug(f"Rate limit remaining: {remaining_int} on {endpoint}")

    def _attempt(
        self,
        method: str,
        url: str,
        endpoint: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> RequestOutcome:
        """Issue one HTTP request and classify the result."""
        try:
            if method == "GET":
                response = self.session.get(url, params=params, timeout=self.timeout)
            else:
                response = self.session.post(url, json=json, timeout=self.timeout)
        except (
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            requests.exceptions.ChunkedEncodingError,
        ) as e:
            return RequestOutcome(OutcomeKind.RETRYABLE, error=f"{type(e).__name__}: {e}")
        except requests.exceptions.RequestException as e:
            return RequestOutcome(OutcomeKind.FATAL, error=f"{type(e).__name__}: {e}")

        self._log_rate_limit(response, endpoint)
        status = response.status_code

        if 200 <= status < 300:
            try:
                data = response.json()
            except ValueError as e:
                return RequestOutcome(OutcomeKind.FATAL, status=status, error=f"malformed JSON: {e}")
            if not isinstance(data, dict):
                return RequestOutcome(
                    OutcomeKind.FATAL, status=status,
                    error=f"expected JSON object, got {type(data).__name__}",
                )
            return RequestOutcome(OutcomeKind.SUCCESS, data=data, status=status)

        if status in self.RETRYABLE_STATUS_CODES or 500 <= status <= 599:
            retry_after = response.headers.get("Retry-After") if status == 429 else None
            return RequestOutcome(OutcomeKind.RETRYABLE, status=status, retry_after=retry_after)

        body = getattr(response, "text", "") or ""
        return RequestOutcome(OutcomeKind.FATAL, status=status, error=str(body)[:2000])

    def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> RequestOutcome:
        """
        Make an HTTP request, retrying transient failures with bounded backoff.

        Retries on:
        - 429 rate limit (honouring Retry-After, capped at the delay ceiling)
        - 5xx server errors
        - Connection errors, timeouts and broken chunked bodies

        Returns the SUCCESS outcome, the FATAL outcome of the first
        non-retryable response, or the last RETRYABLE outcome once
        attempts are exhausted.
        """
        url = endpoint if endpoint.startswith("http") else f"{self.BASE_URL}{endpoint}"
        outcome = RequestOutcome(OutcomeKind.RETRYABLE, error="no attempt made")

        for attempt in range(self.max_attempts):
            outcome = self._attempt(method, url, endpoint, params=params, json=json)
            if outcome.kind != OutcomeKind.RETRYABLE:
                if outcome.kind == OutcomeKind.FATAL:
                    logger.warning(
                        f"Intercom API error {outcome.status} on {endpoint}: {outcome.error}"
                    )
                return outcome

            if attempt + 1 >= self.max_attempts:
                break

            delay = self._backoff_delay(attempt, outcome.retry_after)
            reason = outcome.status if outcome.status is not None else outcome.error
            logger.warning(
                f"Intercom retryable error {reason} on {endpoint}, retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{self.max_attempts})"
            )
            time.sleep(delay)

        logger.warning(f"Intercom API: exhausted {self.max_attempts} attempts for {endpoint}")
        return outcome

    def _get(self, endpoint: str, params: Optional[dict] = None) -> Optional[dict]:
        """GET with retry; None on any non-success outcome."""
        outcome = self._request_with_retry("GET", endpoint, params=params)
        return outcome.data if outcome.ok else None

    def _post(self, endpoint: str, json: dict) -> Optional[dict]:
        """POST with retry; None on any non-success outcome."""
        outcome = self._request_with_retry("POST", endpoint, json=json)
        return outcome.data if outcome.ok else None

    @staticmethod
    def build_search_query(window: SyncWindow, per_page: int, starting_after: Optional[str] = None) -> dict:
        """Search body for conversations whose updated_at falls inside `window`, oldest first."""
        pagination = {"per_page": per_page}
        if starting_after:
            pagination["starting_after"] = starting_after
        return {
            "query": {
                "operator": "AND",
                "value": [
                    {"field": "updated_at", "operator": ">=", "value": window.start_ts},
                    {"field": "updated_at", "operator": "<=", "value": window.end_ts},
                ],
            },
            "sort": {"field": "updated_at", "order": "ascending"},
            "pagination": pagination,
        }

    def search_conversations(
        self,
        window: SyncWindow,
        per_page: int,
        starting_after: Optional[str] = None,
    ) -> Optional[SearchPage]:
        """
        Fetch one page of conversations updated inside `window`.

        Returns:
            SearchPage (possibly empty), or None when the request failed after
            retries or was rejected. Callers must not treat None as "no data".
        """
        data = self._post("/conversations/search", self.build_search_query(window, per_page, starting_after))
        if data is None:
            return None

        conversations = data.get("conversations") or []
        if not isinstance(conversations, list):
            logger.warning("Search response had non-list conversations field; treating as miss")
            return None

        next_page = (data.get("pages") or {}).get("next") or {}
        next_cursor = next_page.get("starting_after") if isinstance(next_page, dict) else None
        return SearchPage(
            conversations=[c for c in conversations if isinstance(c, dict)],
            next_cursor=str(next_cursor) if next_cursor else None,
        )

    def get_conversation(self, conv_id: str) -> Optional[dict]:
        """
        Fetch a full conversation, following paginated conversation parts.

        Long threads return their parts in pages; every page is merged back
        into `conversation_parts.conversation_parts` so normalization sees the
        whole thread. A failed follow-up page makes the whole fetch a miss.
        """
        conversation = self._get(f"/conversations/{conv_id}")
        if conversation is None:
            return None

        container = conversation.get("conversation_parts")
        if not isinstance(container, dict):
            return conversation

        all_parts: List[dict] = conversation_parts(conversation)
        next_page = self._next_part_page(container)
        page_count = 0

        while next_page and page_count < self.MAX_PART_PAGES:
            endpoint, params = self._part_page_request(conv_id, next_page)
            if endpoint is None:
                break
            page = self._get(endpoint, params=params)
            if page is None:
                logger.warning(f"Conversation {conv_id}: failed to fetch parts page {page_count + 2}")
                return None
            all_parts.extend(conversation_parts(page))
            next_page = self._next_part_page(page.get("conversation_parts"))
            page_count += 1

        container["conversation_parts"] = all_parts
        container.pop("pages", None)
        return conversation

    @staticmethod
    def _next_part_page(container):
        """`pages.next` of a parts envelope; None for a bare list or a missing envelope."""
        if not isinstance(container, dict):
            return None
        pages = container.get("pages")
        return pages.get("next") if isinstance(pages, dict) else None

    @staticmethod
    def _part_page_request(conv_id: str, next_page) -> tuple:
        """Resolve a parts `pages.next` value into (endpoint, params)."""
        if isinstance(next_page, str):
            next_page = {"uri": next_page}
        if not isinstance(next_page, dict):
            return None, None

        uri = next_page.get("uri")
        if uri:
            parsed = urlparse(uri)
            params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
            path = parsed.path or f"/conversations/{conv_id}"
            return path, params or None

        starting_after = next_page.get("starting_after")
        if starting_after:
            return f"/conversations/{conv_id}", {"starting_after": starting_after}
        return None, None

    def get_conversation_tags(self, conv_id: str) -> Optional[str]:
        """Comma-joined tag names for a conversation, or None on failure."""
        data = self._get(f"/conversations/{conv_id}/tags")
        if data is None:
            return None
        tags = data.get("tags")
        if not isinstance(tags, list):
            return ""
        return ", ".join(t.get("name") for t in tags if isinstance(t, dict) and t.get("name"))
