"""
One-off repair passes over already-synced replies.

Rows written before tags or end-user identity were captured have NULLs in
those columns. These passes re-read the conversation upstream and fill only
what is missing; they never overwrite a non-null value.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional

from .intercom_client import IntercomClient
from .reply_extractor import extract_user_identity

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 200
DEFAULT_MAX_ROWS = 2000
DEFAULT_DELAY_SECONDS = 0.25


@dataclass
class RepairStats:
    """Counters reported at the end of a repair pass."""

    examined: int = 0
    updated: int = 0
    failed: int = 0

    def describe(self) -> str:
        return f"examined={self.examined} updated={self.updated} failed={self.failed}"


def backfill_tags(
    client: IntercomClient,
    storage,
    limit: Optional[int] = None,
    delay_seconds: float = DEFAULT_DELAY_SECONDS,
) -> RepairStats:
    """Fill `tags` for every conversation that has replies with NULL tags.

    Conversations whose tag lookup fails are left NULL so a later pass can
    retry them. Conversations with no tags upstream are also left NULL.
    """
    stats = RepairStats()
    conversation_ids = storage.conversation_ids_missing_tags(limit=limit)
    logger.info(f"Found {len(conversation_ids)} conversations needing tag backfill")

    for conv_id in conversation_ids:
        stats.examined += 1
        tags = client.get_conversation_tags(conv_id)
        if tags is None:
            logger.warning(f"Tag lookup failed for conversation {conv_id}; leaving it for a later pass")
            stats.failed += 1
        elif tags:
            rows = storage.update_tags(conv_id, tags)
            logger.info(f"Updated {rows} replies in {conv_id} -> tags: {tags}")
            stats.updated += 1
        else:
            logger.debug(f"Conversation {conv_id} has no tags")
        time.sleep(delay_seconds)

    logger.info(f"Tag backfill complete: {stats.describe()}")
    return stats


def user_field_patch(row: Dict[str, Optional[str]], identity: Dict[str, Optional[str]]) -> Dict[str, str]:
    """Columns that are NULL on the row and known upstream."""
    return {
        column: value
        for column, value in identity.items()
        if row.get(column) is None and value is not None
    }


def _group_by_conversation(rows: List[dict]) -> "OrderedDict[str, List[dict]]":
    grouped: "OrderedDict[str, List[dict]]" = OrderedDict()
    for row in rows:
        conv_id = row.get("conversation_id")
        if conv_id:
            grouped.setdefault(conv_id, []).append(row)
    return grouped


def backfill_user_fields(
    client: IntercomClient,
    storage,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_rows: int = DEFAULT_MAX_ROWS,
    delay_seconds: float = DEFAULT_DELAY_SECONDS,
) -> RepairStats:
    """Fill end-user identity columns on replies whose `user_name` is NULL.

    Rows are pulled in batches and grouped by conversation so each
    conversation is fetched once per batch. Rows already examined are
    excluded from later batches, so rows that cannot be filled (no user
    upstream, or a failed fetch) do not make the pass spin.

    Args:
        client: Intercom client
        storage: ReplyStorage
        batch_size: Rows requested per query
        max_rows: Stop after examining this many rows
        delay_seconds: Pause between conversation fetches
    """
    stats = RepairStats()
    seen: List[str] = []

    while stats.examined < max_rows:
        rows = storage.rows_missing_user_name(
            limit=min(batch_size, max_rows - stats.examined),
            exclude_part_ids=seen,
        )
        if not rows:
            break
        seen.extend(row["part_id"] for row in rows)

        for conv_id, conv_rows in _group_by_conversation(rows).items():
            conversation = client.get_conversation(conv_id)
            stats.examined += len(conv_rows)
            if conversation is None:
                logger.warning(f"Could not fetch conversation {conv_id}; {len(conv_rows)} rows left as is")
                stats.failed += len(conv_rows)
                time.sleep(delay_seconds)
                continue

            identity = extract_user_identity(conversation)
            for row in conv_rows:
                patch = user_field_patch(row, identity)
                if patch and storage.update_user_fields(row["part_id"], patch):
                    stats.updated += 1

            time.sleep(delay_seconds)
            if stats.examined >= max_rows:
                break

        logger.info(f"User field backfill progress: {stats.describe()}")

    logger.info(f"User field backfill complete: {stats.describe()}")
    return stats
