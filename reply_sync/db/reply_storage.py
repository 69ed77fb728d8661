"""
Upsert sink for reply records.

Rows are keyed by `part_id`; writing the same record twice leaves the table
exactly as writing it once, which is what lets the sync controller redo a
page after a crash without double counting.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

import psycopg2
from psycopg2.extras import execute_values

from ..models import ReplyRecord

logger = logging.getLogger(__name__)

# Columns the repair utilities are allowed to patch
USER_FIELD_COLUMNS = ("user_id", "user_name", "user_email", "user_external_id")


class SinkError(Exception):
    """Raised when a batch could not be persisted. The batch is rolled back."""

    pass


class ReplyStorage:
    """Insert-or-overwrite access to the `replies` table.

    Follows the storage-class pattern: takes a psycopg2 connection, uses
    short-lived cursors. Writes commit before returning so the caller can
    safely checkpoint afterwards.
    """

    def __init__(self, db_connection):
        self.db = db_connection

    @staticmethod
    def _dedupe(records: Iterable[ReplyRecord]) -> List[ReplyRecord]:
        # ON CONFLICT DO UPDATE cannot touch the same row twice in one statement
        by_part: Dict[str, ReplyRecord] = {}
        for record in records:
            by_part[record.part_id] = record
        return list(by_part.values())

    def upsert_replies(self, records: Sequence[ReplyRecord]) -> int:
        """
        Insert or overwrite records by part_id.

        Returns:
            Number of rows inserted or updated (0 for an empty batch, no SQL issued).

        Raises:
            SinkError: the statement or commit failed; nothing from the batch is kept.
        """
        rows = [r.as_row() for r in self._dedupe(records)]
        if not rows:
            return 0

        columns = ", ".join(ReplyRecord.COLUMNS)
        updates = ",\n                ".join(
            f"{c} = EXCLUDED.{c}" for c in ReplyRecord.COLUMNS if c != "part_id"
        )
        sql = f"""
            INSERT INTO replies ({columns})
            VALUES %s
            ON CONFLICT (part_id) DO UPDATE SET
                {updates},
                pulled_at = NOW()
            RETURNING part_id
        """
        try:
            with self.db.cursor() as cur:
                returned = execute_values(cur, sql, rows, template=None, page_size=len(rows), fetch=True)
            self.db.commit()
        except psycopg2.Error as e:
            self.db.rollback()
            raise SinkError(f"Upsert of {len(rows)} replies failed: {e}") from e

        return len(returned or [])

    # ------------------------------------------------------------------
    # Queries used by status and repair commands
    # ------------------------------------------------------------------

    def count_replies(self) -> int:
        with self.db.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM replies")
            return cur.fetchone()[0]

    def latest_reply_at(self):
        with self.db.cursor() as cur:
            cur.execute("SELECT MAX(reply_created_at) FROM replies")
            return cur.fetchone()[0]

    def conversation_ids_missing_tags(self, limit: Optional[int] = None) -> List[str]:
        sql = "SELECT DISTINCT conversation_id FROM replies WHERE tags IS NULL ORDER BY conversation_id"
        params: tuple = ()
        if limit:
            sql += " LIMIT %s"
            params = (limit,)
        with self.db.cursor() as cur:
            cur.execute(sql, params)
            return [row[0] for row in cur.fetchall()]

    def update_tags(self, conversation_id: str, tags: Optional[str]) -> int:
        try:
            with self.db.cursor() as cur:
                cur.execute(
                    "UPDATE replies SET tags = %s WHERE conversation_id = %s",
                    (tags, conversation_id),
                )
                updated = cur.rowcount
            self.db.commit()
        except psycopg2.Error as e:
            self.db.rollback()
            raise SinkError(f"Tag update failed for conversation {conversation_id}: {e}") from e
        return updated

    def rows_missing_user_name(self, limit: int, exclude_part_ids: Sequence[str] = ()) -> List[dict]:
        """Rows whose user_name is null, oldest part ids first."""
        sql = """
            SELECT part_id, conversation_id, user_id, user_name, user_email, user_external_id
            FROM replies
            WHERE user_name IS NULL
        """
        params: list = []
        if exclude_part_ids:
            sql += " AND NOT (part_id = ANY(%s))"
            params.append(list(exclude_part_ids))
        sql += " ORDER BY part_id LIMIT %s"
        params.append(limit)

        with self.db.cursor() as cur:
            cur.execute(sql, tuple(params))
            rows = cur.fetchall()
        columns = ("part_id", "conversation_id") + USER_FIELD_COLUMNS
        return [dict(zip(columns, row)) for row in rows]

    def update_user_fields(self, part_id: str, patch: Dict[str, str]) -> bool:
        """Apply a patch restricted to USER_FIELD_COLUMNS. Returns True if a row changed."""
        patch = {k: v for k, v in patch.items() if k in USER_FIELD_COLUMNS}
        if not patch:
            return False
        assignments = ", ".join(f"{column} = %s" for column in patch)
        try:
            with self.db.cursor() as cur:
                cur.execute(
                    f"UPDATE replies SET {assignments} WHERE part_id = %s",
                    (*patch.values(), part_id),
                )
                updated = cur.rowcount
            self.db.commit()
        except psycopg2.Error as e:
            self.db.rollback()
            raise SinkError(f"User field update failed for part {part_id}: {e}") from e
        return updated > 0
