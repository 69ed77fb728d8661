"""Key/value checkpoint store backed by the sync_state table."""

import logging
from typing import Dict

import psycopg2
from psycopg2.extras import execute_values

logger = logging.getLogger(__name__)


class SyncStateStore:
    """Last-write-wins get/set over `sync_state`.

    Each `set` commits on its own: keys are independently safe to persist,
    and a checkpoint must be durable before the next page is requested.
    """

    def __init__(self, db_connection):
        self.db = db_connection

    def get(self, key: str) -> str:
        """Stored value, or "" when the key has never been written."""
        with self.db.cursor() as cur:
            cur.execute("SELECT value FROM sync_state WHERE key = %s", (key,))
            row = cur.fetchone()
        if not row:
            return ""
        value = row[0] if not isinstance(row, dict) else row.get("value")
        return value or ""

    def set(self, key: str, value) -> None:
        try:
            with self.db.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sync_state (key, value, updated_at)
                    VALUES (%s, %s, NOW())
                    ON CONFLICT (key) DO UPDATE SET
                        value = EXCLUDED.value,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (key, "" if value is None else str(value)),
                )
            self.db.commit()
        except psycopg2.Error:
            self.db.rollback()
            raise
        logger.debug("sync_state %s=%r", key, value)

    def set_many(self, values: Dict[str, str]) -> None:
        """Write several keys in one transaction."""
        if not values:
            return
        rows = [(key, "" if value is None else str(value)) for key, value in values.items()]
        try:
            with self.db.cursor() as cur:
                execute_values(
                    cur,
                    """
                    INSERT INTO sync_state (key, value)
                    VALUES %s
                    ON CONFLICT (key) DO UPDATE SET
                        value = EXCLUDED.value,
                        updated_at = NOW()
                    """,
                    rows,
                )
            self.db.commit()
        except psycopg2.Error:
            self.db.rollback()
            raise
        logger.debug("sync_state %s", ", ".join(f"{k}={v!r}" for k, v in rows))

