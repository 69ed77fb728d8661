"""PostgreSQL connection handling."""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import psycopg2

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


def get_connection_string(database_url: Optional[str] = None) -> str:
    """Resolve the connection string, preferring an explicit value over DATABASE_URL."""
    return database_url or os.getenv(
        "DATABASE_URL",
        "postgresql://localhost:5432/reply_sync"
    )


@contextmanager
def get_connection(database_url: Optional[str] = None) -> Generator:
    """Connection context manager: commit on clean exit, rollback on error."""
    conn = psycopg2.connect(get_connection_string(database_url))
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(database_url: Optional[str] = None) -> None:
    """Apply schema.sql. Every statement is IF NOT EXISTS, so reruns are harmless."""
    with open(SCHEMA_PATH) as f:
        schema_sql = f.read()

    with get_connection(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
