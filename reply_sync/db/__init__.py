"""Database module for reply-sync."""

from .connection import get_connection, init_db
from .reply_storage import ReplyStorage, SinkError
from .state_store import SyncStateStore

__all__ = [
    "get_connection",
    "init_db",
    "ReplyStorage",
    "SinkError",
    "SyncStateStore",
]
