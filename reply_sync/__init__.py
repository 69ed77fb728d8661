"""reply-sync: incremental Intercom reply ingestion into PostgreSQL."""

__version__ = "0.3.0"
