"""Shared logging utilities.

Scheduled sync runs are often started with their stdout piped into a
supervisor that may go away before the run ends. SafeStreamHandler keeps a
closed stream from turning a log call into a crash mid-checkpoint.
"""
import logging

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%dT%H:%M:%S"


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that ignores broken pipe and closed file errors."""

    def emit(self, record):
        try:
            super().emit(record)
        except BrokenPipeError:
            pass  # stdout closed
        except ValueError:
            pass  # I/O operation on closed file


def configure_safe_logging(level=logging.INFO, fmt: str = DEFAULT_FORMAT, datefmt: str = DEFAULT_DATEFMT):
    """Attach a SafeStreamHandler to the root logger.

    Safe to call more than once; a second call only lowers the level if needed.

    Args:
        level: Logging level to set (default: INFO)
        fmt: Record format string
        datefmt: Timestamp format string
    """
    root = logging.getLogger()
    handler = next((h for h in root.handlers if isinstance(h, SafeStreamHandler)), None)
    if handler is None:
        handler = SafeStreamHandler()
        handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
        root.addHandler(handler)
    handler.setLevel(level)
    # requests/urllib3 log every retry at DEBUG; keep them out of INFO runs
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))
    if root.level == logging.NOTSET or root.level > level:
        root.setLevel(level)
