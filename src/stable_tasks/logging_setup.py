from __future__ import annotations

import logging
import sys
from typing import Optional

_handler: Optional[logging.Handler] = None


class _PackageFilter(logging.Filter):
    """
    Keep console output readable:
    - allow all stable_tasks logs at the configured level
    - let third-party loggers (uvicorn, httpx, ...) through only at WARNING+
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "stable_tasks" or record.name.startswith("stable_tasks."):
            return True
        return record.levelno >= logging.WARNING


def setup_logging(level: int = logging.INFO) -> None:
    """
    Install a single stderr handler on the root logger.

    Call this once, before the first log line. Calling it again replaces
    the handler instead of adding a duplicate.
    """
    global _handler

    root = logging.getLogger()
    root.setLevel(level)
    if _handler is not None:
        root.removeHandler(_handler)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(level)
    ch.setFormatter(fmt)
    ch.addFilter(_PackageFilter())
    root.addHandler(ch)
    _handler = ch

    # Route warnings.warn(...) into logging as 'py.warnings'
    logging.captureWarnings(True)
