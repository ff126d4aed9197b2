from __future__ import annotations

import logging

from pushsched.core.config import get_settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Third-party loggers that are noisy at INFO during every tick.
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "google.auth")


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process; entry points call this before starting work.
    resolved = (level or get_settings().log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
