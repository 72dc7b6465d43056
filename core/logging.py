"""
Logging configuration
"""

import json
import logging
import sys
from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "apscheduler", "google.cloud.bigquery")


class ErrorContextFormatter(logging.Formatter):
    """
    Appends the ``error_context`` passed through ``extra`` (a
    ``SyncException.to_dict()``) to the formatted line.
    """

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "error_context", None)
        if not context:
            return line
        return f"{line} | context={json.dumps(context, default=str, sort_keys=True)}"


def setup_logging(level: str = None):
    """Configure the root logger once; later calls only adjust the level"""
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(getattr(h, "_sync_handler", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ErrorContextFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        handler._sync_handler = True
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(f"Logging configured at {logging.getLevelName(log_level)} level")
