"""System statistics and persistent logging."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from . import config, db

PACKAGE_LOGGER = "epub2audio"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_system_stats() -> Dict[str, Any]:
    """Conversion counters and the average processing time in seconds.

    The average covers the last 100 ``performance`` log entries.
    """
    stats = db.get_stats(sample_size=100)
    return {
        "total_conversions": stats["total"],
        "completed_conversions": stats["completed"],
        "cached_conversions": stats["cached"],
        "average_processing_time": round(stats["avg_duration_ms"] / 1000, 2),
    }


class DatabaseLogHandler(logging.Handler):
    """Persist log records to the ``system_logs`` table.

    The event type and conversion id are taken from the record's
    ``extra`` (``event_type``, ``conversion_id``); the event type defaults
    to the last component of the logger name.
    """

    def __init__(self, level: int = logging.WARNING) -> None:
        super().__init__(level)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event_type = getattr(record, "event_type", None) or record.name.rsplit(".", 1)[-1]
            db.insert_log(
                event_type,
                record.getMessage(),
                level=record.levelname.lower(),
                conversion_id=getattr(record, "conversion_id", None),
                data={"logger": record.name},
            )
        except Exception:
            self.handleError(record)


def configure_logging(level: Optional[str] = None) -> DatabaseLogHandler:
    """Configure console logging and attach the database handler once."""
    level_name = (level or config.LOG_LEVEL).upper()
    logging.basicConfig(level=level_name, format=LOG_FORMAT)
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level_name)
    for handler in logger.handlers:
        if isinstance(handler, DatabaseLogHandler):
            return handler
    handler = DatabaseLogHandler()
    logger.addHandler(handler)
    return handler
