from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

import pendulum
import pymysql

LOG = logging.getLogger(__name__)

REPLICATION_TABLE = "gitpod_replication"
LAST_EXPORT_ITEM = "lastExport"

_ER_NO_SUCH_TABLE = 1146
_ISO_MS_FORMAT = "YYYY-MM-DD[T]HH:mm:ss.SSS[Z]"


# ============================== Helpers ===============================

def format_watermark(dt: datetime) -> str:
    """Naive UTC datetime -> '1970-01-01T00:00:01.001Z' (millisecond precision)."""
    return pendulum.instance(dt, tz="UTC").in_timezone("UTC").format(_ISO_MS_FORMAT)


def parse_watermark(value: str) -> datetime:
    """ISO-8601 string -> naive UTC datetime, as the driver hands timestamps back."""
    p = pendulum.parse(value).in_timezone("UTC")
    return datetime(p.year, p.month, p.day, p.hour, p.minute, p.second, p.microsecond)


# ============================== Store ===============================

class WatermarkStore:
    """Last successful export time, kept in a bookkeeping table on the source node."""

    def __init__(self, node, logger: logging.Logger | None = None):
        self.node = node
        self.log = logger or LOG

    def get(self) -> Optional[datetime]:
        try:
            rows = self.node.query(
                f"SELECT value FROM {REPLICATION_TABLE} WHERE item = %s", (LAST_EXPORT_ITEM,)
            )
        except pymysql.err.ProgrammingError as e:
            if e.args and e.args[0] == _ER_NO_SUCH_TABLE:
                self.log.info("No %s table on %s yet; no previous export", REPLICATION_TABLE, self.node.name)
                return None
            raise
        if not rows or not rows[0].get("value"):
            return None
        value = parse_watermark(rows[0]["value"])
        self.log.debug("Last export on %s: %s", self.node.name, value)
        return value

    def advance(self, to: datetime) -> str:
        value = format_watermark(to)
        self.node.query(
            f"CREATE TABLE IF NOT EXISTS {REPLICATION_TABLE} "
            f"(item VARCHAR(36), value VARCHAR(255), PRIMARY KEY (item))"
        )
        self.node.query(
            f"INSERT INTO {REPLICATION_TABLE} (item, value) VALUES (%s, %s) "
            f"ON DUPLICATE KEY UPDATE value = VALUES(value)",
            (LAST_EXPORT_ITEM, value),
        )
        self.log.info("Marked last export on %s as %s", self.node.name, value)
        return value
