from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from db_sync.watermark import WatermarkStore

LOG = logging.getLogger(__name__)


def truncate_ms(dt: datetime) -> datetime:
    return dt.replace(microsecond=dt.microsecond - dt.microsecond % 1000)


@dataclass(frozen=True)
class SyncPeriod:
    """Replication window. `from_` is None for a full resync; both ends are naive UTC."""
    from_: Optional[datetime]
    to: datetime

    def __post_init__(self):
        if self.from_ is not None and self.from_ >= self.to:
            raise ValueError(f"Invalid sync period: from {self.from_} is not before to {self.to}")


class SyncPeriodCalculator:
    def __init__(self, source, watermark: WatermarkStore, logger: logging.Logger | None = None):
        self.source = source
        self.watermark = watermark
        self.log = logger or LOG

    def db_now(self) -> datetime:
        # the database clock, not ours: rows are stamped by the server
        rows = self.source.query("SELECT NOW(3) AS now")
        return rows[0]["now"]

    def compute_sync_period(self, ignore_previous_watermark: bool, clock_skew_offset_seconds: int) -> Optional[SyncPeriod]:
        to = truncate_ms(self.db_now() - timedelta(seconds=clock_skew_offset_seconds))
        if ignore_previous_watermark:
            self.log.info("Ignoring previous watermark on %s; replicating everything up to %s", self.source.name, to)
            return SyncPeriod(None, to)

        from_ = self.watermark.get()
        if from_ is not None:
            from_ = truncate_ms(from_)
            if to <= from_:
                self.log.info(
                    "Sync period for %s is empty (from=%s, to=%s); clock has not advanced past the skew offset",
                    self.source.name, from_, to,
                )
                return None
        self.log.info("Sync period for %s: from=%s to=%s", self.source.name, from_, to)
        return SyncPeriod(from_, to)
