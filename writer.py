"""
Direct Ingest – idempotent window writer.

For each (level, family) table: delete the connection's rows inside the batch's date window,
then insert the batch with content-derived ids. Delete and insert are separate statements;
a crash between them leaves a hole in that window until the next sync rewrites it.
"""

import hashlib
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from models import Level, MergedRecord

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 1000

PERFORMANCE_TABLES: Dict[Level, str] = {
    Level.CAMPAIGN: "performance_rows_campaign",
    Level.AD_GROUP: "performance_rows_ad_group",
    Level.AD: "performance_rows_ad",
}
CONVERSION_TABLES: Dict[Level, str] = {
    Level.CAMPAIGN: "conversion_rows_campaign",
    Level.AD_GROUP: "conversion_rows_ad_group",
    Level.AD: "conversion_rows_ad",
}

PERFORMANCE_COLUMNS = [
    "id", "connection_id", "campaign_id", "campaign_name", "ad_group_id", "ad_group_name", "ad_id",
    "stat_date", "impressions", "clicks", "cost", "ctr", "avg_cpc", "bounce_rate", "conversions", "revenue",
]
CONVERSION_COLUMNS = [
    "id", "connection_id", "campaign_id", "ad_group_id", "ad_id", "stat_date", "goal_id", "conversions", "revenue",
]


class ColumnarStore(Protocol):
    def insert(self, table: str, rows: Sequence[Dict[str, Any]]) -> int: ...

    def delete_where(self, table: str, connection_id: str, date_from: date, date_to: date) -> int: ...


def record_id(connection_id: str, entity_id: str, day: date, goal_id: Optional[str] = None) -> str:
    parts = [str(connection_id), str(entity_id), day.isoformat()]
    if goal_id is not None:
        parts.append(str(goal_id))
    return hashlib.md5("_".join(parts).encode("utf-8")).hexdigest()


def performance_row_for_storage(connection_id: str, record: MergedRecord) -> Dict[str, Any]:
    return {
        "id": record_id(connection_id, record.entity_id, record.date),
        "connection_id": connection_id,
        "campaign_id": record.key.campaign_id,
        "campaign_name": record.campaign_name,
        "ad_group_id": record.key.ad_group_id,
        "ad_group_name": record.ad_group_name,
        "ad_id": record.key.ad_id,
        "stat_date": record.date.isoformat(),
        "impressions": record.impressions,
        "clicks": record.clicks,
        "cost": record.cost,
        "ctr": record.ctr,
        "avg_cpc": record.avg_cpc,
        "bounce_rate": record.bounce_rate,
        "conversions": record.conversions,
        "revenue": record.revenue,
    }


def conversion_rows_for_storage(connection_id: str, record: MergedRecord) -> List[Dict[str, Any]]:
    out = []
    for goal_id, (conversions, revenue) in sorted(record.by_goal.items()):
        out.append({
            "id": record_id(connection_id, record.entity_id, record.date, goal_id),
            "connection_id": connection_id,
            "campaign_id": record.key.campaign_id,
            "ad_group_id": record.key.ad_group_id,
            "ad_id": record.key.ad_id,
            "stat_date": record.date.isoformat(),
            "goal_id": goal_id,
            "conversions": conversions,
            "revenue": revenue,
        })
    return out


@dataclass
class WriteResult:
    window_start: Optional[date] = None
    window_end: Optional[date] = None
    performance_rows: int = 0
    conversion_rows: int = 0
    deleted_rows: int = 0
    tables: List[str] = field(default_factory=list)


class IdempotentWriter:
    """The only component that mutates the store."""

    def __init__(self, store: ColumnarStore, batch_size: int = INSERT_BATCH_SIZE):
        self._store = store
        self._batch_size = batch_size

    def _replace(self, table: str, rows: List[Dict[str, Any]], connection_id: str, start: date, end: date, result: WriteResult) -> None:
        deleted = self._store.delete_where(table, connection_id, start, end)
        result.deleted_rows += deleted or 0
        for i in range(0, len(rows), self._batch_size):
            self._store.insert(table, rows[i : i + self._batch_size])
        result.tables.append(table)
        logger.info("%s: replaced window %s..%s for connection=%s (%s rows)", table, start, end, connection_id, len(rows))

    def write(
        self,
        records: Iterable[MergedRecord],
        connection_id: str,
        window_start: Optional[date] = None,
        window_end: Optional[date] = None,
    ) -> WriteResult:
        records = list(records)
        result = WriteResult()
        if not records:
            return result
        dates = [r.date for r in records]
        start = window_start or min(dates)
        end = window_end or max(dates)
        if start > end:
            raise ValueError(f"window start {start} is after window end {end}")
        result.window_start, result.window_end = start, end

        by_level: Dict[Level, List[MergedRecord]] = defaultdict(list)
        for r in records:
            if not start <= r.date <= end:
                raise ValueError(f"record dated {r.date} outside write window {start}..{end}")
            by_level[r.level].append(r)

        for level, level_records in by_level.items():
            perf_rows = [performance_row_for_storage(connection_id, r) for r in level_records]
            conv_rows = [row for r in level_records for row in conversion_rows_for_storage(connection_id, r)]
            self._replace(PERFORMANCE_TABLES[level], perf_rows, connection_id, start, end, result)
            self._replace(CONVERSION_TABLES[level], conv_rows, connection_id, start, end, result)
            result.performance_rows += len(perf_rows)
            result.conversion_rows += len(conv_rows)
        return result
