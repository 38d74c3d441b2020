"""
Direct Ingest – join performance rows with per-goal conversion rows by (entity, date).
"""

import logging
from collections import defaultdict
from datetime import date
from typing import Dict, Iterable, List, Mapping, Tuple

from models import ConversionRow, MergedRecord, PerformanceRow

logger = logging.getLogger(__name__)


def group_by_goal(rows: Iterable[ConversionRow]) -> Dict[str, List[ConversionRow]]:
    grouped: Dict[str, List[ConversionRow]] = defaultdict(list)
    for row in rows:
        grouped[row.goal_id].append(row)
    return dict(grouped)


def merge_with_stats(
    performance_rows: Iterable[PerformanceRow],
    conversion_rows_by_goal: Mapping[str, Iterable[ConversionRow]],
) -> Tuple[List[MergedRecord], int]:
    """Return (records, dropped_conversion_rows).

    One record per performance row; conversion fields default to zero. A conversion row
    whose (entity, date) has no performance row is dropped: no traffic, no conversion.
    """
    by_key: Dict[Tuple[str, date], MergedRecord] = {}
    for row in performance_rows:
        key = row.merge_key
        if key in by_key:
            # Report rows are unique per (entity, date); a repeat means a segmented report
            logger.warning("duplicate performance row for %s on %s; keeping the last one", key[0], key[1])
        by_key[key] = MergedRecord.from_performance(row)

    dropped = 0
    for goal_id, rows in conversion_rows_by_goal.items():
        for conv in rows:
            record = by_key.get(conv.merge_key)
            if record is None or record.level is not conv.level:
                dropped += 1
                continue
            record.add_conversion(str(goal_id), conv.conversions, conv.revenue)

    if dropped:
        logger.info("merge: dropped %s conversion rows without matching performance rows", dropped)
    return list(by_key.values()), dropped


def merge(
    performance_rows: Iterable[PerformanceRow],
    conversion_rows_by_goal: Mapping[str, Iterable[ConversionRow]],
) -> List[MergedRecord]:
    records, _ = merge_with_stats(performance_rows, conversion_rows_by_goal)
    return records
