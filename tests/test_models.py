from datetime import date

import pytest

from config import parse_goal_ids
from models import RECORD_TYPES, AdRecord, EntityKey, Level, MergedRecord, PerformanceRow


def test_entity_id_requires_the_levels_own_id():
    key = EntityKey("1", "2")
    assert key.entity_id(Level.CAMPAIGN) == "1"
    assert key.entity_id(Level.AD_GROUP) == "2"
    with pytest.raises(ValueError):
        key.entity_id(Level.AD)


def test_record_type_follows_row_level():
    row = PerformanceRow(level=Level.AD, key=EntityKey("1", "2", "3"), date=date(2026, 10, 1), clicks=5, cost=10.0)
    record = MergedRecord.from_performance(row)
    assert type(record) is AdRecord is RECORD_TYPES[Level.AD]
    assert record.entity_id == "3"


def test_add_conversion_accumulates_per_goal():
    record = AdRecord(key=EntityKey("1", "2", "3"), date=date(2026, 10, 1), clicks=10, cost=20.0)
    record.add_conversion("g1", 1, 10.0)
    record.add_conversion("g1", 2, 5.0)
    record.add_conversion("g2", 1, 0.0)
    assert record.by_goal == {"g1": (3, 15.0), "g2": (1, 0.0)}
    assert record.conversions == 4
    assert record.conversion_rate == 40.0
    assert record.cost_per_conversion == 5.0


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, []),
        ("", []),
        ('["1", 2]', ["1", "2"]),
        ("1, 2 ,", ["1", "2"]),
        ([3, "4"], ["3", "4"]),
    ],
)
def test_parse_goal_ids(raw, expected):
    assert parse_goal_ids(raw) == expected
