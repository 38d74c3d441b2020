"""Window-scoped delete-then-insert against the in-memory store."""

from datetime import date, timedelta

import pytest

from fakes import FakeStore
from models import AdRecord, CampaignRecord, EntityKey, Level
from writer import CONVERSION_TABLES, PERFORMANCE_TABLES, IdempotentWriter, record_id

START = date(2026, 10, 1)


def _campaign_day(day, clicks=10, conversions=None):
    record = CampaignRecord(key=EntityKey("C1"), date=day, impressions=100, clicks=clicks, cost=5.0, campaign_name="Brand")
    for goal_id, (count, revenue) in (conversions or {}).items():
        record.add_conversion(goal_id, count, revenue)
    return record


def _days(first, last):
    return [START + timedelta(days=i - 1) for i in range(first, last + 1)]


def _perf_table(store):
    return sorted((r["stat_date"], r["clicks"]) for r in store.rows(PERFORMANCE_TABLES[Level.CAMPAIGN]))


def test_rewrite_only_touches_its_window():
    store = FakeStore()
    writer = IdempotentWriter(store)
    writer.write([_campaign_day(d, clicks=1) for d in _days(1, 10)], "conn-1")

    writer.write([_campaign_day(d, clicks=2) for d in _days(5, 7)], "conn-1")

    expected = [(d.isoformat(), 2 if 5 <= (d - START).days + 1 <= 7 else 1) for d in _days(1, 10)]
    assert _perf_table(store) == expected


def test_rewrite_leaves_other_connections_alone():
    store = FakeStore()
    writer = IdempotentWriter(store)
    writer.write([_campaign_day(START)], "conn-1")
    writer.write([_campaign_day(START)], "conn-2")

    writer.write([_campaign_day(START, clicks=3)], "conn-1")

    rows = store.rows(PERFORMANCE_TABLES[Level.CAMPAIGN])
    assert sorted((r["connection_id"], r["clicks"]) for r in rows) == [("conn-1", 3), ("conn-2", 10)]


def test_rerun_with_same_input_is_identical():
    store = FakeStore()
    writer = IdempotentWriter(store)
    batch = [_campaign_day(d, conversions={"g1": (2, 20.0), "g2": (1, 5.0)}) for d in _days(1, 3)]

    writer.write(batch, "conn-1")
    first = {t: sorted(store.rows(t), key=lambda r: r["id"]) for t in list(store.tables)}
    writer.write(batch, "conn-1")
    second = {t: sorted(store.rows(t), key=lambda r: r["id"]) for t in list(store.tables)}

    assert first == second
    assert len(second[CONVERSION_TABLES[Level.CAMPAIGN]]) == 6


def test_delete_precedes_insert_per_table():
    store = FakeStore()
    IdempotentWriter(store).write([_campaign_day(START, conversions={"g1": (1, 1.0)})], "conn-1")

    assert [(c[0], c[1]) for c in store.writes] == [
        ("delete", "performance_rows_campaign"),
        ("insert", "performance_rows_campaign"),
        ("delete", "conversion_rows_campaign"),
        ("insert", "conversion_rows_campaign"),
    ]
    delete = store.writes[0]
    assert delete[2:] == ("conn-1", START, START)


def test_window_is_the_batch_min_and_max_date():
    store = FakeStore()
    writer = IdempotentWriter(store)
    writer.write([_campaign_day(d) for d in _days(1, 10)], "conn-1")

    day3, day6 = _days(3, 3)[0], _days(6, 6)[0]
    result = writer.write([_campaign_day(day6, clicks=2), _campaign_day(day3, clicks=2)], "conn-1")

    assert (result.window_start, result.window_end) == (day3, day6)
    assert result.deleted_rows == 4
    kept = [d.isoformat() for d in _days(1, 2) + _days(7, 10)]
    assert [day for day, clicks in _perf_table(store) if clicks == 10] == kept


def test_record_outside_window_is_rejected_before_any_write():
    store = FakeStore()
    with pytest.raises(ValueError):
        IdempotentWriter(store).write([_campaign_day(START + timedelta(days=9))], "conn-1", START, START + timedelta(days=3))
    assert store.writes == []


def test_empty_batch_writes_nothing():
    store = FakeStore()
    result = IdempotentWriter(store).write([], "conn-1", START, START)
    assert store.writes == []
    assert result.performance_rows == 0


def test_inserts_are_chunked():
    store = FakeStore()
    IdempotentWriter(store, batch_size=2).write([_campaign_day(d) for d in _days(1, 5)], "conn-1")
    inserts = [c[2] for c in store.writes if c[0] == "insert" and c[1] == "performance_rows_campaign"]
    assert inserts == [2, 2, 1]


def test_levels_land_in_their_own_tables():
    store = FakeStore()
    ad = AdRecord(key=EntityKey("C1", "G1", "A1"), date=START, clicks=4)
    ad.add_conversion("g1", 1, 9.0)
    result = IdempotentWriter(store).write([_campaign_day(START), ad], "conn-1")

    (ad_row,) = store.rows(PERFORMANCE_TABLES[Level.AD])
    assert (ad_row["campaign_id"], ad_row["ad_group_id"], ad_row["ad_id"]) == ("C1", "G1", "A1")
    (conv_row,) = store.rows(CONVERSION_TABLES[Level.AD])
    assert (conv_row["goal_id"], conv_row["conversions"], conv_row["revenue"]) == ("g1", 1, 9.0)
    assert result.performance_rows == 2
    assert result.conversion_rows == 1


def test_record_id_is_stable_and_goal_scoped():
    assert record_id("c", "1", START) == record_id("c", "1", START)
    assert record_id("c", "1", START) != record_id("c", "1", START + timedelta(days=1))
    assert record_id("c", "1", START, "g1") != record_id("c", "1", START, "g2")
    assert record_id("c", "1", START, "g1") != record_id("c", "1", START)
