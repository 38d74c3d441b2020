"""Performance and per-goal conversion fetchers over a scripted report client."""

from datetime import date

import pytest

from cancellation import CancelToken, SyncCancelled
from config import RetrySettings
from fakes import DAY, ScriptedReportClient, conv, perf
from fetchers import FetchRequest, GoalConversionFetcher, PerformanceFetcher, parse_conversion_row
from models import EntityKey, Level
from report_client import REASON_TIMEOUT, REASON_UPSTREAM_ERROR, ReportJobFailure

RETRY = RetrySettings(max_attempts=2, base_delay_seconds=0)
REQUEST = FetchRequest(access_token="tok", login="login", date_from="2026-09-01", date_to="2026-10-31", campaign_ids=["C1"])


def test_performance_rows_are_typed_per_level():
    fetcher = PerformanceFetcher(ScriptedReportClient(), RETRY)

    result = fetcher.fetch(Level.AD, REQUEST)

    assert result.dropped == 0
    assert [r.key for r in result.rows] == [EntityKey("C1", "G1", "A1"), EntityKey("C1", "G1", "A2")]
    first = result.rows[0]
    assert first.level is Level.AD
    assert first.date == date.fromisoformat(DAY)
    assert (first.impressions, first.clicks, first.cost) == (40, 4, 20.0)
    assert first.bounce_rate == 0.0
    assert first.ad_group_name == "Brand exact"


def test_performance_report_requests_metrics_only():
    client = ScriptedReportClient()
    PerformanceFetcher(client, RETRY).fetch(Level.CAMPAIGN, REQUEST)

    (spec,) = client.specs
    assert spec.goal_id is None
    assert spec.report_type == "CAMPAIGN_PERFORMANCE_REPORT"
    assert "Conversions" not in spec.field_names
    assert "Revenue" not in spec.field_names


def test_unparsable_performance_rows_are_dropped_and_counted():
    bad_date = perf(ad_group="G1", impressions=1)
    bad_date["Date"] = "yesterday"
    no_group = perf(impressions=1)
    bad_number = perf(ad_group="G2", impressions=1)
    bad_number["Clicks"] = "many"
    client = ScriptedReportClient(performance={Level.AD_GROUP: [perf(ad_group="G1", impressions=5), bad_date, no_group, bad_number]})

    result = PerformanceFetcher(client, RETRY).fetch(Level.AD_GROUP, REQUEST)

    assert len(result.rows) == 1
    assert result.dropped == 3


def test_one_report_per_goal_each_scoped_to_that_goal():
    client = ScriptedReportClient()
    fetcher = GoalConversionFetcher(client, RETRY, attribution_model="AUTO", concurrency=2)

    result = fetcher.fetch(Level.AD, ["g1", "g2"], REQUEST)

    assert sorted(s.goal_id for s in client.specs) == ["g1", "g2"]
    assert all(s.attribution_model == "AUTO" for s in client.specs)
    assert result.failed_goals == {}
    by_goal = {(r.goal_id, r.key.ad_id): r.conversions for r in result.rows}
    assert by_goal == {("g1", "A1"): 2, ("g1", "A2"): 2, ("g2", "A1"): 1}


def test_failed_goal_does_not_abort_the_others():
    conversions = {
        ("a", Level.CAMPAIGN): [conv("a", conversions=1, revenue=10.0)],
        ("c", Level.CAMPAIGN): [conv("c", conversions=3, revenue=30.0)],
    }
    client = ScriptedReportClient(
        conversions=conversions,
        failures={
            (Level.CAMPAIGN, "b"): ReportJobFailure(REASON_UPSTREAM_ERROR, "boom", 500),
            (Level.CAMPAIGN, "d"): ReportJobFailure(REASON_TIMEOUT, "still queued"),
        },
    )
    fetcher = GoalConversionFetcher(client, RETRY, concurrency=3)

    result = fetcher.fetch(Level.CAMPAIGN, ["a", "b", "c", "d"], REQUEST)

    assert sorted((r.goal_id, r.conversions) for r in result.rows) == [("a", 1), ("c", 3)]
    assert result.failed_goals == {"b": REASON_UPSTREAM_ERROR, "d": REASON_TIMEOUT}


def test_unexpected_goal_error_is_recorded_by_type():
    client = ScriptedReportClient(failures={(Level.CAMPAIGN, "g1"): RuntimeError("bad")})

    result = GoalConversionFetcher(client, RETRY).fetch(Level.CAMPAIGN, ["g1", "g2"], REQUEST)

    assert result.failed_goals == {"g1": "RuntimeError"}
    assert [r.goal_id for r in result.rows] == ["g2"]


def test_zero_conversion_rows_are_skipped():
    conversions = {("g1", Level.CAMPAIGN): [conv("g1", conversions=0, revenue=0.0), conv("g1", campaign="C2", conversions=2)]}
    client = ScriptedReportClient(conversions=conversions)

    result = GoalConversionFetcher(client, RETRY).fetch(Level.CAMPAIGN, ["g1"], REQUEST)

    assert [r.key.campaign_id for r in result.rows] == ["C2"]


def test_no_goals_means_no_requests():
    client = ScriptedReportClient()
    result = GoalConversionFetcher(client, RETRY).fetch(Level.AD, [], REQUEST)
    assert result.rows == []
    assert client.specs == []


def test_cancellation_propagates_out_of_the_fan_out():
    client = ScriptedReportClient(failures={(Level.AD, "g2"): SyncCancelled("stop")})
    token = CancelToken()

    with pytest.raises(SyncCancelled):
        GoalConversionFetcher(client, RETRY, concurrency=1).fetch(Level.AD, ["g1", "g2", "g3"], REQUEST, token)

    assert token.cancelled


def test_bare_conversion_columns_are_accepted():
    raw = {"Date": DAY, "CampaignId": "C1", "Conversions": "4", "Revenue": "12.5"}
    row = parse_conversion_row(Level.CAMPAIGN, raw, "g9", "LC")
    assert (row.goal_id, row.conversions, row.revenue) == ("g9", 4, 12.5)
