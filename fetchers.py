"""
Direct Ingest – performance and per-goal conversion fetchers.

Performance reports carry metrics only: the reports API drops or rejects conversion
fields unless the request names exactly one goal. Conversions are therefore fetched with
one goal-scoped report per goal per level and tagged with that goal.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

from cancellation import CancelToken, RunDeadlineExceeded, SyncCancelled
from config import RetrySettings
from models import ConversionRow, EntityKey, Level, PerformanceRow
from report_client import ReportJobClient, ReportJobFailure, ReportSpec

logger = logging.getLogger(__name__)

METRIC_FIELDS = ["Impressions", "Clicks", "Cost", "Ctr", "AvgCpc", "BounceRate"]

# (report type, key fields) per hierarchy level
PERFORMANCE_REPORTS: Dict[Level, Tuple[str, List[str]]] = {
    Level.CAMPAIGN: ("CAMPAIGN_PERFORMANCE_REPORT", ["Date", "CampaignId", "CampaignName"]),
    Level.AD_GROUP: ("CUSTOM_REPORT", ["Date", "CampaignId", "CampaignName", "AdGroupId", "AdGroupName"]),
    Level.AD: ("AD_PERFORMANCE_REPORT", ["Date", "CampaignId", "CampaignName", "AdGroupId", "AdGroupName", "AdId"]),
}

CONVERSION_KEY_FIELDS: Dict[Level, List[str]] = {
    Level.CAMPAIGN: ["Date", "CampaignId"],
    Level.AD_GROUP: ["Date", "CampaignId", "AdGroupId"],
    Level.AD: ["Date", "CampaignId", "AdGroupId", "AdId"],
}


@dataclass(frozen=True)
class FetchRequest:
    access_token: str
    login: str
    date_from: str
    date_to: str
    campaign_ids: Sequence[str]


@dataclass
class FetchResult:
    rows: list = field(default_factory=list)
    dropped: int = 0
    failed_goals: Dict[str, str] = field(default_factory=dict)


def _parse_key(level: Level, raw: Dict[str, Optional[str]]) -> Tuple[EntityKey, date]:
    """Raise ValueError/TypeError when a required identity field is missing or malformed."""
    day = date.fromisoformat(str(raw.get("Date") or ""))
    campaign_id = raw.get("CampaignId")
    if not campaign_id:
        raise ValueError("CampaignId missing")
    ad_group_id = raw.get("AdGroupId") if level in (Level.AD_GROUP, Level.AD) else None
    ad_id = raw.get("AdId") if level is Level.AD else None
    key = EntityKey(str(campaign_id), ad_group_id and str(ad_group_id), ad_id and str(ad_id))
    key.entity_id(level)
    return key, day


def _int(value: Optional[str]) -> int:
    return int(float(value)) if value is not None else 0


def _float(value: Optional[str]) -> float:
    return float(value) if value is not None else 0.0


def parse_performance_row(level: Level, raw: Dict[str, Optional[str]]) -> PerformanceRow:
    key, day = _parse_key(level, raw)
    return PerformanceRow(
        level=level,
        key=key,
        date=day,
        impressions=_int(raw.get("Impressions")),
        clicks=_int(raw.get("Clicks")),
        cost=_float(raw.get("Cost")),
        ctr=_float(raw.get("Ctr")),
        avg_cpc=_float(raw.get("AvgCpc")),
        bounce_rate=_float(raw.get("BounceRate")),
        campaign_name=raw.get("CampaignName") or "",
        ad_group_name=raw.get("AdGroupName") or "",
    )


def _goal_column(raw: Dict[str, Optional[str]], base: str, goal_id: str, model: str) -> Optional[str]:
    scoped = f"{base}_{goal_id}_{model}"
    if scoped in raw:
        return raw[scoped]
    return raw.get(base)


def parse_conversion_row(level: Level, raw: Dict[str, Optional[str]], goal_id: str, model: str) -> ConversionRow:
    key, day = _parse_key(level, raw)
    return ConversionRow(
        level=level,
        key=key,
        date=day,
        goal_id=str(goal_id),
        conversions=_int(_goal_column(raw, "Conversions", goal_id, model)),
        revenue=_float(_goal_column(raw, "Revenue", goal_id, model)),
    )


class PerformanceFetcher:
    def __init__(self, client: ReportJobClient, retry: RetrySettings):
        self._client = client
        self._retry = retry

    def spec_for(self, level: Level, request: FetchRequest) -> ReportSpec:
        report_type, key_fields = PERFORMANCE_REPORTS[level]
        return ReportSpec(
            date_from=request.date_from,
            date_to=request.date_to,
            campaign_ids=tuple(request.campaign_ids),
            field_names=tuple(key_fields + METRIC_FIELDS),
            report_type=report_type,
            label=f"{level.value} performance",
        )

    def fetch(self, level: Level, request: FetchRequest, token: Optional[CancelToken] = None) -> FetchResult:
        raw_rows = self._client.submit_and_await(
            self.spec_for(level, request),
            request.access_token,
            request.login,
            self._retry.max_attempts,
            self._retry.base_delay_seconds,
            token,
        )
        result = FetchResult()
        for raw in raw_rows:
            try:
                result.rows.append(parse_performance_row(level, raw))
            except (TypeError, ValueError) as e:
                result.dropped += 1
                logger.debug("dropping %s performance row %s: %s", level.value, raw, e)
        if result.dropped:
            logger.warning("%s performance: dropped %s unparsable rows of %s", level.value, result.dropped, len(raw_rows))
        logger.info("%s performance: %s rows", level.value, len(result.rows))
        return result


class GoalConversionFetcher:
    def __init__(self, client: ReportJobClient, retry: RetrySettings, attribution_model: str = "AUTO", concurrency: int = 4):
        self._client = client
        self._retry = retry
        self._model = attribution_model
        self._concurrency = max(1, concurrency)

    def spec_for(self, level: Level, goal_id: str, request: FetchRequest) -> ReportSpec:
        return ReportSpec(
            date_from=request.date_from,
            date_to=request.date_to,
            campaign_ids=tuple(request.campaign_ids),
            field_names=tuple(CONVERSION_KEY_FIELDS[level] + ["Conversions", "Revenue"]),
            report_type="CUSTOM_REPORT",
            goal_id=str(goal_id),
            attribution_model=self._model,
            label=f"{level.value} conversions goal {goal_id}",
        )

    def _fetch_goal(self, level: Level, goal_id: str, request: FetchRequest, token: Optional[CancelToken]) -> Tuple[List[ConversionRow], int]:
        raw_rows = self._client.submit_and_await(
            self.spec_for(level, goal_id, request),
            request.access_token,
            request.login,
            self._retry.max_attempts,
            self._retry.base_delay_seconds,
            token,
        )
        rows: List[ConversionRow] = []
        dropped = 0
        for raw in raw_rows:
            try:
                row = parse_conversion_row(level, raw, goal_id, self._model)
            except (TypeError, ValueError) as e:
                dropped += 1
                logger.debug("dropping %s conversion row for goal %s %s: %s", level.value, goal_id, raw, e)
                continue
            if row.conversions == 0 and row.revenue == 0:
                continue
            rows.append(row)
        return rows, dropped

    def fetch(self, level: Level, goal_ids: Sequence[str], request: FetchRequest, token: Optional[CancelToken] = None) -> FetchResult:
        """Union of every goal that succeeded; failed goals land in result.failed_goals."""
        result = FetchResult()
        if not goal_ids:
            return result
        workers = min(self._concurrency, len(goal_ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"goals-{level.value}") as executor:
            futures = {goal_id: executor.submit(self._fetch_goal, level, goal_id, request, token) for goal_id in goal_ids}
            for goal_id, future in futures.items():
                try:
                    rows, dropped = future.result()
                except (SyncCancelled, RunDeadlineExceeded):
                    if token is not None:
                        token.cancel()
                    raise
                except ReportJobFailure as e:
                    result.failed_goals[goal_id] = e.reason
                    logger.warning("%s conversions for goal %s failed (%s): %s", level.value, goal_id, e.reason, e)
                    continue
                except Exception as e:
                    result.failed_goals[goal_id] = type(e).__name__
                    logger.exception("%s conversions for goal %s failed: %s", level.value, goal_id, e)
                    continue
                result.rows.extend(rows)
                result.dropped += dropped
        if result.dropped:
            logger.warning("%s conversions: dropped %s unparsable rows", level.value, result.dropped)
        logger.info(
            "%s conversions: %s rows from %s/%s goals%s",
            level.value, len(result.rows), len(goal_ids) - len(result.failed_goals), len(goal_ids),
            f" (failed: {', '.join(sorted(result.failed_goals))})" if result.failed_goals else "",
        )
        return result
