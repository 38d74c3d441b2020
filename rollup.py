"""
Direct Ingest – rollup-consistent aggregated reads.

Parent conversion totals are derived from the already-written child rows, never from the
parent's own conversion rows when child detail exists:
  ad group = sum of its ads when the window has ad rows for it, else its own rows;
  campaign = sum of its ad groups when it has any, else its own rows.
Traffic metrics (impressions, clicks, cost) come from each level's own performance rows,
falling back to the children's sum for an entity with no rows of its own.
"""

import logging
from collections import defaultdict
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from models import LEVELS, Level
from writer import CONVERSION_COLUMNS, PERFORMANCE_COLUMNS

logger = logging.getLogger(__name__)

TRAFFIC_METRICS = ["impressions", "clicks", "cost"]
CONVERSION_METRICS = ["conversions", "revenue"]
_ID_COLUMNS = ("campaign_id", "ad_group_id", "ad_id", "goal_id")
_ENTITY_COLUMN = {Level.CAMPAIGN: "campaign_id", Level.AD_GROUP: "ad_group_id", Level.AD: "ad_id"}


def _id_or_none(v: Any) -> Optional[str]:
    if v is None or (not isinstance(v, str) and pd.isna(v)):
        return None
    s = str(v)
    return s or None


def _prepare(df: Optional[pd.DataFrame], columns: Sequence[str], numeric: Sequence[str]) -> pd.DataFrame:
    """Copy with ids as strings (or None) and metrics as numbers; missing columns added empty."""
    if df is None or df.empty:
        return pd.DataFrame(columns=list(columns))
    out = df.copy()
    out.columns = [str(c).lower() for c in out.columns]
    for c in columns:
        if c not in out.columns:
            out[c] = None
    for c in _ID_COLUMNS:
        if c in out.columns:
            out[c] = out[c].map(_id_or_none)
    for c in numeric:
        out[c] = pd.to_numeric(out[c], errors="coerce").fillna(0)
    return out


def _filter_goals(df: pd.DataFrame, goal_ids: Optional[Sequence[str]]) -> pd.DataFrame:
    if not goal_ids or df.empty:
        return df
    wanted = {str(g) for g in goal_ids}
    return df[df["goal_id"].isin(wanted)]


def _sum_by(df: pd.DataFrame, key: str, metrics: Sequence[str]) -> Dict[str, Dict[str, float]]:
    if df.empty:
        return {}
    grouped = df.dropna(subset=[key]).groupby(key)[list(metrics)].sum()
    return {str(k): {m: float(v) for m, v in row.items()} for k, row in grouped.iterrows()}


def _children(frames: Iterable[pd.DataFrame], parent_col: str, child_col: str) -> Dict[str, List[str]]:
    out: Dict[str, set] = defaultdict(set)
    for df in frames:
        if df.empty:
            continue
        pairs = df[[parent_col, child_col]].dropna().drop_duplicates()
        for parent, child in pairs.itertuples(index=False):
            out[parent].add(child)
    return {p: sorted(c) for p, c in out.items()}


def _names(frames: Iterable[pd.DataFrame], key: str, name_col: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for df in frames:
        if df.empty or name_col not in df.columns:
            continue
        for k, name in df[[key, name_col]].dropna().itertuples(index=False):
            if name:
                out[k] = str(name)
    return out


def _add(total: Dict[str, float], part: Mapping[str, float], metrics: Sequence[str]) -> None:
    for m in metrics:
        total[m] = total.get(m, 0.0) + float(part.get(m, 0.0))


def with_kpis(node: Dict[str, Any]) -> Dict[str, Any]:
    """Add ctr, avg_cpc, conversion_rate, cost_per_conversion and roi (percentages where applicable)."""
    impressions = node.get("impressions", 0)
    clicks = node.get("clicks", 0)
    cost = node.get("cost", 0.0)
    conversions = node.get("conversions", 0)
    revenue = node.get("revenue", 0.0)
    node["ctr"] = (clicks / impressions) * 100 if impressions > 0 else 0.0
    node["avg_cpc"] = cost / clicks if clicks > 0 else 0.0
    node["conversion_rate"] = (conversions / clicks) * 100 if clicks > 0 else 0.0
    node["cost_per_conversion"] = cost / conversions if conversions > 0 else 0.0
    node["roi"] = ((revenue - cost) / cost) * 100 if cost > 0 else 0.0
    return node


def _node(id_field: str, entity_id: str, traffic: Mapping[str, float], conv: Mapping[str, float]) -> Dict[str, Any]:
    return {
        id_field: entity_id,
        "impressions": int(traffic.get("impressions", 0)),
        "clicks": int(traffic.get("clicks", 0)),
        "cost": round(float(traffic.get("cost", 0.0)), 6),
        "conversions": int(round(conv.get("conversions", 0))),
        "revenue": round(float(conv.get("revenue", 0.0)), 6),
    }


def roll_up(
    performance: Mapping[Level, Optional[pd.DataFrame]],
    conversions: Mapping[Level, Optional[pd.DataFrame]],
    goal_ids: Optional[Sequence[str]] = None,
) -> List[Dict[str, Any]]:
    """Nested campaign -> ad_groups -> ads totals for the given frames (one frame per level per family).

    For every goal filter, a campaign's conversions equal the sum over its ad groups, and an
    ad group's equal the sum over its ads whenever ad detail exists.
    """
    perf = {lvl: _prepare(performance.get(lvl), PERFORMANCE_COLUMNS, TRAFFIC_METRICS) for lvl in LEVELS}
    conv = {
        lvl: _filter_goals(_prepare(conversions.get(lvl), CONVERSION_COLUMNS, CONVERSION_METRICS), goal_ids)
        for lvl in LEVELS
    }
    traffic = {lvl: _sum_by(perf[lvl], _ENTITY_COLUMN[lvl], TRAFFIC_METRICS) for lvl in LEVELS}
    own_conv = {lvl: _sum_by(conv[lvl], _ENTITY_COLUMN[lvl], CONVERSION_METRICS) for lvl in LEVELS}

    ad_frames = [perf[Level.AD], conv[Level.AD]]
    group_frames = [perf[Level.AD_GROUP], conv[Level.AD_GROUP]] + ad_frames
    ads_by_group = _children(ad_frames, "ad_group_id", "ad_id")
    groups_by_campaign = _children(group_frames, "campaign_id", "ad_group_id")
    campaign_ids = set(traffic[Level.CAMPAIGN]) | set(own_conv[Level.CAMPAIGN]) | set(groups_by_campaign)

    campaign_names = _names([perf[Level.CAMPAIGN], perf[Level.AD_GROUP], perf[Level.AD]], "campaign_id", "campaign_name")
    group_names = _names([perf[Level.AD_GROUP], perf[Level.AD]], "ad_group_id", "ad_group_name")

    campaigns: List[Dict[str, Any]] = []
    for campaign_id in sorted(campaign_ids):
        groups: List[Dict[str, Any]] = []
        for ad_group_id in groups_by_campaign.get(campaign_id, []):
            ads = [
                with_kpis(_node("ad_id", ad_id, traffic[Level.AD].get(ad_id, {}), own_conv[Level.AD].get(ad_id, {})))
                for ad_id in ads_by_group.get(ad_group_id, [])
            ]
            group_traffic = traffic[Level.AD_GROUP].get(ad_group_id)
            if ads:
                group_conv: Dict[str, float] = {}
                for ad in ads:
                    _add(group_conv, ad, CONVERSION_METRICS)
                if group_traffic is None:
                    group_traffic = {}
                    for ad in ads:
                        _add(group_traffic, ad, TRAFFIC_METRICS)
            else:
                group_conv = own_conv[Level.AD_GROUP].get(ad_group_id, {})
            group = _node("ad_group_id", ad_group_id, group_traffic or {}, group_conv)
            group["ad_group_name"] = group_names.get(ad_group_id, "")
            group["ads"] = ads
            groups.append(with_kpis(group))

        campaign_traffic = traffic[Level.CAMPAIGN].get(campaign_id)
        if groups:
            campaign_conv: Dict[str, float] = {}
            for g in groups:
                _add(campaign_conv, g, CONVERSION_METRICS)
            if campaign_traffic is None:
                campaign_traffic = {}
                for g in groups:
                    _add(campaign_traffic, g, TRAFFIC_METRICS)
        else:
            campaign_conv = own_conv[Level.CAMPAIGN].get(campaign_id, {})
        campaign = _node("campaign_id", campaign_id, campaign_traffic or {}, campaign_conv)
        campaign["campaign_name"] = campaign_names.get(campaign_id, "")
        campaign["ad_groups"] = groups
        campaigns.append(with_kpis(campaign))
    return campaigns


def totals(campaigns: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    total: Dict[str, float] = {}
    for c in campaigns:
        _add(total, c, TRAFFIC_METRICS + CONVERSION_METRICS)
    node: Dict[str, Any] = {"campaigns": len(campaigns)}
    node.update({k: v for k, v in _node("campaign_id", "", total, total).items() if k != "campaign_id"})
    return with_kpis(node)


def hierarchical_stats(
    store: Any,
    connection_id: str,
    date_from: date,
    date_to: date,
    goal_ids: Optional[Sequence[str]] = None,
    campaign_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Load the six row families for the window and roll them up. campaign_id narrows to one campaign."""
    goals = [str(g) for g in goal_ids] if goal_ids else None
    performance = {lvl: store.load_performance(lvl, connection_id, date_from, date_to) for lvl in LEVELS}
    conversions = {lvl: store.load_conversions(lvl, connection_id, date_from, date_to, goals) for lvl in LEVELS}
    campaigns = roll_up(performance, conversions, goals)
    if campaign_id is not None:
        campaigns = [c for c in campaigns if c["campaign_id"] == str(campaign_id)]
    logger.info(
        "hierarchical stats for connection=%s %s..%s goals=%s: %s campaigns",
        connection_id, date_from, date_to, ",".join(goals) if goals else "all", len(campaigns),
    )
    return {
        "connection_id": connection_id,
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        "goal_ids": goals or [],
        "totals": totals(campaigns),
        "campaigns": campaigns,
    }
