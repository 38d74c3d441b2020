"""
Direct Ingest – typed rows flowing fetch -> merge -> write.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple, Type


class Level(str, Enum):
    CAMPAIGN = "campaign"
    AD_GROUP = "ad_group"
    AD = "ad"


LEVELS: Tuple[Level, ...] = (Level.CAMPAIGN, Level.AD_GROUP, Level.AD)


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class EntityKey:
    """Position of an entity in the campaign -> ad group -> ad hierarchy."""

    campaign_id: str
    ad_group_id: Optional[str] = None
    ad_id: Optional[str] = None

    def entity_id(self, level: Level) -> str:
        if level is Level.CAMPAIGN:
            return self.campaign_id
        if level is Level.AD_GROUP:
            if not self.ad_group_id:
                raise ValueError("ad_group level key without ad_group_id")
            return self.ad_group_id
        if not self.ad_id:
            raise ValueError("ad level key without ad_id")
        return self.ad_id


@dataclass(frozen=True)
class PerformanceRow:
    level: Level
    key: EntityKey
    date: date
    impressions: int = 0
    clicks: int = 0
    cost: float = 0.0
    ctr: float = 0.0
    avg_cpc: float = 0.0
    bounce_rate: float = 0.0
    campaign_name: str = ""
    ad_group_name: str = ""

    @property
    def merge_key(self) -> Tuple[str, date]:
        return (self.key.entity_id(self.level), self.date)


@dataclass(frozen=True)
class ConversionRow:
    level: Level
    key: EntityKey
    date: date
    goal_id: str
    conversions: int = 0
    revenue: float = 0.0

    @property
    def merge_key(self) -> Tuple[str, date]:
        return (self.key.entity_id(self.level), self.date)


@dataclass
class MergedRecord:
    """One performance row plus the conversions of every goal that matched it."""

    LEVEL = Level.CAMPAIGN

    key: EntityKey
    date: date
    impressions: int = 0
    clicks: int = 0
    cost: float = 0.0
    ctr: float = 0.0
    avg_cpc: float = 0.0
    bounce_rate: float = 0.0
    campaign_name: str = ""
    ad_group_name: str = ""
    conversions: int = 0
    revenue: float = 0.0
    by_goal: Dict[str, Tuple[int, float]] = field(default_factory=dict)

    @property
    def level(self) -> Level:
        return self.LEVEL

    @property
    def entity_id(self) -> str:
        return self.key.entity_id(self.LEVEL)

    def add_conversion(self, goal_id: str, conversions: int, revenue: float) -> None:
        self.conversions += conversions
        self.revenue += revenue
        prev_conv, prev_rev = self.by_goal.get(goal_id, (0, 0.0))
        self.by_goal[goal_id] = (prev_conv + conversions, prev_rev + revenue)

    @property
    def conversion_rate(self) -> float:
        return (self.conversions / self.clicks) * 100 if self.clicks > 0 else 0.0

    @property
    def cost_per_conversion(self) -> float:
        return self.cost / self.conversions if self.conversions > 0 else 0.0

    @property
    def roi(self) -> float:
        return ((self.revenue - self.cost) / self.cost) * 100 if self.cost > 0 else 0.0

    @classmethod
    def from_performance(cls, row: PerformanceRow) -> "MergedRecord":
        record_cls = RECORD_TYPES[row.level]
        return record_cls(
            key=row.key,
            date=row.date,
            impressions=row.impressions,
            clicks=row.clicks,
            cost=row.cost,
            ctr=row.ctr,
            avg_cpc=row.avg_cpc,
            bounce_rate=row.bounce_rate,
            campaign_name=row.campaign_name,
            ad_group_name=row.ad_group_name,
        )


@dataclass
class CampaignRecord(MergedRecord):
    LEVEL = Level.CAMPAIGN


@dataclass
class AdGroupRecord(MergedRecord):
    LEVEL = Level.AD_GROUP


@dataclass
class AdRecord(MergedRecord):
    LEVEL = Level.AD


RECORD_TYPES: Dict[Level, Type[MergedRecord]] = {
    Level.CAMPAIGN: CampaignRecord,
    Level.AD_GROUP: AdGroupRecord,
    Level.AD: AdRecord,
}


@dataclass
class Connection:
    id: str
    login: str
    access_token: str
    refresh_token: str = ""
    goal_ids: List[str] = field(default_factory=list)
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    last_sync_at: Optional[datetime] = None


@dataclass(frozen=True)
class CampaignInfo:
    id: str
    name: str
    state: str = ""
    type: str = ""
    daily_budget: float = 0.0


@dataclass(frozen=True)
class AdContent:
    """Text of a text ad as shown to users; empty strings for ad types without it."""

    ad_id: str
    title: str = ""
    title2: str = ""
    text: str = ""
    href: str = ""


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
