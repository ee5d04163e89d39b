"""Internal data model for dashboard snapshots, chart series and marketing data.

WHAT:
    Plain dataclasses that the wire decoder produces and the aggregator,
    scheduler and report generator consume.

WHY:
    Wire payloads vary between API versions; everything past the decoder
    works on these stable shapes only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from subbuddy.utils.formatting import (
    fmt_compact_currency,
    fmt_count,
    fmt_currency,
    fmt_signed_compact_currency,
)

ORGANIC_MEDIA_SOURCE = "Organic"
TOP_CAMPAIGNS_LIMIT = 5


# =============================================================================
# ENUMS
# =============================================================================

class ChartName(str, Enum):
    mrr = "mrr"
    actives = "actives"
    revenue = "revenue"
    trial_conversion = "trial_conversion"
    actives_new = "actives_new"
    actives_movement = "actives_movement"


class MetricID(str, Enum):
    """Overview metric ids we map into snapshot fields (others are ignored)."""
    mrr = "mrr"
    active_subscriptions = "active_subscriptions"
    active_trials = "active_trials"
    new_customers = "new_customers"


class MRRDirection(str, Enum):
    up = "up"
    down = "down"
    flat = "flat"


class MetricKind(str, Enum):
    mrr = "mrr"
    active_subs = "active_subs"
    active_trials = "active_trials"
    new_today = "new_today"
    trials_converting = "trials_converting"
    trial_prediction = "trial_prediction"

    @property
    def title(self) -> str:
        return {
            MetricKind.mrr: "MRR",
            MetricKind.active_subs: "Active subs",
            MetricKind.active_trials: "Active trials",
            MetricKind.new_today: "New today",
            MetricKind.trials_converting: "Trials converting",
            MetricKind.trial_prediction: "Trial prediction",
        }[self]


# =============================================================================
# CHARTS
# =============================================================================

@dataclass(frozen=True)
class ChartPoint:
    """One (date, value) pair. `value` stays None until a number is required."""
    date: Optional[str]
    value: Optional[float]


@dataclass(frozen=True)
class ChartSummary:
    operation: Optional[str]
    value: Optional[float]


@dataclass
class ChartResponse:
    values: List[ChartPoint] = field(default_factory=list)
    summary: List[ChartSummary] = field(default_factory=list)
    display_name: Optional[str] = None
    resolution: Optional[str] = None

    @property
    def summary_total(self) -> Optional[ChartSummary]:
        for entry in self.summary:
            if entry.operation == "total":
                return entry
        return None


def present_values(points: Sequence[ChartPoint]) -> List[float]:
    return [p.value for p in points if p.value is not None]


@dataclass
class ChartSet:
    mrr_trend: List[ChartPoint] = field(default_factory=list)
    subscriber_growth: List[ChartPoint] = field(default_factory=list)
    revenue_trend: List[ChartPoint] = field(default_factory=list)
    trial_conversions: List[ChartPoint] = field(default_factory=list)


@dataclass
class ReportChartSet(ChartSet):
    """ChartSet plus net daily subscriber movement, used only for churn."""
    actives_movement: List[ChartPoint] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return bool(self.mrr_trend or self.subscriber_growth)

    @property
    def estimated_churn_rate(self) -> Optional[float]:
        """Churned subscribers over the period as % of the opening subscriber count.

        None when there is no movement data or the opening count is not positive.
        """
        movement = present_values(self.actives_movement)
        subscribers = present_values(self.subscriber_growth)
        if not movement or not subscribers or subscribers[0] <= 0:
            return None
        churned = sum(abs(v) for v in movement if v < 0)
        return churned / subscribers[0] * 100


# =============================================================================
# SNAPSHOT
# =============================================================================

@dataclass
class DashboardData:
    """Point-in-time metrics for one project, or for all projects combined."""
    mrr: float = 0.0
    mrr_change_24h: float = 0.0
    active_subscriptions: int = 0
    active_trials: int = 0
    new_subscriptions_today: int = 0
    new_customers_today: int = 0
    trials_converting_today: int = 0
    trial_prediction: int = 0
    trial_conversion_rate: float = 0.0
    currency: str = "USD"
    last_updated: Optional[datetime] = None
    charts: Optional[ChartSet] = None

    @property
    def new_today_best(self) -> int:
        return max(self.new_customers_today, self.new_subscriptions_today)

    @property
    def mrr_direction(self) -> MRRDirection:
        if self.mrr_change_24h > 0:
            return MRRDirection.up
        if self.mrr_change_24h < 0:
            return MRRDirection.down
        return MRRDirection.flat

    @property
    def mrr_formatted(self) -> str:
        return fmt_compact_currency(self.mrr, self.currency)

    @property
    def mrr_full_formatted(self) -> str:
        return fmt_currency(self.mrr, self.currency)

    @property
    def mrr_change_formatted(self) -> str:
        return fmt_signed_compact_currency(self.mrr_change_24h, self.currency)

    def formatted_value(self, kind: MetricKind) -> str:
        if kind is MetricKind.mrr:
            return self.mrr_full_formatted
        if kind is MetricKind.active_subs:
            return fmt_count(self.active_subscriptions)
        if kind is MetricKind.active_trials:
            return fmt_count(self.active_trials)
        if kind is MetricKind.new_today:
            return fmt_count(self.new_today_best)
        if kind is MetricKind.trials_converting:
            return fmt_count(self.trials_converting_today)
        return "~" + fmt_count(self.trial_prediction)


# =============================================================================
# MARKETING (ATTRIBUTION)
# =============================================================================

# (row attribute, in-app event name) in funnel order
FUNNEL_EVENTS: Tuple[Tuple[str, str], ...] = (
    ("registrations", "af_complete_registration"),
    ("checkouts_initiated", "af_initiated_checkout"),
    ("trials_started", "af_start_trial"),
    ("subscriptions", "af_subscribe"),
    ("purchases", "af_purchase"),
)


@dataclass(frozen=True)
class CampaignDayRow:
    date: str
    media_source: str
    campaign: str
    impressions: int = 0
    clicks: int = 0
    installs: int = 0
    cost: float = 0.0
    revenue: float = 0.0
    registrations: int = 0
    checkouts_initiated: int = 0
    trials_started: int = 0
    subscriptions: int = 0
    purchases: int = 0

    @property
    def cpi(self) -> float:
        return self.cost / self.installs if self.installs > 0 else 0.0


@dataclass(frozen=True)
class CohortRow:
    campaign: str
    media_source: str
    users: int
    cost: float
    revenue: float
    roi: float
    retention_d1: Optional[float] = None
    retention_d7: Optional[float] = None
    retention_d30: Optional[float] = None


@dataclass
class CampaignTotal:
    media_source: str
    campaign: str
    impressions: int = 0
    clicks: int = 0
    installs: int = 0
    cost: float = 0.0
    revenue: float = 0.0
    trials_started: int = 0
    subscriptions: int = 0

    @property
    def cpi(self) -> float:
        return self.cost / self.installs if self.installs > 0 else 0.0

    @property
    def roas(self) -> float:
        return self.revenue / self.cost * 100 if self.cost > 0 else 0.0

    @property
    def display_name(self) -> str:
        return self.media_source if not self.campaign else f"{self.media_source} — {self.campaign}"


@dataclass
class FunnelRates:
    """Step conversion percentages; None where the denominator is zero."""
    registration_rate: Optional[float]
    checkout_rate: Optional[float]
    trial_start_rate: Optional[float]
    trial_to_subscription_rate: Optional[float]
    purchase_rate: Optional[float]


def _rate(numerator: float, denominator: float) -> Optional[float]:
    return numerator / denominator * 100 if denominator > 0 else None


@dataclass
class MarketingReport:
    campaign_rows: List[CampaignDayRow] = field(default_factory=list)
    cohorts: List[CohortRow] = field(default_factory=list)
    currency: str = "USD"

    @classmethod
    def merge(cls, reports: Sequence["MarketingReport"], currency: str = "USD") -> "MarketingReport":
        merged = cls(currency=reports[0].currency if reports else currency)
        for report in reports:
            merged.campaign_rows.extend(report.campaign_rows)
            merged.cohorts.extend(report.cohorts)
        return merged

    @property
    def is_empty(self) -> bool:
        return not self.campaign_rows and not self.cohorts

    @property
    def total_installs(self) -> int:
        return sum(r.installs for r in self.campaign_rows)

    @property
    def total_cost(self) -> float:
        return sum(r.cost for r in self.campaign_rows)

    @property
    def total_revenue(self) -> float:
        return sum(r.revenue for r in self.campaign_rows)

    @property
    def average_cpi(self) -> float:
        installs = self.total_installs
        return self.total_cost / installs if installs > 0 else 0.0

    @property
    def overall_roas(self) -> float:
        cost = self.total_cost
        return self.total_revenue / cost * 100 if cost > 0 else 0.0

    @property
    def funnel_totals(self) -> Dict[str, int]:
        return {
            attr: sum(getattr(r, attr) for r in self.campaign_rows)
            for attr, _event in FUNNEL_EVENTS
        }

    @property
    def funnel_rates(self) -> FunnelRates:
        totals = self.funnel_totals
        installs = self.total_installs
        return FunnelRates(
            registration_rate=_rate(totals["registrations"], installs),
            checkout_rate=_rate(totals["checkouts_initiated"], totals["registrations"]),
            trial_start_rate=_rate(totals["trials_started"], installs),
            trial_to_subscription_rate=_rate(totals["subscriptions"], totals["trials_started"]),
            purchase_rate=_rate(totals["purchases"], installs),
        )

    @property
    def campaign_totals(self) -> List[CampaignTotal]:
        """Rows summed per (media source, campaign), most installs first."""
        totals: Dict[Tuple[str, str], CampaignTotal] = {}
        for row in self.campaign_rows:
            key = (row.media_source or ORGANIC_MEDIA_SOURCE, row.campaign)
            total = totals.get(key)
            if total is None:
                total = totals[key] = CampaignTotal(media_source=key[0], campaign=key[1])
            total.impressions += row.impressions
            total.clicks += row.clicks
            total.installs += row.installs
            total.cost += row.cost
            total.revenue += row.revenue
            total.trials_started += row.trials_started
            total.subscriptions += row.subscriptions
        # sorted() is stable: ties keep first-seen order
        return sorted(totals.values(), key=lambda t: t.installs, reverse=True)

    def top_campaigns(self, limit: int = TOP_CAMPAIGNS_LIMIT) -> List[CampaignTotal]:
        return self.campaign_totals[:limit]
