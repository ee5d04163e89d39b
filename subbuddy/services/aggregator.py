"""Cross-project aggregation of dashboard snapshots and chart series.

WHAT:
    - merge_chart_points: date-key union of N series, summing per key
    - aggregate_total: field-wise sum of per-project snapshots
    - merge_chart_sets / merge_report_charts: series-by-series merge of chart sets

WHY:
    The "total" tab and multi-project reports show all projects as one.
    Projects share the display currency, so plain addition is enough.

NOTE:
    mrr_change_24h is summed as-is. Each project's delta spans its own last
    two chart points, so the sum only means "24h" when every project reports
    the same two dates.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence

from subbuddy.models import ChartPoint, ChartSet, DashboardData, ReportChartSet

_SUMMED_FIELDS = (
    "mrr",
    "mrr_change_24h",
    "active_subscriptions",
    "active_trials",
    "new_subscriptions_today",
    "new_customers_today",
    "trials_converting_today",
    "trial_prediction",
)


def merge_chart_points(series: Sequence[Sequence[ChartPoint]]) -> List[ChartPoint]:
    """Union of date keys in first-seen order, values summed (absent counts as 0).

    A single input series is returned unchanged; points without a date are
    dropped when merging since they cannot be keyed.
    """
    if not series:
        return []
    if len(series) == 1:
        return list(series[0])

    totals: Dict[str, float] = {}
    for points in series:
        for point in points:
            if point.date is None:
                continue
            totals[point.date] = totals.get(point.date, 0.0) + (point.value or 0.0)
    return [ChartPoint(date=key, value=value) for key, value in totals.items()]


def merge_chart_sets(chart_sets: Iterable[Optional[ChartSet]]) -> Optional[ChartSet]:
    present = [c for c in chart_sets if c is not None]
    if not present:
        return None
    return ChartSet(
        mrr_trend=merge_chart_points([c.mrr_trend for c in present]),
        subscriber_growth=merge_chart_points([c.subscriber_growth for c in present]),
        revenue_trend=merge_chart_points([c.revenue_trend for c in present]),
        trial_conversions=merge_chart_points([c.trial_conversions for c in present]),
    )


def merge_report_charts(chart_sets: Sequence[ReportChartSet]) -> ReportChartSet:
    """Merge per-project (or per-platform) report chart sets into one."""
    if len(chart_sets) == 1:
        return chart_sets[0]
    return ReportChartSet(
        mrr_trend=merge_chart_points([c.mrr_trend for c in chart_sets]),
        subscriber_growth=merge_chart_points([c.subscriber_growth for c in chart_sets]),
        revenue_trend=merge_chart_points([c.revenue_trend for c in chart_sets]),
        trial_conversions=merge_chart_points([c.trial_conversions for c in chart_sets]),
        actives_movement=merge_chart_points([c.actives_movement for c in chart_sets]),
    )


def aggregate_total(snapshots: Iterable[DashboardData], currency: str) -> Optional[DashboardData]:
    """Cross-project total, or None when no project has a snapshot yet.

    None (not an all-zero snapshot) lets callers tell "no data yet" apart
    from "everything is zero".
    """
    snapshots = list(snapshots)
    if not snapshots:
        return None

    total = DashboardData(currency=currency)
    for snapshot in snapshots:
        for name in _SUMMED_FIELDS:
            setattr(total, name, getattr(total, name) + getattr(snapshot, name))

    timestamps = [s.last_updated for s in snapshots if s.last_updated is not None]
    total.last_updated = max(timestamps) if timestamps else None
    total.charts = merge_chart_sets(s.charts for s in snapshots)
    return total
