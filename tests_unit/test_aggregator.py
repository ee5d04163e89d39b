"""
Aggregator Tests (Unit)
=======================

WHAT: Date-keyed chart merging and the field-wise "total" snapshot.
WHY: The total tab must equal the sum of its projects, never a mix of
     per-project and derived numbers.

REFERENCES:
- subbuddy/services/aggregator.py
"""

from datetime import datetime, timezone

from subbuddy.models import ChartPoint, ChartSet, DashboardData, ReportChartSet
from subbuddy.services.aggregator import (
    aggregate_total,
    merge_chart_points,
    merge_chart_sets,
    merge_report_charts,
)


def _points(*pairs):
    return [ChartPoint(d, v) for d, v in pairs]


class TestMergeChartPoints:
    def test_union_of_dates_sums_values_in_first_seen_order(self):
        a = _points(("2024-01-01", 10), ("2024-01-02", 20))
        b = _points(("2024-01-01", 5), ("2024-01-03", 1))

        merged = merge_chart_points([a, b])

        assert [(p.date, p.value) for p in merged] == [
            ("2024-01-01", 15),
            ("2024-01-02", 20),
            ("2024-01-03", 1),
        ]

    def test_single_series_is_returned_unchanged(self):
        only = _points(("2024-01-01", None), (None, 3))
        assert merge_chart_points([only]) == only

    def test_absent_values_count_as_zero_when_merging(self):
        merged = merge_chart_points([_points(("d", None)), _points(("d", 2))])
        assert merged == [ChartPoint("d", 2.0)]

    def test_points_without_date_are_dropped_when_merging(self):
        merged = merge_chart_points([_points((None, 9), ("d", 1)), _points(("d", 1))])
        assert merged == [ChartPoint("d", 2.0)]

    def test_no_series(self):
        assert merge_chart_points([]) == []


class TestAggregateTotal:
    def test_sums_counters_and_takes_latest_timestamp(self):
        earlier = datetime(2024, 3, 15, 11, 0, tzinfo=timezone.utc)
        later = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
        a = DashboardData(
            mrr=100,
            mrr_change_24h=5,
            active_subscriptions=10,
            active_trials=2,
            new_customers_today=1,
            trial_prediction=1,
            trial_conversion_rate=40.0,
            last_updated=earlier,
        )
        b = DashboardData(
            mrr=250,
            mrr_change_24h=-2,
            active_subscriptions=30,
            active_trials=4,
            new_subscriptions_today=3,
            trial_prediction=2,
            trial_conversion_rate=60.0,
            last_updated=later,
        )

        total = aggregate_total([a, b], "EUR")

        assert total.mrr == 350
        assert total.mrr_change_24h == 3
        assert total.active_subscriptions == 40
        assert total.active_trials == 6
        assert total.new_customers_today == 1
        assert total.new_subscriptions_today == 3
        assert total.trial_prediction == 3
        assert total.trial_conversion_rate == 0.0
        assert total.currency == "EUR"
        assert total.last_updated == later

    def test_no_snapshots_is_none_not_zeroes(self):
        assert aggregate_total([], "USD") is None

    def test_charts_merge_across_projects(self):
        a = DashboardData(charts=ChartSet(mrr_trend=_points(("d1", 1))))
        b = DashboardData(charts=None)
        c = DashboardData(charts=ChartSet(mrr_trend=_points(("d1", 2), ("d2", 4))))

        total = aggregate_total([a, b, c], "USD")

        assert total.charts.mrr_trend == _points(("d1", 3.0), ("d2", 4.0))
        assert total.charts.revenue_trend == []

    def test_no_charts_anywhere(self):
        assert aggregate_total([DashboardData()], "USD").charts is None
        assert merge_chart_sets([None, None]) is None


class TestReportCharts:
    def test_single_set_passes_through(self):
        only = ReportChartSet(mrr_trend=_points(("d", 1)))
        assert merge_report_charts([only]) is only

    def test_movement_merges_for_churn(self):
        ios = ReportChartSet(subscriber_growth=_points(("d1", 60)), actives_movement=_points(("d1", -3)))
        android = ReportChartSet(subscriber_growth=_points(("d1", 40)), actives_movement=_points(("d1", -2)))

        merged = merge_report_charts([ios, android])

        assert merged.subscriber_growth == _points(("d1", 100.0))
        assert merged.estimated_churn_rate == 5.0
