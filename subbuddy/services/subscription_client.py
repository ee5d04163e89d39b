"""Subscription-analytics (RevenueCat v2) API client.

WHAT:
    Fetches overview metrics and chart series for one project and assembles
    the per-project DashboardData snapshot:
    - Overview: GET /projects/{id}/metrics/overview (critical path, typed errors)
    - Charts: GET /projects/{id}/charts/{name} (secondary path, degrade to empty)
    - Snapshot: overview -> same-day chart values -> 7-day chart set -> derived fields

WHY:
    The overview endpoint does not expose same-day counts or trends, so the
    snapshot needs several chart calls. Those run concurrently, and a broken
    chart must never fail the snapshot.

REFERENCES:
    - RevenueCat API v2: https://www.revenuecat.com/docs/api-v2
    - subbuddy/services/wire_decoder.py (payload shapes)
    - subbuddy/services/refresh_scheduler.py (caller)
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional

import httpx

from subbuddy.deps import get_settings
from subbuddy.exceptions import (
    DecodeError,
    ForbiddenError,
    NetworkError,
    NotConfiguredError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    SubscriptionAPIError,
    UnauthorizedError,
)
from subbuddy.models import (
    ChartName,
    ChartPoint,
    ChartResponse,
    ChartSet,
    DashboardData,
    MetricID,
    ReportChartSet,
    present_values,
)
from subbuddy.services.wire_decoder import decode_chart_response, decode_overview
from subbuddy.telemetry import LogFn, app_log

CATEGORY = "RevenueCat"

DASHBOARD_CHART_DAYS = 7

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def chart_date(value: date) -> str:
    """Chart query dates are YYYY-MM-DD in UTC."""
    return value.strftime("%Y-%m-%d")


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class SubscriptionClient:
    """Client for the subscription-analytics API.

    WHAT: One instance serves every project; credentials are passed per call
    WHY: The scheduler resolves a different API key per project each cycle

    Usage:
        client = SubscriptionClient()
        snapshot = await client.fetch_dashboard_data(api_key, "proj1a2b", "USD")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utc_now,
        log: LogFn = app_log,
    ):
        """Initialize the client.

        Args:
            base_url: API root including /v2 (default: settings.REVENUECAT_BASE_URL)
            timeout: Per-request timeout in seconds (default: settings value)
            transport: httpx transport override (tests inject httpx.MockTransport)
            clock: Returns "now"; the UTC date of it is "today" for chart windows
            log: Logging capability
        """
        if base_url is None or timeout is None:
            settings = get_settings()
            base_url = base_url or settings.REVENUECAT_BASE_URL
            timeout = timeout if timeout is not None else settings.SUBSCRIPTION_TIMEOUT_SECONDS
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._log = log

    # =========================================================================
    # NETWORK LAYER
    # =========================================================================

    @staticmethod
    def _require_credentials(api_key: Optional[str], project_id: Optional[str]) -> None:
        if not api_key or not api_key.strip() or not project_id or not project_id.strip():
            raise NotConfiguredError()

    def _today(self) -> date:
        return self._clock().astimezone(timezone.utc).date()

    async def _get(
        self,
        path: str,
        api_key: str,
        params: Dict[str, Any],
        project_id: Optional[str] = None,
    ) -> httpx.Response:
        """GET with bearer auth, mapping transport and status failures onto the error taxonomy.

        Raises:
            NetworkError: transport-level failure (including timeouts)
            UnauthorizedError / ForbiddenError / NotFoundError / RateLimitedError / ServerError
        """
        self._log(f"GET {path}", "debug", CATEGORY)
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(path, params=params, headers=headers)
        except httpx.RequestError as e:
            self._log(f"Network error: {e}", "error", CATEGORY)
            raise NetworkError(e) from e

        self._log(f"HTTP {response.status_code} for {path}", "debug", CATEGORY)
        self._raise_for_status(response, project_id)
        return response

    async def _get_json(
        self,
        path: str,
        api_key: str,
        params: Dict[str, Any],
        project_id: Optional[str] = None,
    ) -> Any:
        """Like `_get`, plus DecodeError when the body is not JSON."""
        response = await self._get(path, api_key, params, project_id=project_id)
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(response.text, cause=e) from e

    def _raise_for_status(self, response: httpx.Response, project_id: Optional[str]) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        if status == 401:
            raise UnauthorizedError()
        if status == 403:
            raise ForbiddenError()
        if status == 404:
            raise NotFoundError(project_id)
        if status == 429:
            raise RateLimitedError()
        self._log(f"Server error {status}: {response.text[:300]}", "error", CATEGORY)
        raise ServerError(status, response.text)

    # =========================================================================
    # OVERVIEW (critical path)
    # =========================================================================

    async def test_connection(self, api_key: str, project_id: str) -> bool:
        """Validate credentials with one overview call; raises on any failure."""
        self._require_credentials(api_key, project_id)
        await self._get_json(
            f"/projects/{project_id}/metrics/overview", api_key, {}, project_id=project_id
        )
        self._log(f"Connection test passed for project {project_id}", "info", CATEGORY)
        return True

    async def fetch_overview(self, api_key: str, project_id: str, currency: str) -> DashboardData:
        """Fetch overview metrics mapped into a fresh snapshot (charts not loaded).

        Unknown metric ids are ignored; a body that doesn't match the overview
        shape raises DecodeError with an excerpt.
        """
        self._require_credentials(api_key, project_id)
        response = await self._get(
            f"/projects/{project_id}/metrics/overview",
            api_key,
            {"currency": currency},
            project_id=project_id,
        )
        overview = decode_overview(response.text)
        data = DashboardData(currency=currency)
        for metric in overview.metrics:
            value = metric.value or 0.0
            if metric.id == MetricID.mrr.value:
                data.mrr = value
            elif metric.id == MetricID.active_subscriptions.value:
                data.active_subscriptions = max(int(value), 0)
            elif metric.id == MetricID.active_trials.value:
                data.active_trials = max(int(value), 0)
            elif metric.id == MetricID.new_customers.value:
                data.new_customers_today = max(int(value), 0)
        return data

    # =========================================================================
    # CHARTS (secondary path)
    # =========================================================================

    async def _fetch_chart(
        self,
        chart: ChartName,
        api_key: str,
        project_id: str,
        currency: str,
        start: date,
        end: date,
    ) -> ChartResponse:
        """Fetch and decode one chart; any failure degrades to an empty response."""
        params = {
            "start_date": chart_date(start),
            "end_date": chart_date(end),
            "currency": currency,
            "resolution": 0,
        }
        try:
            payload = await self._get_json(
                f"/projects/{project_id}/charts/{chart.value}", api_key, params, project_id=project_id
            )
        except SubscriptionAPIError as e:
            self._log(f"Chart {chart.value} fetch failed: {e.to_user_message()}", "error", CATEGORY)
            return ChartResponse()
        return decode_chart_response(payload, log=self._log)

    async def fetch_today_chart_value(
        self, chart: ChartName, api_key: str, project_id: str, currency: str
    ) -> float:
        """Same-day value of a chart: last point, else the "total" summary, else 0."""
        self._require_credentials(api_key, project_id)
        today = self._today()
        response = await self._fetch_chart(chart, api_key, project_id, currency, today, today)

        if response.values and response.values[-1].value is not None:
            return response.values[-1].value
        total = response.summary_total
        if total is not None and total.value is not None:
            return total.value
        return 0.0

    async def fetch_chart_series_for_range(
        self,
        chart: ChartName,
        api_key: str,
        project_id: str,
        currency: str,
        start: date,
        end: date,
    ) -> List[ChartPoint]:
        self._require_credentials(api_key, project_id)
        response = await self._fetch_chart(chart, api_key, project_id, currency, start, end)
        self._log(
            f"Chart range {chart.value}: {len(response.values)} points "
            f"({chart_date(start)}..{chart_date(end)})",
            "info",
            CATEGORY,
        )
        return response.values

    async def fetch_chart_series(
        self,
        chart: ChartName,
        api_key: str,
        project_id: str,
        currency: str,
        days: int = DASHBOARD_CHART_DAYS,
    ) -> List[ChartPoint]:
        """Series for the window [today - days, today]."""
        today = self._today()
        return await self.fetch_chart_series_for_range(
            chart, api_key, project_id, currency, today - timedelta(days=days), today
        )

    async def fetch_all_charts(
        self, api_key: str, project_id: str, currency: str, days: int = DASHBOARD_CHART_DAYS
    ) -> ChartSet:
        """Fetch the four dashboard series concurrently."""
        self._require_credentials(api_key, project_id)
        mrr, actives, revenue, trials = await asyncio.gather(
            self.fetch_chart_series(ChartName.mrr, api_key, project_id, currency, days),
            self.fetch_chart_series(ChartName.actives, api_key, project_id, currency, days),
            self.fetch_chart_series(ChartName.revenue, api_key, project_id, currency, days),
            self.fetch_chart_series(ChartName.trial_conversion, api_key, project_id, currency, days),
        )
        self._log(
            f"Charts loaded — MRR: {len(mrr)}pts, Subs: {len(actives)}pts, "
            f"Revenue: {len(revenue)}pts, Trials: {len(trials)}pts",
            "info",
            CATEGORY,
        )
        return ChartSet(
            mrr_trend=mrr,
            subscriber_growth=actives,
            revenue_trend=revenue,
            trial_conversions=trials,
        )

    async def fetch_report_charts(
        self, api_key: str, project_id: str, currency: str, start: date, end: date
    ) -> ReportChartSet:
        """Fetch the four dashboard series plus subscriber movement for a report window."""
        self._require_credentials(api_key, project_id)
        mrr, actives, revenue, trials, movement = await asyncio.gather(
            *(
                self.fetch_chart_series_for_range(chart, api_key, project_id, currency, start, end)
                for chart in (
                    ChartName.mrr,
                    ChartName.actives,
                    ChartName.revenue,
                    ChartName.trial_conversion,
                    ChartName.actives_movement,
                )
            )
        )
        return ReportChartSet(
            mrr_trend=mrr,
            subscriber_growth=actives,
            revenue_trend=revenue,
            trial_conversions=trials,
            actives_movement=movement,
        )

    # =========================================================================
    # SNAPSHOT
    # =========================================================================

    async def fetch_dashboard_data(self, api_key: str, project_id: str, currency: str) -> DashboardData:
        """Build the full per-project snapshot.

        Overview errors propagate; chart errors only empty the affected series.
        """
        self._require_credentials(api_key, project_id)
        self._log(f"Fetching dashboard data for project {project_id} ({currency})", "info", CATEGORY)

        data = await self.fetch_overview(api_key, project_id, currency)

        new_subs, converting = await asyncio.gather(
            self.fetch_today_chart_value(ChartName.actives_new, api_key, project_id, currency),
            self.fetch_today_chart_value(ChartName.trial_conversion, api_key, project_id, currency),
        )
        data.new_subscriptions_today = max(int(new_subs), 0)
        data.trials_converting_today = max(int(converting), 0)

        charts = await self.fetch_all_charts(api_key, project_id, currency)
        data.charts = charts

        if len(charts.mrr_trend) >= 2:
            latest = charts.mrr_trend[-1].value or 0.0
            previous = charts.mrr_trend[-2].value or 0.0
            data.mrr_change_24h = latest - previous
            self._log(
                f"MRR 24h change: {data.mrr_change_24h} (latest: {latest}, previous: {previous})",
                "info",
                CATEGORY,
            )

        rates = present_values(charts.trial_conversions)
        if rates:
            mean_rate = sum(rates) / len(rates)
            data.trial_conversion_rate = mean_rate
            data.trial_prediction = max(round_half_up(data.active_trials * mean_rate / 100), 0)

        data.last_updated = self._clock()
        self._log(
            f"Dashboard data fetched — MRR: {data.mrr}, subs: {data.active_subscriptions}",
            "info",
            CATEGORY,
        )
        return data
