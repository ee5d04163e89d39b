"""Ad-attribution (AppsFlyer) API client.

WHAT:
    Pulls marketing data for one project, possibly spanning several app ids
    (one per platform):
    - Pull API CSV (partners_by_date_report v5) -> CampaignDayRow
    - Cohort API JSON (user_acquisition cohorts) -> CohortRow
    - Connection test returning a closed AttributionTestResult

WHY:
    Marketing data only enriches reports, so every failure here is absorbed
    and logged. The connection test is interactive and returns a specific
    diagnostic instead of raising.

REFERENCES:
    - https://dev.appsflyer.com/hc/reference/partners_by_date_report
    - https://dev.appsflyer.com/hc/reference/cohort-api
    - subbuddy/services/wire_decoder.py (CSV and cohort parsing)
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import date, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import httpx

from subbuddy.deps import get_settings
from subbuddy.models import CampaignDayRow, CohortRow, MarketingReport
from subbuddy.services.subscription_client import Clock, chart_date, utc_now
from subbuddy.services.wire_decoder import parse_campaign_csv, parse_cohort_response
from subbuddy.telemetry import LogFn, app_log

CATEGORY = "AppsFlyer"

TEST_WINDOW_DAYS = 3
ERROR_BODY_PREFIX = 200
TEST_BODY_PREFIX = 80

COHORT_GROUPINGS = ["media_source", "campaign"]
COHORT_KPIS = ["users", "cost", "revenue", "roi", "retention"]

_BEARER_PREFIX = re.compile(r"^\s*bearer\s+", re.IGNORECASE)


def normalize_token(token: Optional[str]) -> str:
    """Strip whitespace and an accidental leading "Bearer " (any case)."""
    if not token:
        return ""
    return _BEARER_PREFIX.sub("", token.strip(), count=1).strip()


# =============================================================================
# CONNECTION TEST RESULT
# =============================================================================

class AttributionTestStatus(str, Enum):
    success = "success"
    auth_error = "auth_error"
    not_found = "not_found"
    network_error = "network_error"
    unknown_error = "unknown_error"


@dataclass(frozen=True)
class AttributionTestResult:
    """Outcome of `AttributionClient.test_connection` (never raised)."""

    status: AttributionTestStatus
    row_count: int = 0
    app_id: Optional[str] = None
    status_code: Optional[int] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is AttributionTestStatus.success

    @property
    def description(self) -> str:
        if self.status is AttributionTestStatus.success:
            if self.row_count == 0:
                return "Connected — no data in last 3 days"
            return f"Connected — {self.row_count} rows found"
        if self.status is AttributionTestStatus.auth_error:
            return "Auth failed — use V2 API token from AppsFlyer > Settings > API Access"
        if self.status is AttributionTestStatus.not_found:
            return f"App ID not found: {self.app_id}"
        if self.status is AttributionTestStatus.network_error:
            return f"Network error: {self.detail}"
        return f"Error {self.status_code}: {self.detail}"


# =============================================================================
# CLIENT
# =============================================================================

class AttributionClient:
    """Client for the attribution Pull and Cohort APIs.

    Usage:
        client = AttributionClient()
        report = await client.fetch_marketing_data(
            ["id1234567890", "com.myapp.android"], token, "USD", start, end
        )
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utc_now,
        log: LogFn = app_log,
    ):
        if base_url is None or timeout is None:
            settings = get_settings()
            base_url = base_url or settings.APPSFLYER_BASE_URL
            timeout = timeout if timeout is not None else settings.ATTRIBUTION_TIMEOUT_SECONDS
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._log = log

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    @staticmethod
    def _pull_path(app_id: str) -> str:
        return f"/api/agg-data/export/app/{app_id}/partners_by_date_report/v5"

    @staticmethod
    def _cohort_path(app_id: str) -> str:
        return f"/api/cohorts/v1/data/app/{app_id}"

    @staticmethod
    def _pull_params(currency: str, start: date, end: date) -> Dict[str, str]:
        return {
            "from": chart_date(start),
            "to": chart_date(end),
            "currency": currency,
            "timezone": "UTC",
        }

    async def _get_csv(self, app_id: str, token: str, currency: str, start: date, end: date) -> httpx.Response:
        async with self._http() as client:
            return await client.get(
                self._pull_path(app_id),
                params=self._pull_params(currency, start, end),
                headers={"Authorization": f"Bearer {token}"},
            )

    # =========================================================================
    # CONNECTION TEST
    # =========================================================================

    async def test_connection(self, app_id: str, token: str) -> AttributionTestResult:
        """Pull the last 3 days of CSV for one app id and classify the outcome."""
        token = normalize_token(token)
        app_id = (app_id or "").strip()
        if not token:
            return AttributionTestResult(AttributionTestStatus.auth_error)
        if not app_id:
            return AttributionTestResult(AttributionTestStatus.not_found, app_id=app_id)

        today = self._clock().astimezone(timezone.utc).date()
        start = today - timedelta(days=TEST_WINDOW_DAYS)
        try:
            response = await self._get_csv(app_id, token, "USD", start, today)
        except httpx.RequestError as e:
            self._log(f"Connection test network error: {e}", "error", CATEGORY)
            return AttributionTestResult(AttributionTestStatus.network_error, detail=str(e))

        status = response.status_code
        self._log(f"Connection test response: {status}", "info", CATEGORY)
        if status == 200:
            rows = parse_campaign_csv(response.text, log=self._log)
            return AttributionTestResult(AttributionTestStatus.success, row_count=len(rows))
        if status in (401, 403):
            return AttributionTestResult(AttributionTestStatus.auth_error, status_code=status)
        if status == 404:
            return AttributionTestResult(AttributionTestStatus.not_found, app_id=app_id, status_code=status)
        return AttributionTestResult(
            AttributionTestStatus.unknown_error,
            status_code=status,
            detail=response.text[:TEST_BODY_PREFIX],
        )

    # =========================================================================
    # MARKETING DATA
    # =========================================================================

    async def fetch_marketing_data(
        self,
        app_ids: Sequence[str],
        token: str,
        currency: str,
        start: date,
        end: date,
    ) -> MarketingReport:
        """Fetch CSV rows and cohorts for every app id concurrently and merge them.

        An empty app-id list returns an empty report without any network call.
        """
        app_ids = [a.strip() for a in app_ids if a and a.strip()]
        if not app_ids:
            return MarketingReport(currency=currency)

        token = normalize_token(token)
        if not token:
            self._log("Attribution token missing, skipping marketing data", "warning", CATEGORY)
            return MarketingReport(currency=currency)

        reports = await asyncio.gather(
            *(self._fetch_app(app_id, token, currency, start, end) for app_id in app_ids)
        )
        merged = MarketingReport.merge(reports, currency=currency)
        self._log(
            f"AF data fetched for {len(app_ids)} app(s) — {len(merged.campaign_rows)} campaign rows, "
            f"{len(merged.cohorts)} cohorts",
            "info",
            CATEGORY,
        )
        return merged

    async def _fetch_app(
        self, app_id: str, token: str, currency: str, start: date, end: date
    ) -> MarketingReport:
        rows, cohorts = await asyncio.gather(
            self.fetch_campaign_rows(app_id, token, currency, start, end),
            self.fetch_cohorts(app_id, token, currency, start, end),
        )
        return MarketingReport(campaign_rows=rows, cohorts=cohorts, currency=currency)

    async def fetch_campaign_rows(
        self, app_id: str, token: str, currency: str, start: date, end: date
    ) -> List[CampaignDayRow]:
        try:
            response = await self._get_csv(app_id, token, currency, start, end)
        except httpx.RequestError as e:
            self._log(f"Pull API network error: {e}", "error", CATEGORY)
            return []

        self._log(f"Pull API response: {response.status_code}", "debug", CATEGORY)
        if response.status_code != 200:
            self._log(
                f"Pull API error {response.status_code}: {response.text[:ERROR_BODY_PREFIX]}",
                "error",
                CATEGORY,
            )
            return []
        return parse_campaign_csv(response.text, log=self._log)

    @staticmethod
    def cohort_request_body(currency: str, start: date, end: date) -> Dict[str, Any]:
        return {
            "cohort_type": "user_acquisition",
            "min_cohort_size": 1,
            "preferred_timezone": "UTC",
            "from": chart_date(start),
            "to": chart_date(end),
            "groupings": COHORT_GROUPINGS,
            "kpis": COHORT_KPIS,
            "granularity": "cumulative",
            "partial_data": True,
            "currency": currency,
        }

    async def fetch_cohorts(
        self, app_id: str, token: str, currency: str, start: date, end: date
    ) -> List[CohortRow]:
        """POST a cohort query; 404 means the plan lacks cohorts and is only a warning."""
        try:
            async with self._http() as client:
                response = await client.post(
                    self._cohort_path(app_id),
                    json=self.cohort_request_body(currency, start, end),
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.RequestError as e:
            self._log(f"Cohort API network error: {e}", "error", CATEGORY)
            return []

        self._log(f"Cohort API response: {response.status_code}", "debug", CATEGORY)
        if response.status_code == 404:
            self._log(f"Cohort API not available for app {app_id} (404)", "warning", CATEGORY)
            return []
        if response.status_code != 200:
            self._log(
                f"Cohort API error {response.status_code}: {response.text[:ERROR_BODY_PREFIX]}",
                "error",
                CATEGORY,
            )
            return []

        try:
            payload = response.json()
        except ValueError:
            self._log("Cohort response is not valid JSON", "error", CATEGORY)
            return []
        return parse_cohort_response(payload, log=self._log)
