"""Tests for the attribution client: token handling, connection test, multi-app fan-out."""

import json
from datetime import date

import httpx
import pytest

from conftest import RecordingTransport
from subbuddy.services.attribution_client import (
    AttributionClient,
    AttributionTestStatus,
    normalize_token,
)

BASE_URL = "https://hq1.appsflyer.com"

IOS_CSV = (
    "Date,Media Source (pid),Campaign (c),Installs,Total Cost,Total Revenue,af_start_trial (Unique users)\n"
    "2024-03-01,googleadwords_int,Brand,100,50.0,20.0,10\n"
    "2024-03-02,googleadwords_int,Brand,50,25.0,10.0,4\n"
)
ANDROID_CSV = (
    "Date,Media Source (pid),Campaign (c),Installs,Total Cost,Total Revenue\n"
    "2024-03-01,Facebook Ads,Retarget,40,0,0\n"
)
COHORTS = {"rows": [{"campaign_name": "Brand", "media_source": "googleadwords_int", "users": 90}]}


def _client(handler, clock, log):
    transport = RecordingTransport(handler)
    return AttributionClient(base_url=BASE_URL, timeout=5, transport=transport, clock=clock, log=log), transport


@pytest.mark.parametrize(
    "raw",
    ["Bearer abc123", "abc123", "bearer abc123", "  BEARER   abc123 ", "abc123\n"],
)
def test_normalize_token(raw):
    assert normalize_token(raw) == "abc123"


def test_normalize_token_empty():
    assert normalize_token(None) == ""
    assert normalize_token("   ") == ""


@pytest.mark.asyncio
async def test_bearer_prefix_is_not_doubled_in_header(clock, log):
    client, transport = _client(lambda request: httpx.Response(200, text=""), clock, log)

    await client.fetch_marketing_data(["id1"], "Bearer abc123", "USD", date(2024, 3, 1), date(2024, 3, 7))

    assert {r.headers["Authorization"] for r in transport.requests} == {"Bearer abc123"}


@pytest.mark.asyncio
async def test_empty_app_ids_short_circuit(clock, log):
    client, transport = _client(lambda request: httpx.Response(500), clock, log)

    report = await client.fetch_marketing_data([], "tok", "GBP", date(2024, 3, 1), date(2024, 3, 7))

    assert report.is_empty
    assert report.currency == "GBP"
    assert transport.requests == []


@pytest.mark.asyncio
async def test_multi_app_fan_out_merges_rows_and_cohorts(clock, log):
    def handler(request):
        if request.method == "POST":
            if "id_ios" in request.url.path:
                return httpx.Response(200, json=COHORTS)
            return httpx.Response(404, text="cohorts not on plan")
        if "id_ios" in request.url.path:
            return httpx.Response(200, text=IOS_CSV)
        return httpx.Response(200, text=ANDROID_CSV)

    client, transport = _client(handler, clock, log)

    report = await client.fetch_marketing_data(
        ["id_ios", "com.app.android"], "tok", "USD", date(2024, 3, 1), date(2024, 3, 7)
    )

    assert len(report.campaign_rows) == 3
    assert len(report.cohorts) == 1
    assert report.total_installs == 190
    assert report.total_cost == pytest.approx(75.0)
    assert report.funnel_totals["trials_started"] == 14
    assert [c.display_name for c in report.top_campaigns()] == [
        "googleadwords_int — Brand",
        "Facebook Ads — Retarget",
    ]
    assert len(transport.requests) == 4
    assert any("404" in m for m in log.messages("warning"))
    assert not any("Cohort API error" in m for m in log.messages("error"))


@pytest.mark.asyncio
async def test_pull_and_cohort_requests_are_well_formed(clock, log):
    client, transport = _client(lambda request: httpx.Response(200, text=""), clock, log)

    await client.fetch_marketing_data(["id1"], "tok", "EUR", date(2024, 3, 1), date(2024, 3, 7))

    pull = next(r for r in transport.requests if r.method == "GET")
    assert pull.url.path == "/api/agg-data/export/app/id1/partners_by_date_report/v5"
    assert dict(pull.url.params) == {"from": "2024-03-01", "to": "2024-03-07", "currency": "EUR", "timezone": "UTC"}

    cohort = next(r for r in transport.requests if r.method == "POST")
    assert cohort.url.path == "/api/cohorts/v1/data/app/id1"
    body = json.loads(cohort.content)
    assert body["cohort_type"] == "user_acquisition"
    assert body["groupings"] == ["media_source", "campaign"]
    assert body["kpis"] == ["users", "cost", "revenue", "roi", "retention"]
    assert body["granularity"] == "cumulative"
    assert (body["from"], body["to"], body["currency"]) == ("2024-03-01", "2024-03-07", "EUR")


@pytest.mark.asyncio
async def test_cohort_server_error_logs_error_and_keeps_rows(clock, log):
    def handler(request):
        if request.method == "POST":
            return httpx.Response(500, text="boom")
        return httpx.Response(200, text=IOS_CSV)

    client, _ = _client(handler, clock, log)

    report = await client.fetch_marketing_data(["id1"], "tok", "USD", date(2024, 3, 1), date(2024, 3, 7))

    assert len(report.campaign_rows) == 2
    assert report.cohorts == []
    assert any("Cohort API error 500" in m for m in log.messages("error"))


# ----------------------------------------------------------------------------
# Connection test
# ----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connection_success_counts_rows_over_three_days(clock, log):
    client, transport = _client(lambda request: httpx.Response(200, text=IOS_CSV), clock, log)

    result = await client.test_connection("id1", "Bearer tok")

    assert result.status is AttributionTestStatus.success
    assert result.row_count == 2
    assert result.description == "Connected — 2 rows found"
    params = transport.requests[0].url.params
    assert (params["from"], params["to"]) == ("2024-03-12", "2024-03-15")
    assert transport.requests[0].headers["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_connection_success_without_rows(clock, log):
    client, _ = _client(lambda request: httpx.Response(200, text="Date,Installs\n"), clock, log)

    result = await client.test_connection("id1", "tok")

    assert result.description == "Connected — no data in last 3 days"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, expected_status, description",
    [
        (401, AttributionTestStatus.auth_error, "Auth failed — use V2 API token from AppsFlyer > Settings > API Access"),
        (403, AttributionTestStatus.auth_error, "Auth failed — use V2 API token from AppsFlyer > Settings > API Access"),
        (404, AttributionTestStatus.not_found, "App ID not found: id1"),
        (500, AttributionTestStatus.unknown_error, "Error 500: " + "e" * 80),
    ],
)
async def test_connection_failures_are_classified(clock, log, status, expected_status, description):
    client, _ = _client(lambda request: httpx.Response(status, text="e" * 200), clock, log)

    result = await client.test_connection("id1", "tok")

    assert result.status is expected_status
    assert not result.ok
    assert result.description == description


@pytest.mark.asyncio
async def test_connection_network_error(clock, log):
    def boom(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client, _ = _client(boom, clock, log)

    result = await client.test_connection("id1", "tok")

    assert result.status is AttributionTestStatus.network_error
    assert result.description == "Network error: timed out"
