"""Tests for the subscription-analytics client.

WHAT:
    Snapshot assembly, same-day fallbacks, error mapping and chart isolation,
    against httpx.MockTransport.

REFERENCES:
    subbuddy/services/subscription_client.py
"""

from datetime import date

import httpx
import pytest

from conftest import FIXED_NOW, RecordingTransport, RevenueCatStub, chart_payload, overview_payload
from subbuddy.exceptions import (
    DecodeError,
    ForbiddenError,
    NetworkError,
    NotConfiguredError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    UnauthorizedError,
)
from subbuddy.models import ChartName
from subbuddy.services.subscription_client import SubscriptionClient, round_half_up

BASE_URL = "https://api.revenuecat.com/v2"


def _client(handler, clock, log):
    transport = RecordingTransport(handler)
    client = SubscriptionClient(base_url=BASE_URL, timeout=5, transport=transport, clock=clock, log=log)
    return client, transport


def _is_today(request: httpx.Request) -> bool:
    return request.url.params["start_date"] == request.url.params["end_date"]


@pytest.mark.asyncio
async def test_fetch_dashboard_data_builds_full_snapshot(clock, log):
    def trial_conversion(request):
        if _is_today(request):
            return chart_payload([{"date": "2024-03-15", "value": 2}])
        return chart_payload([[40], [None], [60]], start_date="2024-03-08")

    stub = RevenueCatStub(
        overviews={
            "proj1": overview_payload(
                mrr=1234.5,
                actives=100,
                trials=20,
                new_customers=3,
                extra_metrics=[{"id": "revenue", "value": 999}],
            )
        },
        charts={
            ("proj1", "mrr"): chart_payload(
                [
                    {"date": "2024-03-13", "value": 100},
                    {"date": "2024-03-14", "value": 110},
                    {"date": "2024-03-15", "value": 125.5},
                ]
            ),
            ("proj1", "actives_new"): chart_payload([], summary=[{"operation": "total", "value": 4}]),
            ("proj1", "trial_conversion"): trial_conversion,
        },
    )
    client, transport = _client(stub, clock, log)

    data = await client.fetch_dashboard_data("sk_live", "proj1", "EUR")

    assert data.mrr == 1234.5
    assert data.active_subscriptions == 100
    assert data.active_trials == 20
    assert data.new_customers_today == 3
    assert data.new_subscriptions_today == 4
    assert data.new_today_best == 4
    assert data.trials_converting_today == 2
    assert data.mrr_change_24h == pytest.approx(15.5)
    assert data.trial_conversion_rate == pytest.approx(50.0)
    assert data.trial_prediction == 10
    assert data.currency == "EUR"
    assert data.last_updated == FIXED_NOW
    assert [p.date for p in data.charts.trial_conversions] == ["2024-03-08", "2024-03-09", "2024-03-10"]

    overview_request = transport.requests[0]
    assert overview_request.url.path == "/v2/projects/proj1/metrics/overview"
    assert overview_request.url.params["currency"] == "EUR"
    assert overview_request.headers["Authorization"] == "Bearer sk_live"
    # overview + 2 same-day charts + 4 dashboard series
    assert len(transport.requests) == 7


@pytest.mark.asyncio
async def test_mrr_change_is_zero_with_fewer_than_two_points(clock, log):
    stub = RevenueCatStub(
        overviews={"proj1": overview_payload(mrr=10)},
        charts={("proj1", "mrr"): chart_payload([{"date": "2024-03-15", "value": 10}])},
    )
    client, _ = _client(stub, clock, log)

    data = await client.fetch_dashboard_data("sk", "proj1", "USD")

    assert data.mrr_change_24h == 0
    assert data.trial_prediction == 0
    assert data.trial_conversion_rate == 0


@pytest.mark.asyncio
async def test_today_value_prefers_last_point_then_summary_then_zero(clock, log):
    stub = RevenueCatStub(
        charts={
            ("p", "actives_new"): chart_payload(
                [{"date": "2024-03-15", "value": 7}], summary=[{"operation": "total", "value": 99}]
            ),
            ("p", "trial_conversion"): chart_payload([], summary=[{"operation": "total", "value": 3}]),
            ("p", "revenue"): chart_payload([]),
        }
    )
    client, transport = _client(stub, clock, log)

    assert await client.fetch_today_chart_value(ChartName.actives_new, "sk", "p", "USD") == 7
    assert await client.fetch_today_chart_value(ChartName.trial_conversion, "sk", "p", "USD") == 3
    assert await client.fetch_today_chart_value(ChartName.revenue, "sk", "p", "USD") == 0

    params = transport.requests[0].url.params
    assert params["start_date"] == params["end_date"] == "2024-03-15"
    assert params["resolution"] == "0"


@pytest.mark.asyncio
async def test_chart_series_window_ends_today(clock, log):
    client, transport = _client(RevenueCatStub(), clock, log)

    await client.fetch_chart_series(ChartName.mrr, "sk", "p", "USD", days=7)

    params = transport.requests[0].url.params
    assert (params["start_date"], params["end_date"]) == ("2024-03-08", "2024-03-15")


@pytest.mark.asyncio
@pytest.mark.parametrize("api_key, project_id", [("", "proj1"), ("sk", ""), ("   ", "proj1"), (None, "proj1")])
async def test_missing_credentials_raise_before_any_request(clock, log, api_key, project_id):
    client, transport = _client(RevenueCatStub(), clock, log)

    with pytest.raises(NotConfiguredError) as exc:
        await client.fetch_dashboard_data(api_key, project_id, "USD")

    assert exc.value.to_user_message() == "API key or project ID not configured"
    assert transport.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error_type",
    [
        (401, UnauthorizedError),
        (403, ForbiddenError),
        (404, NotFoundError),
        (429, RateLimitedError),
        (500, ServerError),
        (418, ServerError),
    ],
)
async def test_overview_status_mapping(clock, log, status, error_type):
    stub = RevenueCatStub(overviews={"proj1": httpx.Response(status, text="E" * 1000)})
    client, _ = _client(stub, clock, log)

    with pytest.raises(error_type):
        await client.fetch_overview("sk", "proj1", "USD")


@pytest.mark.asyncio
async def test_not_found_names_the_project(clock, log):
    client, _ = _client(RevenueCatStub(overviews={}), clock, log)

    with pytest.raises(NotFoundError) as exc:
        await client.fetch_overview("sk", "proj_missing", "USD")

    assert "proj_missing" in exc.value.to_user_message()


@pytest.mark.asyncio
async def test_server_error_body_excerpt_is_bounded(clock, log):
    stub = RevenueCatStub(overviews={"proj1": httpx.Response(502, text="x" * 1000)})
    client, _ = _client(stub, clock, log)

    with pytest.raises(ServerError) as exc:
        await client.fetch_overview("sk", "proj1", "USD")

    assert exc.value.status_code == 502
    assert len(exc.value.body) == 300
    assert exc.value.to_user_message().startswith("Server error (502): xxx")


@pytest.mark.asyncio
async def test_overview_decode_error(clock, log):
    stub = RevenueCatStub(overviews={"proj1": {"unexpected": True}})
    client, _ = _client(stub, clock, log)

    with pytest.raises(DecodeError):
        await client.fetch_overview("sk", "proj1", "USD")


@pytest.mark.asyncio
async def test_transport_failure_is_wrapped(clock, log):
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = _client(boom, clock, log)

    with pytest.raises(NetworkError) as exc:
        await client.test_connection("sk", "proj1")

    assert isinstance(exc.value.cause, httpx.ConnectError)
    assert "connection refused" in exc.value.to_user_message()


@pytest.mark.asyncio
async def test_test_connection_succeeds_on_any_parseable_body(clock, log):
    stub = RevenueCatStub(overviews={"proj1": {"anything": "goes"}})
    client, _ = _client(stub, clock, log)

    assert await client.test_connection("sk", "proj1") is True


@pytest.mark.asyncio
async def test_broken_charts_do_not_fail_the_snapshot(clock, log):
    stub = RevenueCatStub(
        overviews={"proj1": overview_payload(mrr=50, actives=5)},
        charts={
            ("proj1", "mrr"): httpx.Response(500, text="chart backend down"),
            ("proj1", "actives"): httpx.Response(200, text="<html>not json</html>"),
            ("proj1", "revenue"): {"values": {"weird": "shape"}},
        },
    )
    client, _ = _client(stub, clock, log)

    data = await client.fetch_dashboard_data("sk", "proj1", "USD")

    assert data.mrr == 50
    assert data.charts.mrr_trend == []
    assert data.charts.subscriber_growth == []
    assert data.charts.revenue_trend == []
    assert any("Chart mrr fetch failed" in m for m in log.messages("error"))


@pytest.mark.asyncio
async def test_report_charts_include_movement(clock, log):
    stub = RevenueCatStub(
        charts={("p", "actives_movement"): chart_payload([{"date": "2024-02-01", "value": -3}])}
    )
    client, transport = _client(stub, clock, log)

    charts = await client.fetch_report_charts("sk", "p", "USD", date(2024, 2, 1), date(2024, 2, 29))

    assert charts.actives_movement[0].value == -3
    assert sorted(p.rsplit("/", 1)[-1] for p in transport.paths()) == [
        "actives",
        "actives_movement",
        "mrr",
        "revenue",
        "trial_conversion",
    ]
    assert transport.requests[0].url.params["end_date"] == "2024-02-29"


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(0.5) == 1
    assert round_half_up(2.49) == 2
