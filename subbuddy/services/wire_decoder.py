"""Wire decoder for subscription-analytics and attribution payloads.

WHAT:
    Converts raw API payloads into the internal data model:
    - Overview metrics (strict, critical path): pydantic validation, DecodeError on mismatch
    - Chart responses: `values` as [{date, value}] OR [[value], ...] + start_date
    - Attribution CSV export with fuzzy header matching
    - Cohort JSON as a `data` map OR a `rows` list

WHY:
    The upstream APIs return different shapes for the same endpoint depending
    on version and plan. Secondary data (charts, CSV, cohorts) must degrade to
    empty values instead of raising, so one bad series never aborts a refresh.

REFERENCES:
    - subbuddy/services/subscription_client.py (charts, overview)
    - subbuddy/services/attribution_client.py (CSV, cohorts)
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from subbuddy.exceptions import DecodeError
from subbuddy.models import (
    FUNNEL_EVENTS,
    ORGANIC_MEDIA_SOURCE,
    CampaignDayRow,
    ChartPoint,
    ChartResponse,
    ChartSummary,
    CohortRow,
)
from subbuddy.schemas import OverviewMetricsResponse
from subbuddy.telemetry import LogFn, app_log

CATEGORY_CHARTS = "ChartData"
CATEGORY_ATTRIBUTION = "AppsFlyer"

# Epoch values above this are milliseconds, not seconds (year ~5138 in seconds)
_EPOCH_MS_THRESHOLD = 100_000_000_000


# =============================================================================
# SHARED COERCION
# =============================================================================

def _number(value: Any) -> Optional[float]:
    """Numeric JSON value (or numeric string) as float; None for anything else.

    NaN and infinities count as "anything else".
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def parse_chart_date(value: Any) -> Optional[date]:
    """Accept either a numeric epoch timestamp or an ISO-8601 date/datetime string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).date()
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc)
        return parsed.date()
    return None


# =============================================================================
# OVERVIEW (critical path)
# =============================================================================

def decode_overview(body: str) -> OverviewMetricsResponse:
    """Strictly decode the overview endpoint; raises DecodeError with a body excerpt."""
    try:
        return OverviewMetricsResponse.model_validate_json(body)
    except (ValidationError, ValueError) as e:
        raise DecodeError(body, cause=e) from e


# =============================================================================
# CHARTS
# =============================================================================

def _decode_object_values(raw: Any) -> Optional[List[ChartPoint]]:
    """Shape (a): list of {date, value} objects."""
    if not isinstance(raw, list) or not all(isinstance(item, dict) for item in raw):
        return None
    points = []
    for item in raw:
        raw_date = item.get("date")
        if isinstance(raw_date, str):
            date_key: Optional[str] = raw_date
        else:
            parsed = parse_chart_date(raw_date)
            date_key = parsed.isoformat() if parsed else None
        points.append(ChartPoint(date=date_key, value=_number(item.get("value"))))
    return points


def _decode_array_values(raw: Any, start: Optional[date]) -> Optional[List[ChartPoint]]:
    """Shape (b): list of single-element numeric lists; dates rebuilt from start_date."""
    if not isinstance(raw, list) or not all(isinstance(item, list) for item in raw):
        return None
    for row in raw:
        for cell in row:
            if cell is not None and _number(cell) is None:
                return None

    points = []
    for index, row in enumerate(raw):
        if start is not None:
            date_key = (start + timedelta(days=index)).isoformat()
        else:
            date_key = str(index)
        value = _number(row[0]) if row else None
        points.append(ChartPoint(date=date_key, value=value))
    return points


def _decode_summary(raw: Any) -> List[ChartSummary]:
    # An object-shaped summary carries nothing we use
    if not isinstance(raw, list):
        return []
    return [
        ChartSummary(operation=item.get("operation"), value=_number(item.get("value")))
        for item in raw
        if isinstance(item, dict)
    ]


def decode_chart_response(payload: Any, log: LogFn = app_log) -> ChartResponse:
    """Decode a chart payload, never raising on shape variance."""
    if not isinstance(payload, dict):
        log("Chart response is not a JSON object", "warning", CATEGORY_CHARTS)
        return ChartResponse()

    raw_values = payload.get("values", [])

    values = _decode_object_values(raw_values)
    if values is not None:
        log(f"Decoded chart values as object array: {len(values)} points", "debug", CATEGORY_CHARTS)
    else:
        start = parse_chart_date(payload.get("start_date"))
        values = _decode_array_values(raw_values, start)
        if values is not None:
            log(f"Decoded chart values as 2D array: {len(values)} points", "debug", CATEGORY_CHARTS)
        else:
            log("Could not decode chart values in any known format", "warning", CATEGORY_CHARTS)
            values = []

    return ChartResponse(
        values=values,
        summary=_decode_summary(payload.get("summary")),
        display_name=payload.get("display_name") if isinstance(payload.get("display_name"), str) else None,
        resolution=str(payload["resolution"]) if payload.get("resolution") is not None else None,
    )


# =============================================================================
# ATTRIBUTION CSV
# =============================================================================

COLUMN_CANDIDATES: Dict[str, List[str]] = {
    "date": ["date", "day"],
    "media_source": ["media source", "media_source", "partner", "pid"],
    "campaign": ["campaign", "campaign name", "campaign (c)"],
    "impressions": ["impressions"],
    "clicks": ["clicks"],
    "installs": ["installs"],
    "cost": ["cost", "total cost"],
    "revenue": ["revenue", "total revenue"],
}

UNIQUE_USERS_KEYWORD = "unique users"


def parse_csv_line(line: str) -> List[str]:
    """Split one CSV line on commas outside double quotes (no escaped-quote support)."""
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
    fields.append("".join(current))
    return fields


def _normalize_header(header: str) -> str:
    return header.strip().lower()


def match_column(headers: Sequence[str], candidates: Sequence[str]) -> Optional[int]:
    """Index of the first header matching a candidate: exact, then prefix, then substring."""
    normalized = [_normalize_header(h) for h in headers]
    wanted = [c.strip().lower() for c in candidates]
    tiers = (
        lambda header, candidate: header == candidate,
        lambda header, candidate: header.startswith(candidate),
        lambda header, candidate: candidate in header,
    )
    for matches in tiers:
        for candidate in wanted:
            for index, header in enumerate(normalized):
                if matches(header, candidate):
                    return index
    return None


def match_funnel_column(headers: Sequence[str], keywords: Sequence[str]) -> Optional[int]:
    """Index of the first header containing ALL keywords (case-insensitive)."""
    wanted = [k.lower() for k in keywords]
    for index, header in enumerate(headers):
        normalized = _normalize_header(header)
        if all(keyword in normalized for keyword in wanted):
            return index
    return None


def _to_int(text: str) -> int:
    value = _number(text.replace(",", "")) if text else None
    return int(value) if value is not None else 0


def _to_float(text: str) -> float:
    value = _number(text.replace(",", "")) if text else None
    return value if value is not None else 0.0


def resolve_csv_columns(headers: Sequence[str]) -> Dict[str, Optional[int]]:
    columns = {name: match_column(headers, candidates) for name, candidates in COLUMN_CANDIDATES.items()}
    for attr, event in FUNNEL_EVENTS:
        columns[attr] = match_funnel_column(headers, [event, UNIQUE_USERS_KEYWORD])
    return columns


def parse_campaign_csv(text: str, log: LogFn = app_log) -> List[CampaignDayRow]:
    """Parse a partners-by-date CSV export into campaign rows.

    Rows with neither a media source nor any installs are noise and dropped;
    rows with installs but no media source land in the "Organic" bucket.
    """
    lines = [line.rstrip("\r") for line in text.split("\n")]
    lines = [line for line in lines if line.strip()]
    if len(lines) < 2:
        return []

    headers = parse_csv_line(lines[0])
    columns = resolve_csv_columns(headers)
    log(f"CSV headers: {', '.join(h.strip() for h in headers)}", "debug", CATEGORY_ATTRIBUTION)

    rows: List[CampaignDayRow] = []
    for line in lines[1:]:
        cells = parse_csv_line(line)
        if len(cells) <= 1:
            continue

        def col(name: str) -> str:
            index = columns.get(name)
            if index is None or index >= len(cells):
                return ""
            return cells[index].strip()

        media_source = col("media_source")
        installs = _to_int(col("installs"))
        if not media_source and installs == 0:
            continue

        funnel = {attr: _to_int(col(attr)) for attr, _event in FUNNEL_EVENTS}
        rows.append(
            CampaignDayRow(
                date=col("date"),
                media_source=media_source or ORGANIC_MEDIA_SOURCE,
                campaign=col("campaign"),
                impressions=_to_int(col("impressions")),
                clicks=_to_int(col("clicks")),
                installs=installs,
                cost=_to_float(col("cost")),
                revenue=_to_float(col("revenue")),
                **funnel,
            )
        )

    log(f"Parsed {len(rows)} campaign rows from CSV", "info", CATEGORY_ATTRIBUTION)
    return rows


# =============================================================================
# COHORT JSON
# =============================================================================

def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _retention(retention: Any, day: int) -> Optional[float]:
    if not isinstance(retention, dict):
        return None
    for key in (str(day), f"day_{day}"):
        value = _number(retention.get(key))
        if value is not None:
            return value
    return None


def _cohort_fields(record: Dict[str, Any]) -> Tuple[int, float, float, float]:
    return (
        int(_number(record.get("users")) or 0),
        _number(record.get("cost")) or 0.0,
        _number(record.get("revenue")) or 0.0,
        _number(record.get("roi")) or 0.0,
    )


def parse_cohort_response(payload: Any, log: LogFn = app_log) -> List[CohortRow]:
    """Decode either cohort shape into CohortRow; unknown shapes yield []."""
    if not isinstance(payload, dict):
        log("Cohort response is not a JSON object", "warning", CATEGORY_ATTRIBUTION)
        return []

    data = payload.get("data")
    if isinstance(data, dict):
        cohorts = []
        for key, record in data.items():
            if not isinstance(record, dict):
                continue
            users, cost, revenue, roi = _cohort_fields(record)
            retention = record.get("retention")
            cohorts.append(
                CohortRow(
                    campaign=_text(record.get("campaign_name")) or _text(record.get("campaign")) or str(key),
                    media_source=_text(record.get("media_source")) or "",
                    users=users,
                    cost=cost,
                    revenue=revenue,
                    roi=roi,
                    retention_d1=_retention(retention, 1),
                    retention_d7=_retention(retention, 7),
                    retention_d30=_retention(retention, 30),
                )
            )
        return cohorts

    rows = payload.get("rows")
    if isinstance(rows, list):
        cohorts = []
        for record in rows:
            if not isinstance(record, dict):
                continue
            users, cost, revenue, roi = _cohort_fields(record)
            cohorts.append(
                CohortRow(
                    campaign=_text(record.get("campaign_name")) or _text(record.get("campaign")) or "",
                    media_source=_text(record.get("media_source")) or "",
                    users=users,
                    cost=cost,
                    revenue=revenue,
                    roi=roi,
                    retention_d1=_number(record.get("day_1_retention")),
                    retention_d7=_number(record.get("day_7_retention")),
                    retention_d30=_number(record.get("day_30_retention")),
                )
            )
        return cohorts

    log("Could not parse cohort response in any known format", "warning", CATEGORY_ATTRIBUTION)
    return []
