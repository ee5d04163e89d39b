"""Pydantic schemas for persisted settings and the overview-metrics wire payload."""

import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .models import MetricKind

AVAILABLE_CURRENCIES = ["USD", "EUR", "GBP", "AUD", "CAD", "JPY", "BRL", "KRW", "CNY", "MXN"]
REFRESH_INTERVALS = [1, 2, 5, 10, 15, 30]  # minutes
TOTAL_TAB = "total"


class ProjectColour(str, Enum):
    blue = "blue"
    green = "green"
    orange = "orange"
    purple = "purple"
    pink = "pink"
    red = "red"
    teal = "teal"
    yellow = "yellow"


class Project(BaseModel):
    """One tracked application. The core only ever reads these."""

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Stable opaque identifier, also used to scope stored credentials",
    )
    name: str = Field(description="Display name", examples=["Journal Lock"])
    project_id: str = Field(description="RevenueCat project identifier", examples=["proj1a2b3c4d"])
    colour: ProjectColour = ProjectColour.blue
    attribution_app_ids: List[str] = Field(
        default_factory=list,
        description="AppsFlyer app ids, one per platform",
        examples=[["id1234567890", "com.myapp.android"]],
    )

    @field_validator("name", "project_id")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("attribution_app_ids")
    @classmethod
    def _clean_app_ids(cls, value: List[str]) -> List[str]:
        cleaned = [v.strip() for v in value]
        return [v for v in cleaned if v]


class MetricConfig(BaseModel):
    kind: MetricKind
    enabled: bool = True


def default_metric_configs() -> List[MetricConfig]:
    return [MetricConfig(kind=kind) for kind in MetricKind]


class AppSettings(BaseModel):
    """User-editable preferences, read by the core at the start of each operation."""

    projects: List[Project] = Field(default_factory=list)
    currency: str = "USD"
    refresh_interval: int = Field(default=5, description="Minutes between automatic refreshes")
    selected_tab: str = TOTAL_TAB
    has_completed_onboarding: bool = False
    metric_configs: List[MetricConfig] = Field(default_factory=default_metric_configs)

    @model_validator(mode="before")
    @classmethod
    def _migrate_single_project(cls, data):
        """Older documents stored one project at the top level.

        The migrated project's id is derived from its RevenueCat project id so
        every load of the same legacy file yields the same id.
        """
        if isinstance(data, dict) and "projects" not in data and data.get("project_id"):
            data = dict(data)
            project_id = data.pop("project_id")
            data["projects"] = [
                {
                    "id": str(uuid.uuid5(uuid.NAMESPACE_URL, f"revenuecat:{project_id}")),
                    "name": data.get("project_name") or "My App",
                    "project_id": project_id,
                }
            ]
        return data

    @field_validator("currency")
    @classmethod
    def _check_currency(cls, value: str) -> str:
        value = value.upper()
        if value not in AVAILABLE_CURRENCIES:
            raise ValueError(f"Unsupported currency {value}; expected one of {', '.join(AVAILABLE_CURRENCIES)}")
        return value

    @field_validator("refresh_interval")
    @classmethod
    def _check_interval(cls, value: int) -> int:
        if value not in REFRESH_INTERVALS:
            raise ValueError(f"Refresh interval must be one of {REFRESH_INTERVALS} minutes")
        return value

    @property
    def enabled_metrics(self) -> List[MetricConfig]:
        return [c for c in self.metric_configs if c.enabled]

    def project(self, project_id: str) -> Optional[Project]:
        for project in self.projects:
            if project.id == project_id:
                return project
        return None


# =============================================================================
# SUBSCRIPTION API: OVERVIEW METRICS
# =============================================================================

class OverviewMetric(BaseModel):
    """One entry of GET /projects/{id}/metrics/overview."""

    id: str
    object: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    unit: Optional[str] = None
    period: Optional[str] = None
    value: Optional[float] = None
    last_updated_at: Optional[int] = None
    last_updated_at_iso8601: Optional[str] = None


class OverviewMetricsResponse(BaseModel):
    object: Optional[str] = None
    metrics: List[OverviewMetric]
