"""Refresh scheduler: concurrent per-project snapshot fetches on a timer.

WHAT:
    - refresh(): one task per configured project, results upserted as each finishes
    - refresh_project(): same semantics for a single project, queued behind any in-flight run
    - start_timer()/restart_timer()/stop_timer(): periodic refresh as an asyncio task

WHY:
    Projects are independent. One project's bad key or outage must only
    produce an error entry for that project while the others keep updating.

CONCURRENCY:
    The snapshot and error maps are written here only, one key per completed
    task. Overlapping refresh() calls join the in-flight run instead of
    starting a second fan-out against the same projects.

REFERENCES:
    - subbuddy/services/subscription_client.py (fetch_dashboard_data)
    - subbuddy/services/credential_store.py (CredentialResolver)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from subbuddy.exceptions import NotConfiguredError, SubBuddyError
from subbuddy.models import DashboardData
from subbuddy.schemas import AppSettings, Project
from subbuddy.services.credential_store import CredentialResolver
from subbuddy.services.subscription_client import SubscriptionClient
from subbuddy.telemetry import LogFn, app_log, capture_exception

CATEGORY = "Scheduler"

NO_PROJECTS_MESSAGE = "No projects configured"

Outcome = Union[DashboardData, Exception]
SettingsProvider = Callable[[], AppSettings]
Sleep = Callable[[float], Awaitable[None]]


class RefreshState(str, Enum):
    idle = "idle"
    refreshing = "refreshing"


@dataclass
class RefreshResult:
    """Summary of one refresh run."""

    refreshed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed


class RefreshScheduler:
    """Owns the per-project snapshot and error maps.

    Usage:
        scheduler = RefreshScheduler(client, resolver, settings_store.load)
        await scheduler.refresh()
        scheduler.start_timer()
    """

    def __init__(
        self,
        client: SubscriptionClient,
        credentials: CredentialResolver,
        settings_provider: SettingsProvider,
        log: LogFn = app_log,
        sleep: Sleep = asyncio.sleep,
    ):
        self.client = client
        self.credentials = credentials
        self._settings_provider = settings_provider
        self._log = log
        self._sleep = sleep

        self._snapshots: Dict[str, DashboardData] = {}
        self._errors: Dict[str, str] = {}
        self.last_error: Optional[str] = None
        self.state = RefreshState.idle

        self._in_flight: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self.interval_minutes: Optional[int] = None

    # =========================================================================
    # PUBLISHED STATE
    # =========================================================================

    @property
    def snapshots(self) -> Dict[str, DashboardData]:
        return dict(self._snapshots)

    @property
    def errors(self) -> Dict[str, str]:
        return dict(self._errors)

    @property
    def is_refreshing(self) -> bool:
        return self.state is RefreshState.refreshing

    def forget_project(self, project_id: str) -> None:
        self._snapshots.pop(project_id, None)
        self._errors.pop(project_id, None)

    # =========================================================================
    # REFRESH
    # =========================================================================

    async def refresh(self) -> RefreshResult:
        """Refresh every configured project; never raises for per-project failures."""
        if self._in_flight is not None and not self._in_flight.done():
            self._log("Refresh already in progress, joining it", "debug", CATEGORY)
            return await asyncio.shield(self._in_flight)

        self._in_flight = asyncio.ensure_future(self._run())
        return await asyncio.shield(self._in_flight)

    async def _run(self) -> RefreshResult:
        settings = self._settings_provider()
        projects = list(settings.projects)
        currency = settings.currency

        if not projects:
            self._log(NO_PROJECTS_MESSAGE, "warning", CATEGORY)
            self.last_error = NO_PROJECTS_MESSAGE
            return RefreshResult(error=NO_PROJECTS_MESSAGE)

        self.state = RefreshState.refreshing
        self.last_error = None
        self._log(f"Refreshing {len(projects)} project(s) in {currency}", "info", CATEGORY)

        result = RefreshResult()
        try:
            tasks = [asyncio.ensure_future(self._fetch_project(p, currency)) for p in projects]
            for next_done in asyncio.as_completed(tasks):
                project_id, outcome = await next_done
                self._record(project_id, outcome, result)
        finally:
            self.state = RefreshState.idle

        self._log(
            f"Refresh complete: {len(result.refreshed)} ok, {len(result.failed)} failed",
            "info",
            CATEGORY,
        )
        return result

    async def refresh_project(self, project: Project) -> RefreshResult:
        """Refresh one project (after add/edit) without touching the others.

        Waits for an in-flight full refresh first so the project is never
        fetched twice at once. A configured project means the run-level
        "no projects" error no longer applies.
        """
        if self._in_flight is not None and not self._in_flight.done():
            self._log(f"Waiting for in-flight refresh before refreshing {project.id}", "debug", CATEGORY)
            await asyncio.shield(self._in_flight)

        result = RefreshResult()
        currency = self._settings_provider().currency
        self.state = RefreshState.refreshing
        self.last_error = None
        try:
            project_id, outcome = await self._fetch_project(project, currency)
            self._record(project_id, outcome, result)
        finally:
            self.state = RefreshState.idle
        return result

    async def _fetch_project(self, project: Project, currency: str) -> Tuple[str, Outcome]:
        """Resolve the key and fetch one snapshot; failures are returned, not raised."""
        try:
            api_key = self.credentials.subscription_key(project.id)
            if not api_key:
                raise NotConfiguredError()
            data = await self.client.fetch_dashboard_data(api_key, project.project_id, currency)
            return project.id, data
        except Exception as e:
            return project.id, e

    def _record(self, project_id: str, outcome: Outcome, result: RefreshResult) -> None:
        if isinstance(outcome, DashboardData):
            self._snapshots[project_id] = outcome
            self._errors.pop(project_id, None)
            result.refreshed.append(project_id)
            self._log(f"Project {project_id} refreshed — MRR: {outcome.mrr}", "info", CATEGORY)
            return

        if isinstance(outcome, SubBuddyError):
            message = outcome.to_user_message()
        else:
            message = str(outcome) or type(outcome).__name__
            capture_exception(outcome, extra={"operation": "refresh_project", "project_id": project_id})
        self._errors[project_id] = message
        result.failed[project_id] = message
        self._log(f"Project {project_id} failed: {message}", "error", CATEGORY)

    # =========================================================================
    # TIMER
    # =========================================================================

    @property
    def is_timer_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def start_timer(self, interval_minutes: Optional[int] = None) -> None:
        """Start (or replace) the periodic refresh; must be called inside a running loop."""
        self.stop_timer()
        minutes = interval_minutes or self._settings_provider().refresh_interval
        self.interval_minutes = minutes
        self._timer_task = asyncio.get_running_loop().create_task(self._timer_loop(minutes * 60))
        self._log(f"Refresh timer started: every {minutes} min", "info", CATEGORY)

    def restart_timer(self, interval_minutes: Optional[int] = None) -> None:
        """Pick up a changed interval or freshly saved credentials."""
        self.start_timer(interval_minutes)

    def stop_timer(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None

    async def _timer_loop(self, interval_seconds: float) -> None:
        while True:
            await self._sleep(interval_seconds)
            try:
                await self.refresh()
            except Exception as e:
                self._log(f"Timer refresh failed unexpectedly: {e}", "error", CATEGORY)
                capture_exception(e, extra={"operation": "refresh_timer_tick"})
