"""Dashboard service: the single entry point an embedding UI talks to.

WHAT:
    - Tab selection ("total" or a project id) and the data/error for that tab
    - Project add/update/remove, including credentials and a targeted refresh
    - Report generation for the selected tab (charts + marketing + loop)
    - Timer control (start, interval change)

WHY:
    The UI only renders. Everything that reads settings, resolves
    credentials or combines projects lives here, behind plain async methods.

REFERENCES:
    - subbuddy/services/refresh_scheduler.py (snapshot/error maps)
    - subbuddy/services/aggregator.py (total tab, merged report charts)
    - subbuddy/services/report_generator.py (generator/critic loop)
"""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Any, List, Optional, Sequence, Tuple

from subbuddy.deps import Settings, get_settings
from subbuddy.exceptions import NotConfiguredError, NoAPIKeyError, ReportUnavailableError
from subbuddy.models import DashboardData, MarketingReport
from subbuddy.schemas import TOTAL_TAB, AppSettings, Project, ProjectColour
from subbuddy.security import build_cipher
from subbuddy.services.aggregator import aggregate_total, merge_report_charts
from subbuddy.services.attribution_client import AttributionClient, AttributionTestResult
from subbuddy.services.credential_store import (
    CredentialResolver,
    CredentialScope,
    EncryptedFileCredentialStore,
)
from subbuddy.services.refresh_scheduler import RefreshResult, RefreshScheduler
from subbuddy.services.report_generator import (
    ProgressFn,
    ReportDraft,
    ReportGenerator,
    previous_period,
)
from subbuddy.services.settings_store import SettingsStore
from subbuddy.services.subscription_client import SubscriptionClient
from subbuddy.services.text_gen_client import OpenAITextGenClient
from subbuddy.telemetry import LogFn, app_log

CATEGORY = "Dashboard"

ALL_PROJECTS_NAME = "All projects"
ALL_FAILED_MESSAGE = "All projects failed to load"


class DashboardService:
    """Facade over the scheduler, clients, stores and report generator."""

    def __init__(
        self,
        settings_store: SettingsStore,
        credentials: CredentialResolver,
        subscription_client: SubscriptionClient,
        attribution_client: AttributionClient,
        report_generator: ReportGenerator,
        scheduler: Optional[RefreshScheduler] = None,
        log: LogFn = app_log,
    ):
        self.settings_store = settings_store
        self.credentials = credentials
        self.subscription_client = subscription_client
        self.attribution_client = attribution_client
        self.report_generator = report_generator
        self.scheduler = scheduler or RefreshScheduler(
            subscription_client, credentials, settings_store.load, log=log
        )
        self._log = log

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "DashboardService":
        """Wire the default stack: encrypted credential file, JSON settings, real clients."""
        settings = settings or get_settings()
        store = EncryptedFileCredentialStore(
            settings.CREDENTIALS_PATH, build_cipher(settings.CREDENTIAL_ENCRYPTION_KEY)
        )
        return cls(
            settings_store=SettingsStore(settings.SETTINGS_PATH),
            credentials=CredentialResolver(store),
            subscription_client=SubscriptionClient(
                base_url=settings.REVENUECAT_BASE_URL, timeout=settings.SUBSCRIPTION_TIMEOUT_SECONDS
            ),
            attribution_client=AttributionClient(
                base_url=settings.APPSFLYER_BASE_URL, timeout=settings.ATTRIBUTION_TIMEOUT_SECONDS
            ),
            report_generator=ReportGenerator(
                OpenAITextGenClient(
                    model=settings.OPENAI_MODEL,
                    base_url=settings.OPENAI_BASE_URL,
                    timeout=settings.TEXT_GEN_TIMEOUT_SECONDS,
                )
            ),
        )

    # =========================================================================
    # SETTINGS
    # =========================================================================

    @property
    def settings(self) -> AppSettings:
        return self.settings_store.load()

    def _update_settings(self, **changes: Any) -> AppSettings:
        """Apply changes with full validation, then persist."""
        updated = AppSettings.model_validate({**self.settings.model_dump(), **changes})
        self.settings_store.save(updated)
        return updated

    def set_currency(self, currency: str) -> None:
        self._update_settings(currency=currency)

    def set_refresh_interval(self, minutes: int) -> None:
        self._update_settings(refresh_interval=minutes)
        if self.scheduler.is_timer_running:
            self.scheduler.restart_timer(minutes)

    def save_text_gen_key(self, api_key: Optional[str]) -> bool:
        return self.credentials.save(CredentialScope.text_gen(), api_key)

    # =========================================================================
    # TABS
    # =========================================================================

    @property
    def selected_tab(self) -> str:
        return self.settings.selected_tab

    def select_tab(self, tab: str) -> None:
        settings = self.settings
        if tab != TOTAL_TAB and settings.project(tab) is None:
            raise ValueError(f"Unknown tab {tab!r}")
        settings.selected_tab = tab
        self.settings_store.save(settings)

    @property
    def total_data(self) -> Optional[DashboardData]:
        settings = self.settings
        snapshots = self.scheduler.snapshots
        return aggregate_total(
            (snapshots[p.id] for p in settings.projects if p.id in snapshots), settings.currency
        )

    @property
    def current_data(self) -> Optional[DashboardData]:
        tab = self.selected_tab
        if tab == TOTAL_TAB:
            return self.total_data
        return self.scheduler.snapshots.get(tab)

    @property
    def current_error(self) -> Optional[str]:
        settings = self.settings
        errors = self.scheduler.errors
        if settings.selected_tab != TOTAL_TAB:
            return errors.get(settings.selected_tab)
        if self.scheduler.last_error:
            return self.scheduler.last_error
        if settings.projects and all(p.id in errors for p in settings.projects):
            return ALL_FAILED_MESSAGE
        return None

    # =========================================================================
    # REFRESH
    # =========================================================================

    async def refresh(self) -> RefreshResult:
        return await self.scheduler.refresh()

    async def start(self) -> RefreshResult:
        """Initial refresh, then periodic refresh at the configured interval."""
        result = await self.scheduler.refresh()
        self.scheduler.start_timer(self.settings.refresh_interval)
        return result

    def stop(self) -> None:
        self.scheduler.stop_timer()

    def _credentials_changed(self) -> None:
        if self.scheduler.is_timer_running:
            self.scheduler.restart_timer(self.settings.refresh_interval)

    # =========================================================================
    # PROJECTS
    # =========================================================================

    async def test_subscription_connection(self, api_key: str, project_id: str) -> bool:
        return await self.subscription_client.test_connection(api_key, project_id)

    async def test_attribution_connection(self, app_id: str, token: str) -> AttributionTestResult:
        return await self.attribution_client.test_connection(app_id, token)

    async def add_project(
        self,
        name: str,
        project_id: str,
        api_key: str,
        colour: ProjectColour = ProjectColour.blue,
        attribution_app_ids: Sequence[str] = (),
        attribution_token: Optional[str] = None,
    ) -> Project:
        project = Project(
            name=name,
            project_id=project_id,
            colour=colour,
            attribution_app_ids=list(attribution_app_ids),
        )
        settings = self.settings
        settings.projects.append(project)
        settings.selected_tab = project.id
        self.settings_store.save(settings)

        self.credentials.save(CredentialScope.subscription(project.id), api_key)
        if attribution_token:
            self.credentials.save(CredentialScope.attribution(project.id), attribution_token)
        self._credentials_changed()
        self._log(f"Added project {project.name} ({project.id})", "info", CATEGORY)

        await self.scheduler.refresh_project(project)
        return project

    async def update_project(
        self,
        project: Project,
        api_key: Optional[str] = None,
        attribution_token: Optional[str] = None,
    ) -> RefreshResult:
        """Replace the stored project; credentials are only rewritten when given.

        An empty attribution token removes the stored one.
        """
        settings = self.settings
        for index, existing in enumerate(settings.projects):
            if existing.id == project.id:
                settings.projects[index] = project
                break
        else:
            raise ValueError(f"Unknown project {project.id!r}")
        self.settings_store.save(settings)

        if api_key is not None:
            self.credentials.save(CredentialScope.subscription(project.id), api_key)
        if attribution_token is not None:
            self.credentials.save(CredentialScope.attribution(project.id), attribution_token)
        if api_key is not None or attribution_token is not None:
            self._credentials_changed()

        return await self.scheduler.refresh_project(project)

    def remove_project(self, project_id: str) -> None:
        settings = self.settings
        settings.projects = [p for p in settings.projects if p.id != project_id]
        if settings.selected_tab == project_id:
            settings.selected_tab = TOTAL_TAB
        self.settings_store.save(settings)

        self.credentials.forget_project(project_id)
        self.scheduler.forget_project(project_id)
        self._log(f"Removed project {project_id}", "info", CATEGORY)

    # =========================================================================
    # REPORTS
    # =========================================================================

    def _report_target(self, settings: AppSettings) -> Tuple[str, DashboardData, List[Project]]:
        tab = settings.selected_tab
        if tab == TOTAL_TAB:
            data = self.total_data
            if data is None:
                raise ReportUnavailableError()
            return ALL_PROJECTS_NAME, data, list(settings.projects)

        project = settings.project(tab)
        data = self.scheduler.snapshots.get(tab)
        if project is None or data is None:
            raise ReportUnavailableError()
        return project.name, data, [project]

    async def _fetch_marketing(
        self, projects: Sequence[Project], currency: str, start: date, end: date
    ) -> Optional[MarketingReport]:
        sources: List[Tuple[Project, str]] = []
        for project in projects:
            if not project.attribution_app_ids:
                continue
            token = self.credentials.attribution_token(project.id)
            if token:
                sources.append((project, token))
        if not sources:
            return None

        reports = await asyncio.gather(
            *(
                self.attribution_client.fetch_marketing_data(
                    project.attribution_app_ids, token, currency, start, end
                )
                for project, token in sources
            )
        )
        return MarketingReport.merge(reports, currency=currency)

    async def generate_report(
        self, start: date, end: date, on_progress: Optional[ProgressFn] = None
    ) -> ReportDraft:
        """Report for the selected tab over [start, end], compared with the preceding window.

        Raises:
            ReportUnavailableError: no snapshot for the selection yet
            NoAPIKeyError: no text-generation key stored
            NotConfiguredError: no subscription key for any selected project
            TextGenError: generator or critic call failed
        """
        settings = self.settings
        project_name, data, projects = self._report_target(settings)

        api_key = self.credentials.text_gen_key()
        if not api_key:
            raise NoAPIKeyError()

        keyed: List[Tuple[Project, str]] = []
        for project in projects:
            key = self.credentials.subscription_key(project.id)
            if key:
                keyed.append((project, key))
        if not keyed:
            raise NotConfiguredError()

        if on_progress:
            on_progress("Fetching data...")

        currency = settings.currency
        previous_start, previous_end = previous_period(start, end)
        windows = ((start, end), (previous_start, previous_end))

        chart_sets, marketing = await asyncio.gather(
            asyncio.gather(
                *(
                    self.subscription_client.fetch_report_charts(
                        key, project.project_id, currency, window_start, window_end
                    )
                    for project, key in keyed
                    for window_start, window_end in windows
                )
            ),
            self._fetch_marketing(projects, currency, start, end),
        )
        current = merge_report_charts(chart_sets[0::2])
        previous = merge_report_charts(chart_sets[1::2])
        self._log(
            f"Report data ready for {project_name}: {len(keyed)} project(s), "
            f"marketing={'yes' if marketing is not None else 'no'}",
            "info",
            CATEGORY,
        )

        return await self.report_generator.generate(
            api_key,
            project_name,
            start,
            end,
            data,
            current,
            previous,
            marketing=marketing,
            on_progress=on_progress,
        )
