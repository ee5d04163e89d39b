"""Tests for settings persistence and validation.

WHAT: Defaults, save/load, invalid documents, legacy single-project migration.
WHY: Settings are read at the start of every refresh; a broken file must
     never take the dashboard down.

REFERENCES:
  - subbuddy/services/settings_store.py
  - subbuddy/schemas.py (AppSettings, Project)
"""

import pytest
from pydantic import ValidationError

from subbuddy.models import MetricKind
from subbuddy.schemas import TOTAL_TAB, AppSettings, Project, ProjectColour
from subbuddy.services.settings_store import SettingsStore


@pytest.fixture
def store(tmp_path, log):
    return SettingsStore(tmp_path / "settings.json", log=log)


class TestSettingsStore:
    def test_missing_file_loads_defaults(self, store):
        settings = store.load()

        assert settings.projects == []
        assert settings.currency == "USD"
        assert settings.refresh_interval == 5
        assert settings.selected_tab == TOTAL_TAB
        assert [c.kind for c in settings.enabled_metrics] == list(MetricKind)

    def test_save_then_load(self, store):
        project = Project(name=" Journal Lock ", project_id="proj1", colour=ProjectColour.teal,
                          attribution_app_ids=["id123", " ", "com.app.android "])
        store.save(AppSettings(projects=[project], currency="gbp", refresh_interval=15, selected_tab=project.id))

        loaded = store.load()

        assert loaded.currency == "GBP"
        assert loaded.refresh_interval == 15
        assert loaded.selected_tab == project.id
        (saved,) = loaded.projects
        assert saved.id == project.id
        assert saved.name == "Journal Lock"
        assert saved.colour is ProjectColour.teal
        assert saved.attribution_app_ids == ["id123", "com.app.android"]

    def test_invalid_file_loads_defaults_and_logs(self, store, log):
        store.path.write_text('{"currency": "XYZ"}', encoding="utf-8")

        assert store.load() == AppSettings()
        assert any("Settings file invalid" in m for m in log.messages("error"))
        assert store.path.exists()

    def test_unparseable_file_loads_defaults(self, store):
        store.path.write_text("not json at all", encoding="utf-8")
        assert store.load().projects == []

    def test_legacy_single_project_document_is_migrated(self, store):
        store.path.write_text('{"project_id": "proj_legacy", "project_name": "Old App"}', encoding="utf-8")

        (project,) = store.load().projects

        assert project.project_id == "proj_legacy"
        assert project.name == "Old App"

    def test_migrated_project_keeps_its_id_across_loads(self, store):
        store.path.write_text('{"project_id": "proj_legacy"}', encoding="utf-8")

        first = store.load().projects[0].id
        second = store.load().projects[0].id

        assert first == second
        store.save(store.load())
        assert store.load().projects[0].id == first


class TestAppSettingsValidation:
    def test_unknown_currency_is_rejected(self):
        with pytest.raises(ValidationError):
            AppSettings(currency="XYZ")

    @pytest.mark.parametrize("minutes", [0, 3, 60])
    def test_refresh_interval_must_be_a_listed_value(self, minutes):
        with pytest.raises(ValidationError):
            AppSettings(refresh_interval=minutes)

    def test_project_lookup(self):
        a = Project(name="A", project_id="pa")
        settings = AppSettings(projects=[a])

        assert settings.project(a.id) is a
        assert settings.project("missing") is None

    def test_project_ids_are_unique_by_default(self):
        assert Project(name="A", project_id="p").id != Project(name="A", project_id="p").id
