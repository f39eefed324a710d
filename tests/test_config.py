"""Tests for config.Configuration and config.SettingsStore."""

import json

import pytest
from pydantic import ValidationError

from config import Configuration, NotificationThresholds, SettingsStore


@pytest.fixture
def store(tmp_path):
    return SettingsStore(tmp_path / ".claude-meter" / "settings.json")


def test_defaults():
    config = Configuration()
    assert config.menu_bar_cost_source == "today"
    assert config.menu_bar_display_mode == "both"
    assert config.notification_thresholds.warning == 70
    assert config.notification_thresholds.critical == 90


def test_aliases_match_settings_file_keys():
    config = Configuration.model_validate({"menuBarCostSource": "sessionWindow"})
    assert config.menu_bar_cost_source == "sessionWindow"
    dumped = config.model_dump(by_alias=True)
    assert set(dumped) == {"menuBarCostSource", "menuBarDisplayMode", "notificationThresholds"}


def test_rejects_unknown_modes_and_inverted_thresholds():
    with pytest.raises(ValidationError):
        Configuration(menu_bar_cost_source="yesterday")
    with pytest.raises(ValidationError):
        NotificationThresholds(warning=90, critical=70)


def test_load_missing_file_returns_defaults(store):
    assert store.load() == Configuration()


def test_load_migrates_alternate_display_mode(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text(json.dumps({
        "menuBarDisplayMode": "alternate",
        "menuBarCostSource": "sessionWindow",
    }))
    config = store.load()
    assert config.menu_bar_display_mode == "both"
    assert config.menu_bar_cost_source == "sessionWindow"


def test_load_corrupt_file_returns_defaults(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{oops")
    assert store.load() == Configuration()


def test_save_merges_and_persists(store):
    store.save({"menuBarDisplayMode": "cost"})
    saved = store.save({"notificationThresholds": {"warning": 60, "critical": 85}})

    assert saved.menu_bar_display_mode == "cost"
    assert saved.notification_thresholds.warning == 60
    on_disk = json.loads(store.path.read_text())
    assert on_disk["menuBarDisplayMode"] == "cost"
    assert on_disk["notificationThresholds"] == {"warning": 60, "critical": 85}
