"""Tests for the HTTP surface in app.py."""

from datetime import timezone

import pytest
from fastapi.testclient import TestClient

from aggregator import UsageAggregator
from app import create_app
from config import SettingsStore
from helpers import NOW, FakeClock, FakeLedger, FakeNotifier, FakeRateLimits, ledger_day, rate_limit_snapshot
from notifications import NotificationGate


@pytest.fixture
def services(tmp_path):
    rate_limits = FakeRateLimits(rate_limit_snapshot(five_hour=75.0))
    ledger = FakeLedger(days=[ledger_day("2026-10-19")])
    aggregator = UsageAggregator(
        rate_limits, ledger, clock=FakeClock(), now=lambda: NOW, tz=timezone.utc,
    )
    notifier = FakeNotifier()
    gate = NotificationGate(notifier, clock=FakeClock(start=10_000.0))
    settings = SettingsStore(tmp_path / "settings.json")
    return aggregator, gate, notifier, settings, rate_limits


@pytest.fixture
def client(services):
    aggregator, gate, _, settings, _ = services
    app = create_app(aggregator=aggregator, gate=gate, settings=settings, start_poller=False)
    with TestClient(app) as c:
        yield c


def test_snapshot(client):
    resp = client.get("/api/snapshot")
    assert resp.status_code == 200
    body = resp.json()
    assert body["today"]["date"] == "2026-10-19"
    assert body["today"]["models"] == {"claude-sonnet-4-5": {"tokens": 334, "cost": 1.5}}
    assert body["oauth_utilization"]["five_hour"]["utilization"] == 75.0


def test_menubar(client):
    body = client.get("/api/menubar").json()
    assert body["status"] == "warning"
    assert body["title"] == "75% · $1.50"


def test_refresh_clears_rate_limit_cache_and_notifies(client, services):
    _, _, notifier, _, rate_limits = services
    resp = client.post("/api/refresh")
    assert resp.status_code == 200
    assert rate_limits.cleared == 1
    assert [title for title, _ in notifier.sent] == ["Claude Meter: Usage Warning"]


def test_settings_roundtrip_updates_aggregator(client, services):
    aggregator = services[0]
    assert client.get("/api/settings").json()["menuBarDisplayMode"] == "both"

    resp = client.put("/api/settings", json={"menuBarDisplayMode": "percentage"})
    assert resp.status_code == 200
    assert resp.json()["menuBarDisplayMode"] == "percentage"
    assert aggregator.config.menu_bar_display_mode == "percentage"
    assert client.get("/api/menubar").json()["title"] == "75%"


def test_invalid_settings_rejected(client):
    resp = client.put("/api/settings", json={"menuBarCostSource": "forever"})
    assert resp.status_code == 422


def test_summary(client, services):
    notifier = services[2]
    resp = client.post("/api/summary")
    assert resp.json() == {"tokens": 334, "cost": 1.5}
    assert notifier.sent == [("Claude Meter: Daily Summary", "Today: 334 tokens used, $1.500 spent")]


def test_saved_settings_applied_on_startup(services):
    aggregator, gate, _, settings, _ = services
    settings.save({"menuBarDisplayMode": "cost"})
    app = create_app(aggregator=aggregator, gate=gate, settings=settings, start_poller=False)
    assert aggregator.config.menu_bar_display_mode == "both"

    with TestClient(app) as c:
        assert aggregator.config.menu_bar_display_mode == "cost"
        assert c.get("/api/menubar").json()["title"] == "$1.50"
