"""Tests for the operator sweep endpoint (POST /api/admin/escalation/sweep)."""

from __future__ import annotations

import inspect
from datetime import timedelta

from app.config import Settings
from app.models.checkin import CheckInStatus
from app.models.testator import Testator
from app.routers.admin import run_escalation_sweep

from conftest import T0, ManualClock, RecordingNotifier

ADMIN = {"X-Admin-Token": "test-admin-token"}
SWEEP = "/api/admin/escalation/sweep"


def test_requires_admin_token(client, testator: Testator):
    assert client.post(SWEEP).status_code == 401
    assert client.post(SWEEP, headers={"X-Admin-Token": "wrong"}).status_code == 401


def test_disabled_without_configured_token(client, monkeypatch):
    monkeypatch.setattr(
        "app.dependencies.get_settings", lambda: Settings(admin_token="")
    )
    resp = client.post(SWEEP, headers=ADMIN)
    assert resp.status_code == 503


def test_sweep_reports_transitions(
    client, testator: Testator, clock: ManualClock, notifier: RecordingNotifier
):
    clock.set(T0 + timedelta(days=15))
    resp = client.post(SWEEP, headers=ADMIN)
    assert resp.status_code == 200
    data = resp.json()
    assert data["processed"] == 1
    assert data["transitions"] == 3
    assert data["failed"] == 0
    detail = data["details"][0]
    assert detail["testator_id"] == testator.id
    assert detail["transitions"][-1] == CheckInStatus.VERIFICATION_TRIGGERED.value
    assert detail["request_id"] is not None


def test_quiet_sweep_has_no_details(client, testator: Testator):
    resp = client.post(SWEEP, headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["transitions"] == 0
    assert resp.json()["details"] == []


def test_failures_counted(
    client, testator: Testator, clock: ManualClock, notifier: RecordingNotifier
):
    notifier.fail_all = True
    clock.set(T0 + timedelta(days=8))
    data = client.post(SWEEP, headers=ADMIN).json()
    assert data["failed"] == 1
    assert data["details"][0]["error"]


def test_sweep_runs_off_the_event_loop():
    assert not inspect.iscoroutinefunction(run_escalation_sweep)


def test_undelivered_welfare_alerts_reported(
    client, testator: Testator, clock: ManualClock, notifier: RecordingNotifier
):
    notifier.fail_for.add("tom@example.com")
    clock.set(T0 + timedelta(days=11, hours=12))
    data = client.post(SWEEP, headers=ADMIN).json()
    assert data["failed"] == 0
    assert data["details"][0]["undelivered"] == 1
