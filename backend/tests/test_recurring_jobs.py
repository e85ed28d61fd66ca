"""
Tests for recurring jobs: in-process worker loops.

Covers:
  - follow_up_run_due and appointment_reminder_run_due compare the local hour in the scheduler timezone
  - follow-up loop runs the daily job only when enabled and due
  - follow-up loop survives a failing run and backs off
  - reminder loop runs when due and idles when reminders are off
  - outbox loop processes and commits one batch per tick
  - start_* helpers return asyncio tasks with clamped settings
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from app.core.config import get_settings
from app.services import recurring_jobs
from tests.conftest import utc


def _patch_sleep(monkeypatch):
    """Swap the module's asyncio for one whose sleep records the delay and cancels the loop."""
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)
        raise asyncio.CancelledError()

    fake = SimpleNamespace(sleep=_sleep, CancelledError=asyncio.CancelledError)
    monkeypatch.setattr(recurring_jobs, "asyncio", fake)
    return delays


@pytest.fixture
def jobs_enabled(monkeypatch):
    monkeypatch.setenv("ENABLE_RECURRING_JOBS", "true")
    get_settings.cache_clear()


# ═══════════════════════════════════════════════════════════════
# follow_up_run_due
# ═══════════════════════════════════════════════════════════════


def test_run_due_after_local_run_hour():
    # 08:30 UTC in January is 09:30 in Copenhagen.
    assert recurring_jobs.follow_up_run_due(utc(2025, 1, 8, 8, 30)) is True


def test_run_not_due_before_local_run_hour():
    assert recurring_jobs.follow_up_run_due(utc(2025, 1, 8, 7, 30)) is False


def test_run_hour_respects_timezone_setting(monkeypatch):
    monkeypatch.setenv("SCHEDULER_TIMEZONE", "UTC")
    get_settings.cache_clear()
    assert recurring_jobs.follow_up_run_due(utc(2025, 1, 8, 8, 30)) is False


def test_reminder_run_due_uses_its_own_hour():
    # 05:30 UTC in January is 06:30 in Copenhagen.
    assert recurring_jobs.appointment_reminder_run_due(utc(2025, 1, 8, 5, 30)) is True
    assert recurring_jobs.appointment_reminder_run_due(utc(2025, 1, 8, 4, 30)) is False


# ═══════════════════════════════════════════════════════════════
# Follow-up loop
# ═══════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_follow_up_loop_idle_when_disabled(monkeypatch, session_factory):
    calls = []
    delays = _patch_sleep(monkeypatch)
    monkeypatch.setattr(recurring_jobs, "SessionLocal", session_factory)
    monkeypatch.setattr(recurring_jobs, "run_offer_follow_ups", lambda db: calls.append(db))

    with pytest.raises(asyncio.CancelledError):
        await recurring_jobs._follow_up_loop(interval_seconds=900)

    assert calls == []
    assert delays == [900]


@pytest.mark.asyncio
async def test_follow_up_loop_runs_when_due(monkeypatch, session_factory, jobs_enabled):
    calls = []
    delays = _patch_sleep(monkeypatch)
    monkeypatch.setattr(recurring_jobs, "SessionLocal", session_factory)
    monkeypatch.setattr(recurring_jobs, "follow_up_run_due", lambda: True)
    monkeypatch.setattr(recurring_jobs, "run_offer_follow_ups", lambda db: calls.append(db))

    with pytest.raises(asyncio.CancelledError):
        await recurring_jobs._follow_up_loop(interval_seconds=900)

    assert len(calls) == 1
    assert delays == [900]


@pytest.mark.asyncio
async def test_follow_up_loop_waits_until_due(monkeypatch, session_factory, jobs_enabled):
    calls = []
    _patch_sleep(monkeypatch)
    monkeypatch.setattr(recurring_jobs, "SessionLocal", session_factory)
    monkeypatch.setattr(recurring_jobs, "follow_up_run_due", lambda: False)
    monkeypatch.setattr(recurring_jobs, "run_offer_follow_ups", lambda db: calls.append(db))

    with pytest.raises(asyncio.CancelledError):
        await recurring_jobs._follow_up_loop(interval_seconds=900)

    assert calls == []


@pytest.mark.asyncio
async def test_follow_up_loop_backs_off_on_error(monkeypatch, session_factory, jobs_enabled):
    def _boom(db):
        raise RuntimeError("database went away")

    delays = _patch_sleep(monkeypatch)
    monkeypatch.setattr(recurring_jobs, "SessionLocal", session_factory)
    monkeypatch.setattr(recurring_jobs, "follow_up_run_due", lambda: True)
    monkeypatch.setattr(recurring_jobs, "run_offer_follow_ups", _boom)

    with pytest.raises(asyncio.CancelledError):
        await recurring_jobs._follow_up_loop(interval_seconds=900)

    assert delays == [60]


# ═══════════════════════════════════════════════════════════════
# Appointment reminder loop
# ═══════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_reminder_loop_runs_when_due(monkeypatch, session_factory, jobs_enabled):
    calls = []
    delays = _patch_sleep(monkeypatch)
    monkeypatch.setattr(recurring_jobs, "SessionLocal", session_factory)
    monkeypatch.setattr(recurring_jobs, "appointment_reminder_run_due", lambda: True)
    monkeypatch.setattr(recurring_jobs, "run_appointment_reminders", lambda db: calls.append(db))

    with pytest.raises(asyncio.CancelledError):
        await recurring_jobs._appointment_reminder_loop(interval_seconds=900)

    assert len(calls) == 1
    assert delays == [900]


@pytest.mark.asyncio
async def test_reminder_loop_idle_when_reminders_disabled(monkeypatch, session_factory, jobs_enabled):
    calls = []
    monkeypatch.setenv("ENABLE_APPOINTMENT_REMINDERS", "false")
    get_settings.cache_clear()
    _patch_sleep(monkeypatch)
    monkeypatch.setattr(recurring_jobs, "SessionLocal", session_factory)
    monkeypatch.setattr(recurring_jobs, "appointment_reminder_run_due", lambda: True)
    monkeypatch.setattr(recurring_jobs, "run_appointment_reminders", lambda db: calls.append(db))

    with pytest.raises(asyncio.CancelledError):
        await recurring_jobs._appointment_reminder_loop(interval_seconds=900)

    assert calls == []


# ═══════════════════════════════════════════════════════════════
# Notification outbox loop
# ═══════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_outbox_loop_processes_batch(monkeypatch, session_factory, jobs_enabled):
    calls = []

    def _process(db, *, batch_size, max_attempts):
        calls.append((batch_size, max_attempts))
        return 0

    delays = _patch_sleep(monkeypatch)
    monkeypatch.setattr(recurring_jobs, "SessionLocal", session_factory)
    monkeypatch.setattr(recurring_jobs, "process_notification_outbox_once", _process)

    with pytest.raises(asyncio.CancelledError):
        await recurring_jobs._notification_outbox_loop(interval_seconds=30, batch_size=10, max_attempts=5)

    assert calls == [(10, 5)]
    assert delays == [30]


@pytest.mark.asyncio
async def test_outbox_loop_skips_without_database(monkeypatch, jobs_enabled):
    calls = []
    _patch_sleep(monkeypatch)
    monkeypatch.setattr(recurring_jobs, "SessionLocal", None)
    monkeypatch.setattr(recurring_jobs, "process_notification_outbox_once", lambda db, **kw: calls.append(db))

    with pytest.raises(asyncio.CancelledError):
        await recurring_jobs._notification_outbox_loop(interval_seconds=30, batch_size=10, max_attempts=5)

    assert calls == []


# ═══════════════════════════════════════════════════════════════
# Worker startup
# ═══════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_start_follow_up_worker_clamps_interval(monkeypatch):
    seen = {}

    async def _loop(*, interval_seconds):
        seen["interval"] = interval_seconds

    monkeypatch.setenv("FOLLOW_UP_WORKER_INTERVAL_SECONDS", "5")
    get_settings.cache_clear()
    monkeypatch.setattr(recurring_jobs, "_follow_up_loop", _loop)

    task = recurring_jobs.start_follow_up_worker()
    assert isinstance(task, asyncio.Task)
    await task
    assert seen["interval"] == 60


@pytest.mark.asyncio
async def test_start_notification_worker_returns_task(monkeypatch):
    seen = {}

    async def _loop(**kwargs):
        seen.update(kwargs)

    monkeypatch.setattr(recurring_jobs, "_notification_outbox_loop", _loop)

    task = recurring_jobs.start_notification_outbox_worker()
    await task
    assert seen == {"interval_seconds": 30, "batch_size": 50, "max_attempts": 5}


@pytest.mark.asyncio
async def test_start_reminder_worker_clamps_interval(monkeypatch):
    seen = {}

    async def _loop(*, interval_seconds):
        seen["interval"] = interval_seconds

    monkeypatch.setenv("REMINDER_WORKER_INTERVAL_SECONDS", "86400")
    get_settings.cache_clear()
    monkeypatch.setattr(recurring_jobs, "_appointment_reminder_loop", _loop)

    task = recurring_jobs.start_appointment_reminder_worker()
    await task
    assert seen["interval"] == 3600
