"""
Unit tests for appointment_lifecycle.

Covers:
  - create_appointment: overlap detection per inspector, cancelled slots ignored,
    bookings longer than a day, a rival booking committed mid-create
  - start / complete / cancel / no_show happy paths and history length
  - start_then_complete: two history rows in one commit
  - complete_directly: off by default, allowed with ALLOW_DIRECT_APPOINTMENT_COMPLETION
  - report_id written once on completion; link_report idempotent for the same id
  - a report linked from an appointment cannot be deleted (foreign key RESTRICT)
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.core.config import get_settings
from app.core.errors import Conflict, EntityNotFound, InvalidTransition, PermissionDenied
from app.models.inspection import Appointment, Report
from app.schemas.access import Role
from app.services import appointment_lifecycle
from app.services.appointment_lifecycle import (
    cancel_appointment,
    complete_appointment,
    complete_directly,
    create_appointment,
    find_conflicts,
    link_report,
    mark_no_show,
    start_appointment,
    start_then_complete,
)
from app.services.status_history import list_status_history
from tests.conftest import make_ctx, seed_report, utc

INSPECTOR = make_ctx(Role.INSPECTOR, id="inspector-1", branch_id="stockholm", display_name="Erik Inspector")
OTHER_INSPECTOR = make_ctx(Role.INSPECTOR, id="inspector-2", branch_id="stockholm")
BRANCH_ADMIN = make_ctx(Role.BRANCH_ADMIN, id="admin-1", branch_id="stockholm")

SLOT = utc(2025, 1, 10, 9, 0)


def _book(db, *, at=SLOT, minutes=60, inspector="inspector-1", ctx=INSPECTOR) -> Appointment:
    return create_appointment(
        db,
        ctx,
        assigned_inspector_id=inspector,
        scheduled_at=at,
        duration_minutes=minutes,
        customer_name="Anna Svensson",
    )


def _statuses(db, appointment_id):
    return [entry.status for entry in list_status_history(db, entity_type="appointment", entity_id=appointment_id)]


class TestCreateAppointment:
    def test_create_in_principal_branch(self, db):
        appointment = _book(db)
        assert appointment.status == "scheduled"
        assert appointment.branch_id == "stockholm"
        assert appointment.created_by == "inspector-1"
        assert _statuses(db, appointment.id) == []

    def test_overlapping_slot_conflicts(self, db):
        first = _book(db)
        with pytest.raises(Conflict) as exc_info:
            _book(db, at=utc(2025, 1, 10, 9, 30))
        assert exc_info.value.entity_id == first.id
        assert db.execute(select(func.count()).select_from(Appointment)).scalar_one() == 1

    def test_adjacent_slot_is_free(self, db):
        _book(db)
        second = _book(db, at=utc(2025, 1, 10, 10, 0))
        assert second.status == "scheduled"

    def test_other_inspector_is_free(self, db):
        _book(db)
        other = _book(db, inspector="inspector-2", ctx=BRANCH_ADMIN)
        assert other.assigned_inspector_id == "inspector-2"

    def test_cancelled_slot_is_free(self, db):
        first = _book(db)
        cancel_appointment(db, appointment_id=first.id, ctx=INSPECTOR, reason="Customer moved", now=utc(2025, 1, 9))
        assert find_conflicts(db, inspector_id="inspector-1", starts_at=SLOT, duration_minutes=60) == []
        assert _book(db).status == "scheduled"

    def test_other_branch_denied(self, db):
        with pytest.raises(PermissionDenied):
            create_appointment(
                db,
                INSPECTOR,
                assigned_inspector_id="inspector-1",
                scheduled_at=SLOT,
                branch_id="goteborg",
            )

    def test_long_booking_blocks_the_next_day(self, db):
        first = _book(db, minutes=1800)
        next_day = utc(2025, 1, 11, 10, 0)
        conflicts = find_conflicts(db, inspector_id="inspector-1", starts_at=next_day, duration_minutes=60)
        assert [other.id for other in conflicts] == [first.id]
        with pytest.raises(Conflict):
            _book(db, at=next_day)
        assert _book(db, at=utc(2025, 1, 11, 15, 0)).status == "scheduled"

    def test_booking_committed_between_check_and_insert(self, file_session_factory, monkeypatch):
        rival = file_session_factory()
        loser = file_session_factory()
        original_check = appointment_lifecycle._raise_on_overlap
        raced = []

        def check_then_rival_books(db, *args, **kwargs):
            original_check(db, *args, **kwargs)
            if db is loser and not raced:
                raced.append(True)
                _book(rival, at=utc(2025, 1, 10, 9, 30))

        monkeypatch.setattr(appointment_lifecycle, "_raise_on_overlap", check_then_rival_books)
        try:
            with pytest.raises(Conflict):
                _book(loser)
            rows = loser.execute(select(Appointment)).scalars().all()
            assert [row.scheduled_at.minute for row in rows] == [30]
        finally:
            rival.close()
            loser.close()


class TestTransitions:
    def test_start_then_complete_with_report(self, db):
        report = seed_report(db)
        appointment = _book(db)

        start_appointment(db, appointment_id=appointment.id, ctx=INSPECTOR, now=utc(2025, 1, 10, 9, 5))
        done = complete_appointment(
            db,
            appointment_id=appointment.id,
            ctx=INSPECTOR,
            report_id=report.id,
            inspector_notes="Moss on north side",
            now=utc(2025, 1, 10, 10, 0),
        )

        assert done.status == "completed"
        assert done.report_id == report.id
        assert done.inspector_notes == "Moss on north side"
        assert done.row_version == 3
        assert _statuses(db, appointment.id) == ["in_progress", "completed"]

    def test_complete_requires_in_progress(self, db):
        appointment = _book(db)
        with pytest.raises(InvalidTransition) as exc_info:
            complete_appointment(db, appointment_id=appointment.id, ctx=INSPECTOR, now=SLOT)
        assert exc_info.value.current == "scheduled"

    def test_combined_start_and_complete(self, db):
        appointment = _book(db)
        done = start_then_complete(db, appointment_id=appointment.id, ctx=INSPECTOR, now=SLOT)

        assert done.status == "completed"
        assert done.row_version == 2
        history = list_status_history(db, entity_type="appointment", entity_id=appointment.id)
        assert [entry.status for entry in history] == ["in_progress", "completed"]
        assert history[1].timestamp > history[0].timestamp

    def test_cancel_and_no_show_are_terminal(self, db):
        cancelled = _book(db)
        cancel_appointment(db, appointment_id=cancelled.id, ctx=INSPECTOR, reason="Storm", now=SLOT)
        no_show = _book(db, at=utc(2025, 1, 11, 9))
        mark_no_show(db, appointment_id=no_show.id, ctx=INSPECTOR, now=utc(2025, 1, 11, 9, 30))

        reloaded = db.get(Appointment, cancelled.id)
        assert reloaded.status == "cancelled"
        assert reloaded.cancel_reason == "Storm"
        assert db.get(Appointment, no_show.id).status == "no_show"

        for appointment_id, status in ((cancelled.id, "cancelled"), (no_show.id, "no_show")):
            with pytest.raises(InvalidTransition) as exc_info:
                start_appointment(db, appointment_id=appointment_id, ctx=INSPECTOR, now=SLOT)
            assert exc_info.value.current == status
            assert len(_statuses(db, appointment_id)) == 1

    def test_other_inspector_cannot_start(self, db):
        appointment = _book(db)
        with pytest.raises(PermissionDenied):
            start_appointment(db, appointment_id=appointment.id, ctx=OTHER_INSPECTOR, now=SLOT)
        assert db.get(Appointment, appointment.id).status == "scheduled"

    def test_missing_appointment(self, db):
        with pytest.raises(EntityNotFound):
            start_appointment(db, appointment_id="missing", ctx=INSPECTOR, now=SLOT)

    def test_unknown_report_rejected_before_write(self, db):
        appointment = _book(db)
        start_appointment(db, appointment_id=appointment.id, ctx=INSPECTOR, now=SLOT)
        with pytest.raises(EntityNotFound):
            complete_appointment(db, appointment_id=appointment.id, ctx=INSPECTOR, report_id="nope", now=SLOT)
        assert db.get(Appointment, appointment.id).status == "in_progress"


class TestDirectCompletion:
    def test_disabled_by_default(self, db):
        appointment = _book(db)
        with pytest.raises(InvalidTransition) as exc_info:
            complete_directly(db, appointment_id=appointment.id, ctx=INSPECTOR, now=SLOT)
        assert exc_info.value.current == "scheduled"
        assert _statuses(db, appointment.id) == []

    def test_enabled_by_policy(self, db, monkeypatch):
        monkeypatch.setenv("ALLOW_DIRECT_APPOINTMENT_COMPLETION", "true")
        get_settings.cache_clear()
        appointment = _book(db)
        done = complete_directly(db, appointment_id=appointment.id, ctx=INSPECTOR, now=SLOT)
        assert done.status == "completed"
        assert _statuses(db, appointment.id) == ["completed"]

    def test_only_from_scheduled(self, db, monkeypatch):
        monkeypatch.setenv("ALLOW_DIRECT_APPOINTMENT_COMPLETION", "true")
        get_settings.cache_clear()
        appointment = _book(db)
        start_appointment(db, appointment_id=appointment.id, ctx=INSPECTOR, now=SLOT)
        with pytest.raises(InvalidTransition):
            complete_directly(db, appointment_id=appointment.id, ctx=INSPECTOR, now=SLOT)


class TestReportLink:
    def test_report_set_once(self, db):
        first = seed_report(db)
        second = seed_report(db)
        appointment = _book(db)
        start_then_complete(db, appointment_id=appointment.id, ctx=INSPECTOR, report_id=first.id, now=SLOT)

        same = link_report(db, appointment_id=appointment.id, ctx=INSPECTOR, report_id=first.id)
        assert same.report_id == first.id
        assert same.row_version == 2

        with pytest.raises(InvalidTransition) as exc_info:
            link_report(db, appointment_id=appointment.id, ctx=INSPECTOR, report_id=second.id)
        assert exc_info.value.current == "completed"
        assert db.get(Appointment, appointment.id).report_id == first.id
        assert len(_statuses(db, appointment.id)) == 2

    def test_link_before_completion(self, db):
        report = seed_report(db)
        appointment = _book(db)
        with pytest.raises(InvalidTransition) as exc_info:
            link_report(db, appointment_id=appointment.id, ctx=INSPECTOR, report_id=report.id)
        assert exc_info.value.current == "scheduled"

    def test_link_after_completion_without_report(self, db):
        report = seed_report(db)
        appointment = _book(db)
        start_then_complete(db, appointment_id=appointment.id, ctx=INSPECTOR, now=SLOT)
        with pytest.raises(InvalidTransition):
            link_report(db, appointment_id=appointment.id, ctx=INSPECTOR, report_id=report.id)

    def test_linked_report_cannot_be_deleted(self, file_session_factory):
        db = file_session_factory()
        try:
            report_id = seed_report(db).id
            appointment = _book(db)
            start_then_complete(db, appointment_id=appointment.id, ctx=INSPECTOR, report_id=report_id, now=SLOT)

            db.delete(db.get(Report, report_id))
            with pytest.raises(IntegrityError):
                db.commit()
            db.rollback()

            assert db.get(Report, report_id) is not None
            assert db.get(Appointment, appointment.id, populate_existing=True).report_id == report_id
            linked = link_report(db, appointment_id=appointment.id, ctx=INSPECTOR, report_id=report_id)
            assert linked.report_id == report_id
        finally:
            db.close()
