from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from apps.doctors.app.auth import Caller
from apps.doctors.app.config import AppointmentStatus, AppointmentType, CancelledBy, PaymentStatus, Role, SessionStatus
from apps.doctors.app.errors import (
    IDEMPOTENCY_KEY_REUSED,
    SLOT_TAKEN,
    Conflict,
    Forbidden,
    InvalidTransition,
    RescheduleLimitReached,
    ValidationError,
)
from apps.doctors.app.lifecycle import TRANSITIONS, Action, next_status
from apps.doctors.app.schemas import AppointmentCreate, RescheduleIn


def _create(clinic, patient, time="09:00-09:30", key=None, **kw):
    body = AppointmentCreate(
        doctor_id=clinic.doctor_id,
        appointment_date=kw.pop("day", clinic.day),
        appointment_time=time,
        appointment_type=kw.pop("kind", AppointmentType.VIDEO),
        **kw,
    )
    with clinic.session() as s:
        return clinic.lifecycle(s).create(patient, body, key)


def test_transition_table_covers_every_status():
    assert set(TRANSITIONS) == set(AppointmentStatus)
    for terminal in (AppointmentStatus.REJECTED, AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED):
        for action in Action:
            with pytest.raises(InvalidTransition):
                next_status(terminal, action)
    assert next_status(AppointmentStatus.CONFIRMED, Action.NO_SHOW) is AppointmentStatus.CANCELLED
    assert next_status(AppointmentStatus.RESCHEDULE_REQUESTED, Action.REJECT_RESCHEDULE) is AppointmentStatus.CONFIRMED


def test_create_snapshots_fee_and_notifies_doctor(clinic):
    a = _create(clinic, clinic.patient(1), kind=AppointmentType.CHAT)
    assert a.status is AppointmentStatus.PENDING
    assert a.payment_status is PaymentStatus.PENDING
    assert a.consultation_fee_cents == 50_000
    assert a.custom_id.startswith("APP") and len(a.custom_id) == 9
    assert a.slot_id.endswith("-0900")
    assert "appointment_requested" in clinic.notifier.kinds_for("doc-1")


def test_create_rejects_unoffered_times_and_bad_slot_ids(clinic):
    with pytest.raises(ValidationError):
        _create(clinic, clinic.patient(1), "09:15-09:45")
    with pytest.raises(ValidationError):
        _create(clinic, clinic.patient(1), "09:00-09:30", day=clinic.day + timedelta(days=1))
    with pytest.raises(ValidationError):
        _create(clinic, clinic.patient(1), "09:00-09:30", slot_id="SLO000000-0900")


def test_create_refuses_duplicates_and_taken_slots(clinic):
    _create(clinic, clinic.patient(1))
    with pytest.raises(Conflict):
        _create(clinic, clinic.patient(1))

    clinic.confirmed_paid(clinic.patient(2), "09:35-10:05")
    with pytest.raises(Conflict) as ei:
        _create(clinic, clinic.patient(3), "09:35-10:05")
    assert ei.value.code == SLOT_TAKEN


def test_create_with_idempotency_key_returns_same_appointment(clinic):
    first = _create(clinic, clinic.patient(1), key="idem-1")
    again = _create(clinic, clinic.patient(1), key="idem-1")
    assert again.id == first.id
    with pytest.raises(Conflict) as ei:
        _create(clinic, clinic.patient(2), key="idem-1")
    assert ei.value.code == IDEMPOTENCY_KEY_REUSED


def test_only_patients_book(clinic):
    with pytest.raises(Forbidden):
        _create(clinic, clinic.doctor)


def test_approve_and_reject_by_assigned_doctor_only(clinic):
    aid = clinic.book(clinic.patient(1))
    clinic.add_doctor("doc-2")

    with clinic.session() as s:
        with pytest.raises(Forbidden):
            clinic.lifecycle(s).approve(aid, Caller("doc-2", Role.DOCTOR))
    a = clinic.approve(aid)
    assert a.status is AppointmentStatus.CONFIRMED
    with clinic.session() as s:
        with pytest.raises(InvalidTransition):
            clinic.lifecycle(s).reject(aid, clinic.doctor, "busy")


def test_approve_fails_when_slot_filled_meanwhile(clinic):
    pending = clinic.book(clinic.patient(1))
    clinic.confirmed_paid(clinic.patient(2))
    with clinic.session() as s:
        with pytest.raises(Conflict) as ei:
            clinic.lifecycle(s).approve(pending, clinic.doctor)
    assert ei.value.code == SLOT_TAKEN
    assert clinic.get(pending).status is AppointmentStatus.PENDING


def test_reject_and_cancel_require_a_reason(clinic):
    aid = clinic.book(clinic.patient(1))
    with clinic.session() as s:
        with pytest.raises(ValidationError):
            clinic.lifecycle(s).reject(aid, clinic.doctor, "  ")
    with clinic.session() as s:
        with pytest.raises(ValidationError):
            clinic.lifecycle(s).cancel(aid, clinic.patient(1), None)
    with clinic.session() as s:
        a = clinic.lifecycle(s).reject(aid, clinic.doctor, "not available")
    assert a.status is AppointmentStatus.REJECTED
    assert a.rejection_reason == "not available"


def test_cancel_records_initiator_and_frees_slot(clinic):
    aid = clinic.book(clinic.patient(1))
    with clinic.session() as s:
        a = clinic.lifecycle(s).cancel(aid, clinic.patient(1), "changed my mind")
    assert a.status is AppointmentStatus.CANCELLED
    assert a.cancelled_by is CancelledBy.PATIENT
    assert a.checkout_lock_until is None
    with clinic.session() as s:
        with pytest.raises(InvalidTransition):
            clinic.lifecycle(s).cancel(aid, clinic.patient(1), "again")

    theirs = clinic.book(clinic.patient(2))
    with clinic.session() as s:
        with pytest.raises(Forbidden):
            clinic.lifecycle(s).cancel(theirs, clinic.patient(3), "not mine")


def test_reschedule_is_allowed_once(clinic):
    aid = clinic.confirmed_paid(clinic.patient(1))
    req = RescheduleIn(new_date=clinic.day, new_time="10:10-10:40", reason="traffic")
    with clinic.session() as s:
        a = clinic.lifecycle(s).request_reschedule(aid, clinic.patient(1), req)
    assert a.status is AppointmentStatus.RESCHEDULE_REQUESTED
    assert a.reschedule_count == 1
    assert (a.proposed_date, a.proposed_time) == (clinic.day, "10:10-10:40")

    with clinic.session() as s:
        a = clinic.lifecycle(s).accept_reschedule(aid, clinic.doctor)
    assert a.status is AppointmentStatus.CONFIRMED
    assert a.appointment_time == "10:10-10:40"
    assert a.rescheduled_from == f"{clinic.day.isoformat()} 09:00-09:30"
    assert a.proposed_date is None

    with clinic.session() as s:
        with pytest.raises(RescheduleLimitReached):
            clinic.lifecycle(s).request_reschedule(
                aid, clinic.patient(1), RescheduleIn(new_date=clinic.day, new_time="09:35-10:05")
            )


def test_rejected_reschedule_still_consumes_allowance(clinic):
    aid = clinic.confirmed_paid(clinic.patient(1))
    with clinic.session() as s:
        clinic.lifecycle(s).request_reschedule(
            aid, clinic.patient(1), RescheduleIn(new_date=clinic.day, new_time="09:35-10:05")
        )
    with clinic.session() as s:
        a = clinic.lifecycle(s).reject_reschedule(aid, clinic.doctor, "fully booked")
    assert a.status is AppointmentStatus.CONFIRMED
    assert a.appointment_time == "09:00-09:30"
    assert a.reschedule_count == 1
    with clinic.session() as s:
        with pytest.raises(RescheduleLimitReached):
            clinic.lifecycle(s).request_reschedule(
                aid, clinic.patient(1), RescheduleIn(new_date=clinic.day, new_time="10:10-10:40")
            )


def test_reschedule_target_must_be_free_and_different(clinic):
    aid = clinic.confirmed_paid(clinic.patient(1))
    clinic.confirmed_paid(clinic.patient(2), "09:35-10:05")
    with clinic.session() as s:
        with pytest.raises(ValidationError):
            clinic.lifecycle(s).request_reschedule(
                aid, clinic.patient(1), RescheduleIn(new_date=clinic.day, new_time="09:00-09:30")
            )
    with clinic.session() as s:
        with pytest.raises(Conflict):
            clinic.lifecycle(s).request_reschedule(
                aid, clinic.patient(1), RescheduleIn(new_date=clinic.day, new_time="09:35-10:05")
            )
    assert clinic.get(aid).reschedule_count == 0


def test_reschedule_requested_keeps_holding_original_slot(clinic):
    aid = clinic.confirmed_paid(clinic.patient(1))
    with clinic.session() as s:
        clinic.lifecycle(s).request_reschedule(
            aid, clinic.patient(1), RescheduleIn(new_date=clinic.day, new_time="10:10-10:40")
        )
    with pytest.raises(Conflict):
        _create(clinic, clinic.patient(2), "09:00-09:30")


def test_consultation_only_on_the_day(clinic):
    aid = clinic.confirmed_paid(clinic.patient(1))
    with clinic.session() as s:
        with pytest.raises(InvalidTransition):
            clinic.lifecycle(s).start_consultation(aid, clinic.doctor)

    clinic.clock.set(datetime(2030, 1, 7, 8, 55, tzinfo=timezone.utc))
    with clinic.session() as s:
        a = clinic.lifecycle(s).start_consultation(aid, clinic.patient(1))
    assert a.session_status is SessionStatus.WAITING_FOR_DOCTOR
    with clinic.session() as s:
        a = clinic.lifecycle(s).start_consultation(aid, clinic.doctor)
    assert a.session_status is SessionStatus.ACTIVE
    assert a.session_start_time == clinic.clock()

    clinic.clock.advance(minutes=30)
    with clinic.session() as s:
        a = clinic.lifecycle(s).update_session_status(aid, clinic.doctor, SessionStatus.ENDED)
    assert a.session_end_time == clinic.clock()
    with clinic.session() as s:
        a = clinic.lifecycle(s).complete(aid, clinic.doctor, doctor_notes="rest", prescription_url="https://rx/1")
    assert a.status is AppointmentStatus.COMPLETED
    assert a.doctor_notes == "rest"


def test_notes_and_chat_toggle(clinic):
    aid = clinic.book(clinic.patient(1))
    with clinic.session() as s:
        with pytest.raises(InvalidTransition):
            clinic.lifecycle(s).update_notes(aid, clinic.doctor, doctor_notes="x")
    clinic.pay(clinic.patient(1), aid)
    clinic.approve(aid)
    with clinic.session() as s:
        a = clinic.lifecycle(s).update_notes(aid, clinic.doctor, doctor_notes="bring reports")
    assert a.doctor_notes == "bring reports"
    with clinic.session() as s:
        a = clinic.lifecycle(s).set_post_consultation_chat(aid, clinic.doctor, True)
    assert a.post_consultation_chat_enabled is True


def test_no_show_needs_payment_and_a_started_slot(clinic):
    unpaid = clinic.book(clinic.patient(2), "09:35-10:05")
    clinic.approve(unpaid)
    aid = clinic.confirmed_paid(clinic.patient(1))
    with clinic.session() as s:
        with pytest.raises(InvalidTransition):
            clinic.lifecycle(s).mark_no_show(aid, clinic.doctor)

    clinic.clock.set(datetime(2030, 1, 7, 9, 15, tzinfo=timezone.utc))
    with clinic.session() as s:
        with pytest.raises(InvalidTransition):
            clinic.lifecycle(s).mark_no_show(unpaid, clinic.doctor)
    with clinic.session() as s:
        a = clinic.lifecycle(s).mark_no_show(aid, clinic.doctor)
    assert a.status is AppointmentStatus.CANCELLED
    assert a.cancelled_by is CancelledBy.NO_SHOW
    # The patient forfeits the fee; the payment split stands.
    assert a.payment_status is PaymentStatus.PAID
    assert (a.doctor_earnings_cents, a.admin_commission_cents, a.refund_cents) == (80_000, 20_000, 0)


def test_list_is_scoped_to_the_caller(clinic):
    clinic.book(clinic.patient(1))
    clinic.book(clinic.patient(2), "09:35-10:05")
    with clinic.session() as s:
        lc = clinic.lifecycle(s)
        mine, total = lc.list_for(clinic.patient(1))
        assert total == 1 and mine[0].patient_id == "patient-1"
        _, total = lc.list_for(clinic.doctor)
        assert total == 2
        _, total = lc.list_for(clinic.admin, status=AppointmentStatus.CONFIRMED)
        assert total == 0
