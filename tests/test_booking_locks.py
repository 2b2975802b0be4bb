from __future__ import annotations

from datetime import timedelta

import pytest

from apps.doctors.app.config import AppointmentStatus
from apps.doctors.app.errors import ALREADY_PAID, SLOT_TAKEN, Conflict, InvalidTransition
from apps.doctors.app.locks import BookingLockManager, conflict_exists, holders_count
from apps.doctors.app.models import Appointment


def _acquire(clinic, appointment_id):
    with clinic.session() as s:
        a = s.get(Appointment, appointment_id)
        return BookingLockManager(s, clinic.settings, clinic.clock).acquire(a, 1)


def _holders(clinic, time="09:00-09:30"):
    with clinic.session() as s:
        return holders_count(s, clinic.doctor_id, clinic.day, time, clinic.clock())


def test_lock_blocks_other_patients_until_it_expires(clinic):
    first = clinic.book(clinic.patient(1))
    second = clinic.book(clinic.patient(2))

    grant = _acquire(clinic, first)
    assert grant.acquired
    assert grant.until == clinic.clock() + timedelta(minutes=clinic.settings.checkout_lock_minutes)
    assert _holders(clinic) == 1

    with pytest.raises(Conflict) as ei:
        _acquire(clinic, second)
    assert ei.value.code == SLOT_TAKEN

    clinic.clock.advance(minutes=clinic.settings.checkout_lock_minutes, seconds=1)
    assert _holders(clinic) == 0
    assert _acquire(clinic, second).acquired


def test_reacquire_keeps_existing_lock(clinic):
    aid = clinic.book(clinic.patient(1))
    grant = _acquire(clinic, aid)
    clinic.clock.advance(minutes=3)
    again = _acquire(clinic, aid)
    assert not again.acquired
    assert again.until == grant.until


def test_release_frees_the_slot(clinic):
    first = clinic.book(clinic.patient(1))
    second = clinic.book(clinic.patient(2))
    _acquire(clinic, first)
    with clinic.session() as s:
        a = s.get(Appointment, first)
        BookingLockManager(s, clinic.settings, clinic.clock).release(a)
        assert a.checkout_lock_until is None
    assert _acquire(clinic, second).acquired


@pytest.mark.parametrize("status", [AppointmentStatus.CANCELLED, AppointmentStatus.REJECTED])
def test_lock_on_closed_appointment_never_holds(clinic, status):
    first = clinic.book(clinic.patient(1))
    _acquire(clinic, first)
    # Simulate a row left with a live lock by an older writer.
    with clinic.session() as s:
        a = s.get(Appointment, first)
        a.status = status
        a.checkout_lock_until = clinic.clock() + timedelta(hours=1)
        s.commit()
    assert _holders(clinic) == 0

    with pytest.raises(InvalidTransition):
        _acquire(clinic, first)
    second = clinic.book(clinic.patient(2))
    assert _acquire(clinic, second).acquired


def test_paid_appointment_cannot_lock_again(clinic):
    aid = clinic.book(clinic.patient(1))
    clinic.pay(clinic.patient(1), aid)
    with pytest.raises(Conflict) as ei:
        _acquire(clinic, aid)
    assert ei.value.code == ALREADY_PAID


def test_conflict_exists_ignores_the_asking_appointment(clinic):
    aid = clinic.book(clinic.patient(1))
    with clinic.session() as s:
        assert not conflict_exists(s, clinic.doctor_id, clinic.day, "09:00-09:30", clinic.clock())
    _acquire(clinic, aid)
    with clinic.session() as s:
        now = clinic.clock()
        assert conflict_exists(s, clinic.doctor_id, clinic.day, "09:00-09:30", now)
        assert not conflict_exists(s, clinic.doctor_id, clinic.day, "09:00-09:30", now, exclude_id=aid)
        assert not conflict_exists(s, clinic.doctor_id, clinic.day, "09:35-10:05", now)
