"""
Checkout locks embedded in the appointment row.

An appointment *holds* its (doctor, date, time) slot when it is not
cancelled/rejected and it is confirmed (or awaiting a reschedule decision),
paid, or carries a ``checkout_lock_until`` in the future. Expired locks are
ignored wherever they are read; nothing sweeps them.

Claiming a slot is a single conditional UPDATE whose WHERE clause counts the
other holders, so the check and the write cannot interleave with another
claim. On SQLite every transaction starts with BEGIN IMMEDIATE (see db.py);
elsewhere the doctor row is locked FOR UPDATE first.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, aliased
from sqlalchemy.orm.attributes import set_committed_value

from .config import (
    NON_HOLDING_STATUSES,
    TERMINAL_STATUSES,
    AppointmentStatus,
    PaymentStatus,
    Settings,
    get_settings,
)
from .db import is_sqlite
from .errors import ALREADY_PAID, SLOT_TAKEN, Conflict, InvalidTransition, NotFound
from .models import Appointment, Doctor
from .timeutil import utcnow

_log = logging.getLogger("carebook.locks")

HOLDING_STATUSES = (AppointmentStatus.CONFIRMED, AppointmentStatus.RESCHEDULE_REQUESTED)


def holder_predicate(now: datetime, entity: Any = Appointment):
    return and_(
        entity.status.not_in(list(NON_HOLDING_STATUSES)),
        or_(
            entity.status.in_(HOLDING_STATUSES),
            entity.payment_status == PaymentStatus.PAID,
            entity.checkout_lock_until > now,
        ),
    )


def holders_subquery(doctor_id: int, day: date, time_label: str, now: datetime, exclude_id: Optional[str] = None):
    other = aliased(Appointment)
    conds = [
        other.doctor_id == doctor_id,
        other.appointment_date == day,
        other.appointment_time == time_label,
        holder_predicate(now, other),
    ]
    if exclude_id is not None:
        conds.append(other.id != exclude_id)
    return select(func.count()).select_from(other).where(*conds).scalar_subquery()


def capacity_available(doctor_id: int, day: date, time_label: str, capacity: int, now: datetime, exclude_id: str):
    """WHERE fragment: fewer than ``capacity`` other holders of the slot."""
    return holders_subquery(doctor_id, day, time_label, now, exclude_id) < capacity


def holders_count(s: Session, doctor_id: int, day: date, time_label: str, now: datetime, exclude_id: Optional[str] = None) -> int:
    return int(s.execute(select(holders_subquery(doctor_id, day, time_label, now, exclude_id))).scalar() or 0)


def conflict_exists(s: Session, doctor_id: int, day: date, time_label: str, now: datetime, exclude_id: Optional[str] = None) -> bool:
    return holders_count(s, doctor_id, day, time_label, now, exclude_id) > 0


def serialize_doctor(s: Session, doctor_id: int) -> None:
    # SQLite already holds the database write lock from BEGIN IMMEDIATE.
    if not is_sqlite(s):
        s.execute(select(Doctor.id).where(Doctor.id == doctor_id).with_for_update())


def sync_committed(obj: Any, values: Dict[str, Any]) -> None:
    """Mirror a Core UPDATE onto the loaded instance without dirtying it."""
    for k, v in values.items():
        set_committed_value(obj, k, v)


@dataclass(frozen=True)
class LockGrant:
    until: datetime
    acquired: bool


class BookingLockManager:
    def __init__(self, s: Session, settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow):
        self.s = s
        self.settings = settings or get_settings()
        self.clock = clock

    def acquire(self, appt: Appointment, capacity: int) -> LockGrant:
        """
        Claim the appointment's slot for one checkout window.

        Returns ``acquired=False`` when the appointment already holds an
        unexpired lock; that lock is left untouched. Raises ``Conflict``
        (SLOT_TAKEN) when other holders fill the slot.
        """
        now = self.clock()
        until = now + timedelta(minutes=self.settings.checkout_lock_minutes)
        appt_id, doctor_id = appt.id, appt.doctor_id
        serialize_doctor(self.s, doctor_id)
        stmt = (
            update(Appointment)
            .where(
                Appointment.id == appt_id,
                Appointment.payment_status != PaymentStatus.PAID,
                Appointment.status.not_in(list(TERMINAL_STATUSES)),
                or_(Appointment.checkout_lock_until.is_(None), Appointment.checkout_lock_until <= now),
                capacity_available(
                    doctor_id, appt.appointment_date, appt.appointment_time, capacity, now, appt_id
                ),
            )
            .values(checkout_lock_until=until, version=Appointment.version + 1)
            .execution_options(synchronize_session=False)
        )
        if self.s.execute(stmt).rowcount == 1:
            self.s.commit()
            sync_committed(appt, {"checkout_lock_until": until})
            self.s.expire(appt, ["version"])
            _log.info("checkout lock acquired", extra={"appointment_id": appt_id, "until": until.isoformat()})
            return LockGrant(until=until, acquired=True)

        row = self.s.execute(
            select(Appointment.status, Appointment.payment_status, Appointment.checkout_lock_until).where(
                Appointment.id == appt_id
            )
        ).first()
        self.s.rollback()
        if row is None:
            raise NotFound("appointment not found")
        status, payment_status, current = row
        if payment_status == PaymentStatus.PAID:
            raise Conflict("appointment already paid", code=ALREADY_PAID)
        if status in TERMINAL_STATUSES:
            raise InvalidTransition(f"cannot start checkout for a {status.value} appointment")
        if current is not None and current > now:
            return LockGrant(until=current, acquired=False)
        _log.info("slot claim refused", extra={"appointment_id": appt_id, "doctor_id": doctor_id})
        raise Conflict("slot already taken", code=SLOT_TAKEN)

    def release(self, appt: Appointment) -> None:
        appointment_id = appt.id
        self.s.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id)
            .values(checkout_lock_until=None, version=Appointment.version + 1)
            .execution_options(synchronize_session=False)
        )
        self.s.commit()
        sync_committed(appt, {"checkout_lock_until": None})
        self.s.expire(appt, ["version"])
        _log.info("checkout lock released", extra={"appointment_id": appointment_id})
