"""
Appointment state machine.

Every status change is one conditional UPDATE guarded by the status and
``version`` the caller observed, plus any extra predicate the transition
needs (slot capacity, reschedule allowance). A writer that loses a race
gets a Conflict instead of silently overwriting the winner.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .auth import Caller
from .config import (
    AppointmentStatus,
    CancelledBy,
    PaymentStatus,
    Role,
    SessionStatus,
    Settings,
    get_settings,
)
from .errors import (
    IDEMPOTENCY_KEY_REUSED,
    SLOT_TAKEN,
    STALE_APPOINTMENT,
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    RescheduleLimitReached,
    ValidationError,
)
from .locks import capacity_available, serialize_doctor, sync_committed
from .models import APPOINTMENT_REF_PREFIX, Appointment, Doctor, Idempotency, new_ref
from .notifications import Notice, Notifier, dispatch, get_notifier
from .payments import PaymentSplitEngine
from .schemas import AppointmentCreate, AppointmentOut, RescheduleIn
from .slots import SlotComputer
from .timeutil import TimeRange, get_tz, normalize_range_label, slot_start_at, utcnow

_log = logging.getLogger("carebook.appointments")


class Action(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    NO_SHOW = "no_show"
    REQUEST_RESCHEDULE = "request_reschedule"
    ACCEPT_RESCHEDULE = "accept_reschedule"
    REJECT_RESCHEDULE = "reject_reschedule"
    COMPLETE = "complete"


_S = AppointmentStatus
TRANSITIONS: Dict[AppointmentStatus, Dict[Action, AppointmentStatus]] = {
    _S.PENDING: {
        Action.APPROVE: _S.CONFIRMED,
        Action.REJECT: _S.REJECTED,
        Action.CANCEL: _S.CANCELLED,
    },
    _S.CONFIRMED: {
        Action.CANCEL: _S.CANCELLED,
        Action.NO_SHOW: _S.CANCELLED,
        Action.REQUEST_RESCHEDULE: _S.RESCHEDULE_REQUESTED,
        Action.COMPLETE: _S.COMPLETED,
    },
    _S.RESCHEDULE_REQUESTED: {
        Action.ACCEPT_RESCHEDULE: _S.CONFIRMED,
        Action.REJECT_RESCHEDULE: _S.CONFIRMED,
        Action.CANCEL: _S.CANCELLED,
    },
    _S.REJECTED: {},
    _S.CANCELLED: {},
    _S.COMPLETED: {},
}


def next_status(current: AppointmentStatus, action: Action) -> AppointmentStatus:
    target = TRANSITIONS[current].get(action)
    if target is None:
        raise InvalidTransition(
            f"cannot {action.value.replace('_', ' ')} a {current.value} appointment",
            details={"status": current.value, "action": action.value},
        )
    return target


def _minor_to_major(value: Optional[int], multiplier: int) -> Optional[float]:
    if value is None:
        return None
    return value / multiplier


def appointment_to_out(a: Appointment, settings: Optional[Settings] = None) -> AppointmentOut:
    mult = (settings or get_settings()).minor_unit_multiplier
    return AppointmentOut(
        id=a.id,
        custom_id=a.custom_id,
        doctor_id=a.doctor_id,
        patient_id=a.patient_id,
        appointment_date=a.appointment_date,
        appointment_time=a.appointment_time,
        slot_id=a.slot_id,
        appointment_type=a.appointment_type,
        status=a.status,
        payment_status=a.payment_status,
        checkout_lock_until=a.checkout_lock_until,
        razorpay_order_id=a.razorpay_order_id,
        payment_id=a.payment_id,
        currency=a.currency,
        consultation_fees=_minor_to_major(a.consultation_fee_cents, mult),
        doctor_earnings=_minor_to_major(a.doctor_earnings_cents, mult),
        admin_commission=_minor_to_major(a.admin_commission_cents, mult),
        refund_amount=_minor_to_major(a.refund_cents, mult),
        reason=a.reason,
        reschedule_count=a.reschedule_count,
        proposed_date=a.proposed_date,
        proposed_time=a.proposed_time,
        rescheduled_from=a.rescheduled_from,
        cancelled_by=a.cancelled_by,
        cancellation_reason=a.cancellation_reason,
        rejection_reason=a.rejection_reason,
        session_status=a.session_status,
        session_start_time=a.session_start_time,
        session_end_time=a.session_end_time,
        doctor_notes=a.doctor_notes,
        prescription_url=a.prescription_url,
        post_consultation_chat_enabled=bool(a.post_consultation_chat_enabled),
        created_at=a.created_at,
    )


def _require_reason(reason: Optional[str], what: str) -> str:
    r = (reason or "").strip()
    if not r:
        raise ValidationError(f"{what} reason is required")
    return r


class AppointmentLifecycle:
    def __init__(
        self,
        s: Session,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        notifier: Optional[Notifier] = None,
    ):
        self.s = s
        self.settings = settings or get_settings()
        self.clock = clock
        self.notifier = notifier or get_notifier()
        self.slots = SlotComputer(s, self.settings, clock)

    # lookups and access

    def _load(self, appointment_id: str) -> Appointment:
        a = self.s.get(Appointment, appointment_id)
        if not a:
            raise NotFound("appointment not found", details={"appointment_id": appointment_id})
        return a

    def _doctor(self, doctor_id: int) -> Doctor:
        d = self.s.get(Doctor, doctor_id)
        if not d:
            raise NotFound("doctor not found", details={"doctor_id": doctor_id})
        return d

    def _caller_doctor_id(self, caller: Caller) -> Optional[int]:
        if caller.role is not Role.DOCTOR:
            return None
        return self.s.execute(select(Doctor.id).where(Doctor.user_id == caller.user_id)).scalar()

    def _assert_assigned_doctor(self, a: Appointment, caller: Caller) -> None:
        if caller.role is not Role.DOCTOR or self._caller_doctor_id(caller) != a.doctor_id:
            raise Forbidden("only the assigned doctor may do this")

    def _assert_patient(self, a: Appointment, caller: Caller) -> None:
        if caller.role is not Role.PATIENT or a.patient_id != caller.user_id:
            raise Forbidden("only the patient who booked may do this")

    def _assert_party(self, a: Appointment, caller: Caller) -> None:
        if caller.is_admin:
            return
        if caller.role is Role.PATIENT and a.patient_id == caller.user_id:
            return
        if caller.role is Role.DOCTOR and self._caller_doctor_id(caller) == a.doctor_id:
            return
        raise Forbidden("not your appointment")

    def get(self, appointment_id: str, caller: Caller) -> Appointment:
        a = self._load(appointment_id)
        self._assert_party(a, caller)
        return a

    def list_for(
        self, caller: Caller, status: Optional[AppointmentStatus] = None, page: int = 1, limit: int = 20
    ) -> Tuple[List[Appointment], int]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        conds = []
        if caller.role is Role.PATIENT:
            conds.append(Appointment.patient_id == caller.user_id)
        elif caller.role is Role.DOCTOR:
            conds.append(Appointment.doctor_id == self._caller_doctor_id(caller))
        if status is not None:
            conds.append(Appointment.status == status)
        total = self.s.execute(select(func.count()).select_from(Appointment).where(*conds)).scalar() or 0
        rows = (
            self.s.execute(
                select(Appointment)
                .where(*conds)
                .order_by(Appointment.appointment_date.desc(), Appointment.appointment_time.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        return list(rows), int(total)

    def _today_for(self, doctor_id: int) -> Tuple[date, datetime]:
        d = self._doctor(doctor_id)
        now_local = self.clock().astimezone(get_tz(d.timezone or self.settings.default_timezone))
        return now_local.date(), now_local

    # conditional writes

    def _write(
        self,
        a: Appointment,
        values: Dict[str, Any],
        extra_where: Sequence[Any] = (),
        on_guard_failure: Optional[Exception] = None,
    ) -> None:
        expected_status, expected_version = a.status, a.version
        vals = dict(values)
        vals["version"] = expected_version + 1
        vals["updated_at"] = self.clock()
        res = self.s.execute(
            update(Appointment)
            .where(
                Appointment.id == a.id,
                Appointment.status == expected_status,
                Appointment.version == expected_version,
                *extra_where,
            )
            .values(**vals)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            current = self.s.execute(
                select(Appointment.status, Appointment.version).where(Appointment.id == a.id)
            ).first()
            self.s.rollback()
            if on_guard_failure is not None and current is not None and tuple(current) == (
                expected_status,
                expected_version,
            ):
                raise on_guard_failure
            raise Conflict("appointment was modified concurrently, reload and retry", code=STALE_APPOINTMENT)
        self.s.commit()
        sync_committed(a, vals)

    def _transition(
        self,
        a: Appointment,
        action: Action,
        values: Optional[Dict[str, Any]] = None,
        extra_where: Sequence[Any] = (),
        on_guard_failure: Optional[Exception] = None,
    ) -> AppointmentStatus:
        target = next_status(a.status, action)
        before = a.status
        self._write(a, dict(values or {}, status=target), extra_where, on_guard_failure)
        _log.info(
            "appointment transition",
            extra={"appointment_id": a.id, "action": action.value, "from": before.value, "to": target.value},
        )
        return target

    def _notify(self, *notices: Notice) -> None:
        dispatch(self.notifier, [n for n in notices if n.user_id])

    def _doctor_user(self, a: Appointment) -> str:
        return self.s.execute(select(Doctor.user_id).where(Doctor.id == a.doctor_id)).scalar() or ""

    # creation

    def create(self, caller: Caller, body: AppointmentCreate, idempotency_key: Optional[str] = None) -> Appointment:
        if caller.role is not Role.PATIENT:
            raise Forbidden("only patients can book appointments")
        if idempotency_key:
            ie = self.s.get(Idempotency, idempotency_key)
            if ie and ie.ref_id:
                if ie.patient_id and ie.patient_id != caller.user_id:
                    raise Conflict("idempotency key already used", code=IDEMPOTENCY_KEY_REUSED)
                a0 = self.s.get(Appointment, ie.ref_id)
                if a0:
                    return a0

        doctor = self._doctor(body.doctor_id)
        if not doctor.is_active:
            raise ValidationError("doctor is not accepting appointments")
        fee = doctor.fee_for(body.appointment_type)
        if fee <= 0:
            raise ValidationError(f"{body.appointment_type.value} consultation fee not set for this doctor")

        time_label = normalize_range_label(body.appointment_time)
        slot = self.slots.find_slot(doctor.id, body.appointment_date, time_label)
        if slot is None:
            raise ValidationError(
                "requested time is not an offered slot",
                details={"date": body.appointment_date.isoformat(), "time": time_label},
            )
        if body.slot_id and body.slot_id != slot.slot_id:
            raise ValidationError("slot_id does not match the requested time", details={"slot_id": slot.slot_id})
        if not slot.available:
            raise Conflict("slot already taken", code=SLOT_TAKEN)

        dup = self.s.execute(
            select(Appointment.id).where(
                Appointment.patient_id == caller.user_id,
                Appointment.doctor_id == doctor.id,
                Appointment.appointment_date == body.appointment_date,
                Appointment.appointment_time == time_label,
                Appointment.status.in_([_S.PENDING, _S.CONFIRMED, _S.RESCHEDULE_REQUESTED]),
            )
        ).first()
        if dup:
            raise Conflict("you already have an appointment for this slot", details={"appointment_id": dup[0]})

        ref = new_ref(APPOINTMENT_REF_PREFIX)
        for _ in range(5):
            if not self.s.execute(select(Appointment.id).where(Appointment.custom_id == ref)).first():
                break
            ref = new_ref(APPOINTMENT_REF_PREFIX)

        a = Appointment(
            custom_id=ref,
            doctor_id=doctor.id,
            patient_id=caller.user_id,
            appointment_date=body.appointment_date,
            appointment_time=time_label,
            slot_id=slot.slot_id,
            appointment_type=body.appointment_type,
            status=_S.PENDING,
            payment_status=PaymentStatus.PENDING,
            currency=self.settings.currency,
            consultation_fee_cents=fee,
            reason=(body.reason or None),
            reschedule_count=0,
            version=1,
        )
        self.s.add(a)
        self.s.flush()
        if idempotency_key:
            self.s.add(Idempotency(key=idempotency_key, patient_id=caller.user_id, ref_id=a.id))
        self.s.commit()
        _log.info(
            "appointment created",
            extra={"appointment_id": a.id, "doctor_id": doctor.id, "date": a.appointment_date.isoformat(), "time": time_label},
        )
        self._notify(
            Notice(doctor.user_id, "New appointment request", f"{a.custom_id} on {a.appointment_date} {time_label}", "appointment_requested", a.id)
        )
        return a

    # doctor decisions

    def approve(self, appointment_id: str, caller: Caller) -> Appointment:
        a = self._load(appointment_id)
        self._assert_assigned_doctor(a, caller)
        next_status(a.status, Action.APPROVE)
        capacity = self.slots.capacity(a.doctor_id, a.appointment_date, a.appointment_time)
        serialize_doctor(self.s, a.doctor_id)
        self._transition(
            a,
            Action.APPROVE,
            extra_where=[
                capacity_available(a.doctor_id, a.appointment_date, a.appointment_time, capacity, self.clock(), a.id)
            ],
            on_guard_failure=Conflict("slot already taken", code=SLOT_TAKEN),
        )
        self._notify(Notice(a.patient_id, "Appointment confirmed", f"{a.custom_id} was approved", "appointment_confirmed", a.id))
        return a

    def reject(self, appointment_id: str, caller: Caller, reason: Optional[str]) -> Appointment:
        a = self._load(appointment_id)
        self._assert_assigned_doctor(a, caller)
        why = _require_reason(reason, "rejection")
        self._transition(a, Action.REJECT, {"rejection_reason": why, "checkout_lock_until": None})
        if a.payment_status == PaymentStatus.PAID:
            self._payments().settle_cancellation(a, CancelledBy.DOCTOR)
        self._notify(Notice(a.patient_id, "Appointment rejected", why, "appointment_rejected", a.id))
        return a

    def complete(
        self, appointment_id: str, caller: Caller, doctor_notes: Optional[str] = None, prescription_url: Optional[str] = None
    ) -> Appointment:
        a = self._load(appointment_id)
        self._assert_assigned_doctor(a, caller)
        values: Dict[str, Any] = {
            "doctor_notes": doctor_notes or a.doctor_notes,
            "prescription_url": prescription_url or a.prescription_url,
            "session_end_time": a.session_end_time or self.clock(),
        }
        if a.session_status is not None:
            values["session_status"] = SessionStatus.ENDED
        self._transition(a, Action.COMPLETE, values)
        self._notify(Notice(a.patient_id, "Consultation completed", f"{a.custom_id} is complete", "appointment_completed", a.id))
        return a

    def mark_no_show(self, appointment_id: str, caller: Caller) -> Appointment:
        a = self._load(appointment_id)
        self._assert_assigned_doctor(a, caller)
        next_status(a.status, Action.NO_SHOW)
        if a.payment_status != PaymentStatus.PAID:
            raise InvalidTransition("only paid appointments can be marked as no-show")
        _, now_local = self._today_for(a.doctor_id)
        start = slot_start_at(a.appointment_date, TimeRange.parse_label(a.appointment_time).start, now_local.tzinfo)
        if now_local < start:
            raise InvalidTransition("the appointment has not started yet")
        self._transition(
            a,
            Action.NO_SHOW,
            {
                "cancelled_by": CancelledBy.NO_SHOW,
                "cancellation_reason": "patient did not attend",
                "cancelled_at": self.clock(),
                "checkout_lock_until": None,
            },
        )
        self._payments().settle_cancellation(a, CancelledBy.NO_SHOW)
        return a

    # cancellation

    def cancel(self, appointment_id: str, caller: Caller, reason: Optional[str]) -> Appointment:
        a = self._load(appointment_id)
        self._assert_party(a, caller)
        why = _require_reason(reason, "cancellation")
        by = {Role.PATIENT: CancelledBy.PATIENT, Role.DOCTOR: CancelledBy.DOCTOR, Role.ADMIN: CancelledBy.ADMIN}[caller.role]
        self._transition(
            a,
            Action.CANCEL,
            {
                "cancelled_by": by,
                "cancellation_reason": why,
                "cancelled_at": self.clock(),
                "checkout_lock_until": None,
                "proposed_date": None,
                "proposed_time": None,
            },
        )
        if a.payment_status == PaymentStatus.PAID:
            self._payments().settle_cancellation(a, by)
        doctor_user = self._doctor_user(a)
        notices = []
        if by is not CancelledBy.PATIENT:
            notices.append(Notice(a.patient_id, "Appointment cancelled", why, "appointment_cancelled", a.id))
        if by is not CancelledBy.DOCTOR:
            notices.append(Notice(doctor_user, "Appointment cancelled", why, "appointment_cancelled", a.id))
        self._notify(*notices)
        return a

    # reschedule

    def request_reschedule(self, appointment_id: str, caller: Caller, body: RescheduleIn) -> Appointment:
        a = self._load(appointment_id)
        self._assert_patient(a, caller)
        if a.reschedule_count >= 1:
            raise RescheduleLimitReached("an appointment can be rescheduled only once")
        next_status(a.status, Action.REQUEST_RESCHEDULE)
        label = normalize_range_label(body.new_time)
        if body.new_date == a.appointment_date and label == a.appointment_time:
            raise ValidationError("new time is the same as the current one")
        slot = self.slots.find_slot(a.doctor_id, body.new_date, label)
        if slot is None:
            raise ValidationError("requested time is not an offered slot")
        if not slot.available:
            raise Conflict("slot already taken", code=SLOT_TAKEN)
        self._transition(
            a,
            Action.REQUEST_RESCHEDULE,
            {
                "reschedule_count": a.reschedule_count + 1,
                "proposed_date": body.new_date,
                "proposed_time": label,
                "reschedule_reason": (body.reason or None),
            },
            extra_where=[Appointment.reschedule_count < 1],
            on_guard_failure=RescheduleLimitReached("an appointment can be rescheduled only once"),
        )
        self._notify(
            Notice(self._doctor_user(a), "Reschedule requested", f"{a.custom_id} -> {body.new_date} {label}", "reschedule_requested", a.id)
        )
        return a

    def accept_reschedule(self, appointment_id: str, caller: Caller) -> Appointment:
        a = self._load(appointment_id)
        self._assert_assigned_doctor(a, caller)
        next_status(a.status, Action.ACCEPT_RESCHEDULE)
        if a.proposed_date is None or not a.proposed_time:
            raise InvalidTransition("no reschedule proposal to accept")
        slot = self.slots.find_slot(a.doctor_id, a.proposed_date, a.proposed_time)
        if slot is None:
            raise Conflict("the proposed slot is no longer offered", code=SLOT_TAKEN)
        serialize_doctor(self.s, a.doctor_id)
        self._transition(
            a,
            Action.ACCEPT_RESCHEDULE,
            {
                "appointment_date": a.proposed_date,
                "appointment_time": a.proposed_time,
                "slot_id": slot.slot_id,
                "rescheduled_from": f"{a.appointment_date.isoformat()} {a.appointment_time}",
                "proposed_date": None,
                "proposed_time": None,
            },
            extra_where=[
                capacity_available(
                    a.doctor_id, a.proposed_date, a.proposed_time, slot.max_patients, self.clock(), a.id
                )
            ],
            on_guard_failure=Conflict("the proposed slot is already taken", code=SLOT_TAKEN),
        )
        self._notify(
            Notice(a.patient_id, "Reschedule accepted", f"{a.custom_id} moved to {a.appointment_date} {a.appointment_time}", "reschedule_accepted", a.id)
        )
        return a

    def reject_reschedule(self, appointment_id: str, caller: Caller, reason: Optional[str]) -> Appointment:
        a = self._load(appointment_id)
        self._assert_assigned_doctor(a, caller)
        why = _require_reason(reason, "rejection")
        # The allowance stays consumed.
        self._transition(
            a,
            Action.REJECT_RESCHEDULE,
            {"proposed_date": None, "proposed_time": None, "rejection_reason": why},
        )
        self._notify(Notice(a.patient_id, "Reschedule declined", why, "reschedule_rejected", a.id))
        return a

    # consultation side channels; none of these change status

    def _assert_consultable(self, a: Appointment) -> None:
        if a.status != _S.CONFIRMED or a.payment_status != PaymentStatus.PAID:
            raise InvalidTransition("consultation requires a confirmed, paid appointment")
        today, _ = self._today_for(a.doctor_id)
        if a.appointment_date != today:
            raise InvalidTransition("consultation is only possible on the appointment day")

    def start_consultation(self, appointment_id: str, caller: Caller) -> Appointment:
        a = self._load(appointment_id)
        self._assert_party(a, caller)
        if caller.is_admin:
            raise Forbidden("only the patient or the doctor can join a consultation")
        self._assert_consultable(a)
        if a.session_status == SessionStatus.ENDED:
            raise InvalidTransition("the consultation has already ended")
        if caller.role is Role.DOCTOR:
            values: Dict[str, Any] = {"session_status": SessionStatus.ACTIVE}
            if a.session_start_time is None:
                values["session_start_time"] = self.clock()
        elif a.session_status is None:
            values = {"session_status": SessionStatus.WAITING_FOR_DOCTOR}
        else:
            return a
        self._write(a, values)
        _log.info("consultation joined", extra={"appointment_id": a.id, "role": caller.role.value})
        return a

    def update_session_status(self, appointment_id: str, caller: Caller, status: SessionStatus) -> Appointment:
        a = self._load(appointment_id)
        self._assert_assigned_doctor(a, caller)
        self._assert_consultable(a)
        if a.session_status == SessionStatus.ENDED:
            raise InvalidTransition("the consultation has already ended")
        values: Dict[str, Any] = {"session_status": status}
        now = self.clock()
        if a.session_start_time is None and status is not SessionStatus.WAITING_FOR_DOCTOR:
            values["session_start_time"] = now
        if status is SessionStatus.ENDED:
            values["session_end_time"] = now
        self._write(a, values)
        _log.info("session status", extra={"appointment_id": a.id, "session_status": status.value})
        return a

    def set_post_consultation_chat(self, appointment_id: str, caller: Caller, enabled: bool) -> Appointment:
        a = self._load(appointment_id)
        self._assert_assigned_doctor(a, caller)
        self._write(a, {"post_consultation_chat_enabled": bool(enabled)})
        return a

    def update_notes(
        self, appointment_id: str, caller: Caller, doctor_notes: Optional[str] = None, prescription_url: Optional[str] = None
    ) -> Appointment:
        a = self._load(appointment_id)
        self._assert_assigned_doctor(a, caller)
        if a.status not in (_S.CONFIRMED, _S.COMPLETED):
            raise InvalidTransition("notes can only be attached to confirmed or completed appointments")
        values: Dict[str, Any] = {}
        if doctor_notes is not None:
            values["doctor_notes"] = doctor_notes
        if prescription_url is not None:
            values["prescription_url"] = prescription_url
        if not values:
            raise ValidationError("nothing to update")
        self._write(a, values)
        return a

    def _payments(self) -> PaymentSplitEngine:
        return PaymentSplitEngine(self.s, self.settings, self.clock, notifier=self.notifier)
