from __future__ import annotations

from datetime import date, datetime
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from .auth import Caller, get_caller, require_internal_secret, require_role
from .config import AppointmentStatus, Role, Settings, Weekday, get_settings
from .db import get_session
from .errors import Forbidden, ValidationError
from .lifecycle import AppointmentLifecycle, appointment_to_out
from .notifications import Notifier, get_notifier
from .payments import PaymentSplitEngine
from .schedule_store import ScheduleStore, schedule_to_out
from .schemas import (
    AppointmentCreate,
    AppointmentOut,
    AppointmentPage,
    AvailableSlotsOut,
    BlockDateIn,
    ChatToggleIn,
    CompleteIn,
    EarningsOverviewOut,
    LedgerEntryOut,
    LedgerPage,
    OrderIn,
    OrderOut,
    ReasonIn,
    RecurringSlotsIn,
    RecurringSlotsOut,
    RecurringSlotsRemove,
    RescheduleIn,
    ScheduleCreate,
    ScheduleOut,
    ScheduleUpdate,
    SessionStatusIn,
    SlotOut,
    UnlockIn,
    VerifyIn,
    VerifyOut,
    WalletOut,
)
from .timeutil import utcnow

router = APIRouter(dependencies=[Depends(require_internal_secret)])

_doctor_or_admin = require_role(Role.DOCTOR, Role.ADMIN)
_doctor_only = require_role(Role.DOCTOR)
_patient_only = require_role(Role.PATIENT)
_admin_only = require_role(Role.ADMIN)


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_lifecycle(
    s: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
) -> AppointmentLifecycle:
    return AppointmentLifecycle(s, settings, clock, notifier)


def get_store(
    s: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ScheduleStore:
    return ScheduleStore(s, settings, clock)


def get_payments(
    s: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentSplitEngine:
    # The gateway is resolved on first use so that an unconfigured
    # deployment still answers reads and reports 503 on checkout.
    return PaymentSplitEngine(s, settings, clock, notifier=notifier)


def _managed_doctor_id(store: ScheduleStore, caller: Caller, doctor_id: Optional[int]) -> int:
    if caller.is_admin:
        if doctor_id is None:
            raise ValidationError("doctor_id is required")
        store.doctor(doctor_id)
        return doctor_id
    own = store.doctor_for_user(caller.user_id).id
    if doctor_id is not None and doctor_id != own:
        raise Forbidden("doctors can only manage their own schedule")
    return own


# schedule


@router.post("/schedule", response_model=ScheduleOut)
def create_schedule(
    req: ScheduleCreate, caller: Caller = Depends(_doctor_or_admin), store: ScheduleStore = Depends(get_store)
):
    doctor_id = _managed_doctor_id(store, caller, req.doctor_id)
    return schedule_to_out(store.create(doctor_id, req))


@router.get("/schedule", response_model=ScheduleOut)
def my_schedule(caller: Caller = Depends(_doctor_only), store: ScheduleStore = Depends(get_store)):
    return schedule_to_out(store.get_for_user(caller.user_id))


@router.post("/schedule/recurring-slots", response_model=RecurringSlotsOut)
def add_recurring_slots(
    req: RecurringSlotsIn, caller: Caller = Depends(_doctor_only), store: ScheduleStore = Depends(get_store)
):
    return store.add_recurring_slots(store.doctor_for_user(caller.user_id).id, req)


@router.delete("/schedule/recurring-slots", response_model=RecurringSlotsOut)
def remove_recurring_slots(
    req: RecurringSlotsRemove, caller: Caller = Depends(_doctor_only), store: ScheduleStore = Depends(get_store)
):
    return store.remove_recurring_slots(store.doctor_for_user(caller.user_id).id, req)


@router.delete("/schedule/ranges/{weekday}/{range_id}", response_model=ScheduleOut)
def delete_range(
    weekday: Weekday, range_id: str, caller: Caller = Depends(_doctor_only), store: ScheduleStore = Depends(get_store)
):
    return schedule_to_out(store.delete_range(store.doctor_for_user(caller.user_id).id, weekday, range_id))


@router.get("/schedule/{doctor_id}", response_model=ScheduleOut)
def get_schedule(doctor_id: int, caller: Caller = Depends(get_caller), store: ScheduleStore = Depends(get_store)):
    return schedule_to_out(store.get(doctor_id))


@router.put("/schedule/{doctor_id}", response_model=ScheduleOut)
def update_schedule(
    doctor_id: int,
    req: ScheduleUpdate,
    caller: Caller = Depends(_doctor_or_admin),
    store: ScheduleStore = Depends(get_store),
):
    doctor_id = _managed_doctor_id(store, caller, doctor_id)
    return schedule_to_out(store.update(doctor_id, req))


@router.delete("/schedule/{doctor_id}")
def delete_schedule(doctor_id: int, caller: Caller = Depends(_doctor_or_admin), store: ScheduleStore = Depends(get_store)):
    doctor_id = _managed_doctor_id(store, caller, doctor_id)
    store.delete(doctor_id)
    return {"deleted": True, "doctor_id": doctor_id}


@router.post("/schedule/{doctor_id}/block-date", response_model=ScheduleOut)
def block_date(
    doctor_id: int,
    req: BlockDateIn,
    caller: Caller = Depends(_doctor_or_admin),
    store: ScheduleStore = Depends(get_store),
):
    doctor_id = _managed_doctor_id(store, caller, doctor_id)
    return schedule_to_out(store.block_date(doctor_id, req))


@router.delete("/schedule/{doctor_id}/unblock-date", response_model=ScheduleOut)
def unblock_date(
    doctor_id: int,
    day: date = Query(alias="date"),
    caller: Caller = Depends(_doctor_or_admin),
    store: ScheduleStore = Depends(get_store),
):
    doctor_id = _managed_doctor_id(store, caller, doctor_id)
    return schedule_to_out(store.unblock_date(doctor_id, day))


@router.get("/schedule/{doctor_id}/available-slots", response_model=AvailableSlotsOut)
def available_slots(
    doctor_id: int,
    day: date = Query(alias="date"),
    caller: Caller = Depends(get_caller),
    lc: AppointmentLifecycle = Depends(get_lifecycle),
):
    view = lc.slots.day_view(doctor_id, day)
    return AvailableSlotsOut(
        doctor_id=doctor_id,
        date=day,
        weekday=view.weekday,
        is_blocked=view.is_blocked,
        slots=[
            SlotOut(
                slot_id=sl.slot_id,
                start_time=sl.start_time,
                end_time=sl.end_time,
                time=sl.time,
                available=sl.available,
                booked_count=sl.booked_count,
                max_patients=sl.max_patients,
            )
            for sl in view.slots
        ],
    )


# appointments


@router.post("/appointments", response_model=AppointmentOut)
def create_appointment(
    req: AppointmentCreate,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    caller: Caller = Depends(_patient_only),
    lc: AppointmentLifecycle = Depends(get_lifecycle),
):
    return appointment_to_out(lc.create(caller, req, idempotency_key), lc.settings)


@router.get("/appointments", response_model=AppointmentPage)
def list_appointments(
    status: Optional[AppointmentStatus] = None,
    page: int = 1,
    limit: int = 20,
    caller: Caller = Depends(get_caller),
    lc: AppointmentLifecycle = Depends(get_lifecycle),
):
    items, total = lc.list_for(caller, status=status, page=page, limit=limit)
    return AppointmentPage(
        items=[appointment_to_out(a, lc.settings) for a in items],
        page=max(1, page),
        limit=max(1, min(limit, 100)),
        total=total,
    )


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
def get_appointment(
    appointment_id: str, caller: Caller = Depends(get_caller), lc: AppointmentLifecycle = Depends(get_lifecycle)
):
    return appointment_to_out(lc.get(appointment_id, caller), lc.settings)


@router.patch("/appointments/{appointment_id}/cancel", response_model=AppointmentOut)
def cancel_appointment(
    appointment_id: str,
    req: ReasonIn,
    caller: Caller = Depends(get_caller),
    lc: AppointmentLifecycle = Depends(get_lifecycle),
):
    return appointment_to_out(lc.cancel(appointment_id, caller, req.reason), lc.settings)


@router.patch("/appointments/{appointment_id}/reschedule", response_model=AppointmentOut)
def request_reschedule(
    appointment_id: str,
    req: RescheduleIn,
    caller: Caller = Depends(_patient_only),
    lc: AppointmentLifecycle = Depends(get_lifecycle),
):
    return appointment_to_out(lc.request_reschedule(appointment_id, caller, req), lc.settings)


@router.patch("/appointments/{appointment_id}/reschedule/accept", response_model=AppointmentOut)
def accept_reschedule(
    appointment_id: str, caller: Caller = Depends(_doctor_only), lc: AppointmentLifecycle = Depends(get_lifecycle)
):
    return appointment_to_out(lc.accept_reschedule(appointment_id, caller), lc.settings)


@router.patch("/appointments/{appointment_id}/reschedule/reject", response_model=AppointmentOut)
def reject_reschedule(
    appointment_id: str,
    req: ReasonIn,
    caller: Caller = Depends(_doctor_only),
    lc: AppointmentLifecycle = Depends(get_lifecycle),
):
    return appointment_to_out(lc.reject_reschedule(appointment_id, caller, req.reason), lc.settings)


@router.patch("/appointments/{appointment_id}/approve", response_model=AppointmentOut)
def approve_appointment(
    appointment_id: str, caller: Caller = Depends(_doctor_only), lc: AppointmentLifecycle = Depends(get_lifecycle)
):
    return appointment_to_out(lc.approve(appointment_id, caller), lc.settings)


@router.patch("/appointments/{appointment_id}/reject", response_model=AppointmentOut)
def reject_appointment(
    appointment_id: str,
    req: ReasonIn,
    caller: Caller = Depends(_doctor_only),
    lc: AppointmentLifecycle = Depends(get_lifecycle),
):
    return appointment_to_out(lc.reject(appointment_id, caller, req.reason), lc.settings)


@router.patch("/appointments/{appointment_id}/complete", response_model=AppointmentOut)
def complete_appointment(
    appointment_id: str,
    req: CompleteIn,
    caller: Caller = Depends(_doctor_only),
    lc: AppointmentLifecycle = Depends(get_lifecycle),
):
    return appointment_to_out(
        lc.complete(appointment_id, caller, req.doctor_notes, req.prescription_url), lc.settings
    )


@router.patch("/appointments/{appointment_id}/no-show", response_model=AppointmentOut)
def mark_no_show(
    appointment_id: str, caller: Caller = Depends(_doctor_only), lc: AppointmentLifecycle = Depends(get_lifecycle)
):
    return appointment_to_out(lc.mark_no_show(appointment_id, caller), lc.settings)


@router.patch("/appointments/{appointment_id}/session/start", response_model=AppointmentOut)
def start_consultation(
    appointment_id: str, caller: Caller = Depends(get_caller), lc: AppointmentLifecycle = Depends(get_lifecycle)
):
    return appointment_to_out(lc.start_consultation(appointment_id, caller), lc.settings)


@router.patch("/appointments/{appointment_id}/session", response_model=AppointmentOut)
def update_session_status(
    appointment_id: str,
    req: SessionStatusIn,
    caller: Caller = Depends(_doctor_only),
    lc: AppointmentLifecycle = Depends(get_lifecycle),
):
    return appointment_to_out(lc.update_session_status(appointment_id, caller, req.status), lc.settings)


@router.patch("/appointments/{appointment_id}/chat", response_model=AppointmentOut)
def toggle_chat(
    appointment_id: str,
    req: ChatToggleIn,
    caller: Caller = Depends(_doctor_only),
    lc: AppointmentLifecycle = Depends(get_lifecycle),
):
    return appointment_to_out(lc.set_post_consultation_chat(appointment_id, caller, req.enabled), lc.settings)


@router.patch("/appointments/{appointment_id}/notes", response_model=AppointmentOut)
def update_notes(
    appointment_id: str,
    req: CompleteIn,
    caller: Caller = Depends(_doctor_only),
    lc: AppointmentLifecycle = Depends(get_lifecycle),
):
    return appointment_to_out(
        lc.update_notes(appointment_id, caller, req.doctor_notes, req.prescription_url), lc.settings
    )


# payments


@router.post("/payments/order", response_model=OrderOut)
def create_order(
    req: OrderIn, caller: Caller = Depends(_patient_only), pay: PaymentSplitEngine = Depends(get_payments)
):
    res = pay.create_order(caller.user_id, req.appointment_id, req.amount, req.currency)
    return OrderOut(key_id=res.key_id, order_id=res.order_id, amount=res.amount, currency=res.currency)


@router.post("/payments/verify", response_model=VerifyOut)
def verify_payment(
    req: VerifyIn, caller: Caller = Depends(_patient_only), pay: PaymentSplitEngine = Depends(get_payments)
):
    a = pay.verify_payment(caller.user_id, req.appointment_id, req.order_id, req.payment_id, req.signature)
    return VerifyOut(
        appointment_id=req.appointment_id,
        payment_id=req.payment_id,
        doctor_earnings=pay.to_major(a.doctor_earnings_cents or 0),
        admin_commission=pay.to_major(a.admin_commission_cents or 0),
    )


@router.post("/payments/unlock", response_model=AppointmentOut)
def unlock_slot(
    req: UnlockIn, caller: Caller = Depends(_patient_only), pay: PaymentSplitEngine = Depends(get_payments)
):
    a = pay.unlock_slot(caller.user_id, req.appointment_id)
    return appointment_to_out(a, pay.settings)


# wallet


def _wallet_owner(caller: Caller, user_id: Optional[str]) -> str:
    if user_id and user_id != caller.user_id:
        if not caller.is_admin:
            raise Forbidden("cannot read another user's wallet")
        return user_id
    return caller.user_id


@router.get("/wallet", response_model=WalletOut)
def get_wallet(
    user_id: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    pay: PaymentSplitEngine = Depends(get_payments),
):
    w = pay.wallet_summary(_wallet_owner(caller, user_id))
    return WalletOut(owner_user_id=w.owner_user_id, balance=pay.to_major(w.balance_cents or 0), currency=w.currency)


@router.get("/wallet/transactions", response_model=LedgerPage)
def wallet_transactions(
    user_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    caller: Caller = Depends(get_caller),
    pay: PaymentSplitEngine = Depends(get_payments),
):
    rows, total = pay.ledger(_wallet_owner(caller, user_id), page=page, limit=limit)
    return _ledger_page(pay, rows, total, page, limit)


def _ledger_page(pay: PaymentSplitEngine, rows, total: int, page: int, limit: int) -> LedgerPage:
    items: List[LedgerEntryOut] = [
        LedgerEntryOut(
            id=e.id,
            amount=pay.to_major(e.amount_cents),
            description=e.description,
            related_appointment_id=e.related_appointment_id,
            category=e.category,
            created_at=e.created_at,
        )
        for e in rows
    ]
    return LedgerPage(items=items, page=max(1, page), limit=max(1, min(limit, 100)), total=total)


# admin


@router.get("/admin/earnings-overview", response_model=EarningsOverviewOut)
def admin_earnings_overview(caller: Caller = Depends(_admin_only), pay: PaymentSplitEngine = Depends(get_payments)):
    o = pay.earnings_overview()
    return EarningsOverviewOut(
        currency=pay.settings.currency,
        gross_revenue=pay.to_major(o.gross_cents),
        platform_commission=pay.to_major(o.commission_cents),
        doctor_earnings=pay.to_major(o.doctor_earnings_cents),
        refunds=pay.to_major(o.refunds_cents),
        paid_appointments=o.paid_appointments,
        completed_appointments=o.completed_appointments,
        patients=o.patients,
        active_doctors=o.active_doctors,
    )


@router.get("/admin/transactions", response_model=LedgerPage)
def admin_transactions(
    page: int = 1,
    limit: int = 20,
    caller: Caller = Depends(_admin_only),
    pay: PaymentSplitEngine = Depends(get_payments),
):
    rows, total = pay.platform_transactions(page=page, limit=limit)
    return _ledger_page(pay, rows, total, page, limit)
