"""
Gateway checkout, payment verification and the wallet ledger.

Fees are integers in the currency's minor unit. The doctor's share of a fee
is ``fee * pct // 100`` and the platform takes the remainder, so the two
entries written on payment always add up to the fee exactly.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import (
    TERMINAL_STATUSES,
    AppointmentStatus,
    CancelledBy,
    LedgerCategory,
    PaymentStatus,
    Settings,
    get_settings,
)
from .errors import (
    ALREADY_PAID,
    SLOT_TAKEN,
    ConfigurationError,
    Conflict,
    Forbidden,
    GatewayError,
    InvalidTransition,
    NotFound,
    PaymentVerificationFailed,
    ValidationError,
)
from .gateway import PaymentGateway, get_gateway, signature_matches
from .locks import BookingLockManager, capacity_available, serialize_doctor, sync_committed
from .models import Appointment, Doctor, Wallet, WalletLedgerEntry
from .notifications import Notice, Notifier, dispatch, get_notifier
from .slots import SlotComputer
from .timeutil import utcnow

_log = logging.getLogger("carebook.payments")

PLATFORM_WALLET_OWNER = "platform"


@dataclass(frozen=True)
class OrderResult:
    key_id: str
    order_id: str
    amount: int
    currency: str


@dataclass(frozen=True)
class Settlement:
    refund: int
    doctor_net: int
    platform_net: int


@dataclass(frozen=True)
class EarningsOverview:
    gross_cents: int
    commission_cents: int
    doctor_earnings_cents: int
    refunds_cents: int
    paid_appointments: int
    completed_appointments: int
    patients: int
    active_doctors: int


def split_fee(fee: int, doctor_pct: int) -> Tuple[int, int]:
    doctor = fee * doctor_pct // 100
    return doctor, fee - doctor


class PaymentSplitEngine:
    def __init__(
        self,
        s: Session,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.s = s
        self.settings = settings or get_settings()
        self.clock = clock
        self._gateway = gateway
        self.notifier = notifier or get_notifier()
        self.locks = BookingLockManager(s, self.settings, clock)
        self.slots = SlotComputer(s, self.settings, clock)

    # helpers

    def _require_keys(self) -> None:
        missing = self.settings.gateway_missing_keys()
        if missing:
            raise ConfigurationError("payment gateway not configured", details={"missing": missing})

    def _gw(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    @property
    def platform_owner(self) -> str:
        return self.settings.platform_admin_user_id or PLATFORM_WALLET_OWNER

    def to_minor(self, amount: float) -> int:
        try:
            minor = Decimal(str(amount)) * self.settings.minor_unit_multiplier
        except InvalidOperation:
            raise ValidationError("invalid amount")
        if minor != minor.to_integral_value():
            raise ValidationError("amount has more precision than the currency allows")
        return int(minor)

    def to_major(self, minor: int) -> float:
        return minor / self.settings.minor_unit_multiplier

    def _owned(self, appointment_id: str, patient_id: str) -> Appointment:
        a = self.s.get(Appointment, appointment_id)
        if not a:
            raise NotFound("appointment not found", details={"appointment_id": appointment_id})
        if a.patient_id != patient_id:
            raise Forbidden("not your appointment")
        return a

    def _doctor_user(self, doctor_id: int) -> str:
        uid = self.s.execute(select(Doctor.user_id).where(Doctor.id == doctor_id)).scalar()
        if not uid:
            raise NotFound("doctor not found", details={"doctor_id": doctor_id})
        return uid

    def _credit(
        self, owner: str, amount: int, description: str, appointment_id: str, category: LedgerCategory
    ) -> None:
        """Ledger row plus wallet balance, inside the caller's transaction."""
        if amount == 0:
            return
        self.s.add(
            WalletLedgerEntry(
                owner_user_id=owner,
                amount_cents=amount,
                description=description,
                related_appointment_id=appointment_id,
                category=category,
                created_at=self.clock(),
            )
        )
        exists = self.s.execute(select(Wallet.id).where(Wallet.owner_user_id == owner)).first()
        if not exists:
            self.s.add(Wallet(owner_user_id=owner, balance_cents=0, currency=self.settings.currency))
            self.s.flush()
        self.s.execute(
            update(Wallet)
            .where(Wallet.owner_user_id == owner)
            .values(balance_cents=Wallet.balance_cents + amount, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )

    # checkout

    def create_order(
        self, patient_id: str, appointment_id: str, amount: float, currency: Optional[str] = None
    ) -> OrderResult:
        self._require_keys()
        a = self._owned(appointment_id, patient_id)
        if a.payment_status == PaymentStatus.PAID:
            raise Conflict("appointment already paid", code=ALREADY_PAID)
        if a.status in TERMINAL_STATUSES:
            raise InvalidTransition(f"cannot pay for a {a.status.value} appointment")
        minor = self.to_minor(amount)
        if minor <= 0:
            raise ValidationError("amount must be positive")
        if minor != a.consultation_fee_cents:
            raise ValidationError(
                "amount does not match the consultation fee",
                details={"expected": self.to_major(a.consultation_fee_cents)},
            )
        cur = (currency or a.currency).strip().upper()
        if cur != a.currency:
            raise ValidationError("unsupported currency", details={"currency": cur})

        slot = self.slots.find_slot(a.doctor_id, a.appointment_date, a.appointment_time)
        if slot is None:
            raise Conflict("the slot is no longer offered", code=SLOT_TAKEN)
        appt_id, ref, fee = a.id, a.custom_id, a.consultation_fee_cents
        grant = self.locks.acquire(a, slot.max_patients)

        order_id = self.s.execute(select(Appointment.razorpay_order_id).where(Appointment.id == appt_id)).scalar()
        # No transaction may stay open across the gateway call.
        self.s.commit()
        if order_id:
            sync_committed(a, {"razorpay_order_id": order_id})
            _log.info("reusing gateway order", extra={"appointment_id": appt_id, "order_id": order_id})
            return OrderResult(self.settings.razorpay_key_id, order_id, fee, cur)

        try:
            created = self._gw().create_order(fee, cur, receipt=ref, notes={"appointment_id": appt_id})
        except GatewayError:
            # The lock stays; a retry reuses it instead of claiming again.
            _log.warning("order creation failed", extra={"appointment_id": appt_id, "lock_acquired": grant.acquired})
            raise

        res = self.s.execute(
            update(Appointment)
            .where(Appointment.id == appt_id, Appointment.razorpay_order_id.is_(None))
            .values(razorpay_order_id=created)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            order_id = created
        else:
            # A concurrent retry stored its order first; converge on that one.
            order_id = self.s.execute(
                select(Appointment.razorpay_order_id).where(Appointment.id == appt_id)
            ).scalar()
            _log.info("discarding duplicate gateway order", extra={"appointment_id": appt_id, "order_id": created})
        self.s.commit()
        sync_committed(a, {"razorpay_order_id": order_id})
        _log.info("gateway order created", extra={"appointment_id": appt_id, "order_id": order_id, "amount": fee})
        return OrderResult(self.settings.razorpay_key_id, order_id, fee, cur)

    def _fail_verification(self, a: Appointment, why: str) -> None:
        appt_id = a.id
        self.s.execute(
            update(Appointment)
            .where(Appointment.id == appt_id, Appointment.payment_status != PaymentStatus.PAID)
            .values(
                checkout_lock_until=None,
                payment_status=PaymentStatus.FAILED,
                version=Appointment.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        self.s.commit()
        self.s.expire(a)
        _log.warning("payment verification failed", extra={"appointment_id": appt_id, "reason": why})
        raise PaymentVerificationFailed("payment verification failed")

    def verify_payment(
        self, patient_id: str, appointment_id: str, order_id: str, payment_id: str, signature: str
    ) -> Appointment:
        self._require_keys()
        a = self._owned(appointment_id, patient_id)
        if a.payment_status == PaymentStatus.PAID:
            raise Conflict("appointment already paid", code=ALREADY_PAID)
        if not a.razorpay_order_id or order_id != a.razorpay_order_id:
            self._fail_verification(a, "order mismatch")
        if not signature_matches(self.settings.razorpay_key_secret, order_id, payment_id, signature):
            self._fail_verification(a, "signature mismatch")

        appt_id, fee = a.id, a.consultation_fee_cents
        doctor_id, day, label = a.doctor_id, a.appointment_date, a.appointment_time
        if a.status in TERMINAL_STATUSES:
            self.locks.release(a)
            _log.error(
                "payment captured for a closed appointment, gateway refund required",
                extra={"appointment_id": appt_id, "payment_id": payment_id},
            )
            raise InvalidTransition("appointment is no longer open for payment")

        doctor_user = self._doctor_user(doctor_id)
        doctor_cut, platform_cut = split_fee(fee, self.settings.commission.doctor_pct)
        capacity = self.slots.capacity(doctor_id, day, label)
        now = self.clock()
        serialize_doctor(self.s, doctor_id)
        paid_values = {
            "payment_status": PaymentStatus.PAID,
            "payment_id": payment_id,
            "checkout_lock_until": None,
            "doctor_earnings_cents": doctor_cut,
            "admin_commission_cents": platform_cut,
            "updated_at": now,
        }
        res = self.s.execute(
            update(Appointment)
            .where(
                Appointment.id == appt_id,
                Appointment.payment_status != PaymentStatus.PAID,
                Appointment.status.not_in(list(TERMINAL_STATUSES)),
                capacity_available(doctor_id, day, label, capacity, now, appt_id),
            )
            .values(version=Appointment.version + 1, **paid_values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            row = self.s.execute(
                select(Appointment.payment_status, Appointment.status).where(Appointment.id == appt_id)
            ).first()
            self.s.rollback()
            if row is not None and row[0] == PaymentStatus.PAID:
                raise Conflict("appointment already paid", code=ALREADY_PAID)
            if row is not None and row[1] in TERMINAL_STATUSES:
                _log.error(
                    "payment captured for a closed appointment, gateway refund required",
                    extra={"appointment_id": appt_id, "payment_id": payment_id},
                )
                raise InvalidTransition("appointment is no longer open for payment")
            self.locks.release(a)
            _log.error(
                "checkout lock expired and the slot was taken, gateway refund required",
                extra={"appointment_id": appt_id, "payment_id": payment_id},
            )
            raise Conflict("slot already taken", code=SLOT_TAKEN)

        ref, patient = a.custom_id, a.patient_id
        try:
            self._credit(doctor_user, doctor_cut, f"Consultation earnings {ref}", appt_id, LedgerCategory.CONSULTATION_EARNINGS)
            self._credit(self.platform_owner, platform_cut, f"Platform commission {ref}", appt_id, LedgerCategory.PLATFORM_COMMISSION)
            self.s.commit()
        except IntegrityError:
            self.s.rollback()
            raise Conflict("appointment already paid", code=ALREADY_PAID)
        sync_committed(a, paid_values)
        self.s.expire(a, ["version"])
        _log.info(
            "payment verified",
            extra={"appointment_id": appt_id, "payment_id": payment_id, "doctor": doctor_cut, "platform": platform_cut},
        )
        notices = [
            Notice(patient, "Payment received", f"{ref} is paid", "payment_success", appt_id),
            Notice(doctor_user, "New paid appointment", f"{ref} on {day} {label}", "payment_success", appt_id),
        ]
        if self.settings.platform_admin_user_id:
            notices.append(
                Notice(self.settings.platform_admin_user_id, "Commission credited", ref, "commission", appt_id)
            )
        dispatch(self.notifier, notices)
        return a

    def unlock_slot(self, patient_id: str, appointment_id: str) -> Appointment:
        a = self._owned(appointment_id, patient_id)
        self.locks.release(a)
        return a

    # cancellation

    def _net(self, appointment_id: str, owner: str) -> int:
        return int(
            self.s.execute(
                select(func.coalesce(func.sum(WalletLedgerEntry.amount_cents), 0)).where(
                    WalletLedgerEntry.related_appointment_id == appointment_id,
                    WalletLedgerEntry.owner_user_id == owner,
                )
            ).scalar()
            or 0
        )

    def settle_cancellation(self, a: Appointment, cancelled_by: CancelledBy) -> Optional[Settlement]:
        """
        Bring the ledger of a paid appointment to its post-cancellation split.

        Adjustment entries move each party's net to the refund policy target
        and the patient refund is credited to the patient's wallet. Running
        it again finds nothing left to adjust.
        """
        if a.payment_status not in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
            return None
        appt_id, fee, ref, patient = a.id, a.consultation_fee_cents, a.custom_id, a.patient_id
        shares = self.settings.refunds.shares_for(cancelled_by, self.settings.commission)
        refund = fee * shares.patient_pct // 100
        doctor_target = fee * shares.doctor_pct // 100
        platform_target = fee - refund - doctor_target

        doctor_user = self._doctor_user(a.doctor_id)
        doctor_adj = doctor_target - self._net(appt_id, doctor_user)
        platform_adj = platform_target - self._net(appt_id, self.platform_owner)
        refund_due = refund - self._net(appt_id, patient)
        label = cancelled_by.value.replace("_", "-")

        values: Dict[str, object] = {
            "refund_cents": refund,
            "doctor_earnings_cents": doctor_target,
            "admin_commission_cents": platform_target,
        }
        if refund > 0:
            values["payment_status"] = PaymentStatus.REFUNDED
        try:
            self._credit(patient, refund_due, f"Refund {ref} ({label} cancellation)", appt_id, LedgerCategory.REFUND)
            self._credit(doctor_user, doctor_adj, f"Cancellation adjustment {ref}", appt_id, LedgerCategory.CANCELLATION_ADJUSTMENT)
            self._credit(
                self.platform_owner, platform_adj, f"Cancellation adjustment {ref}", appt_id, LedgerCategory.CANCELLATION_ADJUSTMENT
            )
            self.s.execute(
                update(Appointment)
                .where(Appointment.id == appt_id)
                .values(version=Appointment.version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            self.s.commit()
        except IntegrityError:
            # A concurrent settlement already wrote these entries.
            self.s.rollback()
            _log.info("cancellation already settled", extra={"appointment_id": appt_id})
            self.s.expire(a)
            return None
        sync_committed(a, values)
        self.s.expire(a, ["version"])
        _log.info(
            "cancellation settled",
            extra={
                "appointment_id": appt_id,
                "cancelled_by": cancelled_by.value,
                "refund": refund,
                "doctor": doctor_target,
                "platform": platform_target,
            },
        )
        if refund_due > 0:
            dispatch(
                self.notifier,
                [Notice(patient, "Refund issued", f"{self.to_major(refund_due)} credited for {ref}", "refund", appt_id)],
            )
        return Settlement(refund=refund, doctor_net=doctor_target, platform_net=platform_target)

    # read views

    def wallet_summary(self, user_id: str) -> Wallet:
        w = self.s.execute(select(Wallet).where(Wallet.owner_user_id == user_id)).scalars().first()
        if w is None:
            return Wallet(owner_user_id=user_id, balance_cents=0, currency=self.settings.currency)
        return w

    def ledger(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        categories: Optional[Sequence[LedgerCategory]] = None,
    ) -> Tuple[List[WalletLedgerEntry], int]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        conds = [WalletLedgerEntry.owner_user_id == user_id]
        if categories:
            conds.append(WalletLedgerEntry.category.in_(list(categories)))
        total = self.s.execute(select(func.count()).select_from(WalletLedgerEntry).where(*conds)).scalar() or 0
        rows = (
            self.s.execute(
                select(WalletLedgerEntry)
                .where(*conds)
                .order_by(WalletLedgerEntry.created_at.desc(), WalletLedgerEntry.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        return list(rows), int(total)

    def platform_transactions(self, page: int = 1, limit: int = 20) -> Tuple[List[WalletLedgerEntry], int]:
        """Commission entries on the platform wallet, newest first."""
        return self.ledger(
            self.platform_owner,
            page=page,
            limit=limit,
            categories=(LedgerCategory.PLATFORM_COMMISSION, LedgerCategory.CANCELLATION_ADJUSTMENT),
        )

    def earnings_overview(self) -> EarningsOverview:
        """
        Platform-wide totals for the admin dashboard.

        Gross is every fee ever captured, refunded ones included. Commission
        and doctor earnings are ledger nets, so cancellation adjustments are
        already taken off.
        """
        captured = (PaymentStatus.PAID, PaymentStatus.REFUNDED)
        gross, refunds, paid = self.s.execute(
            select(
                func.coalesce(func.sum(Appointment.consultation_fee_cents), 0),
                func.coalesce(func.sum(Appointment.refund_cents), 0),
                func.count(),
            ).where(Appointment.payment_status.in_(captured))
        ).one()
        commission = self.s.execute(
            select(func.coalesce(func.sum(WalletLedgerEntry.amount_cents), 0)).where(
                WalletLedgerEntry.owner_user_id == self.platform_owner
            )
        ).scalar()
        doctor_earnings = self.s.execute(
            select(func.coalesce(func.sum(WalletLedgerEntry.amount_cents), 0)).where(
                WalletLedgerEntry.owner_user_id.in_(select(Doctor.user_id)),
                WalletLedgerEntry.category.in_(
                    [LedgerCategory.CONSULTATION_EARNINGS, LedgerCategory.CANCELLATION_ADJUSTMENT]
                ),
            )
        ).scalar()
        completed = self.s.execute(
            select(func.count()).select_from(Appointment).where(Appointment.status == AppointmentStatus.COMPLETED)
        ).scalar()
        patients = self.s.execute(select(func.count(func.distinct(Appointment.patient_id)))).scalar()
        doctors = self.s.execute(select(func.count()).select_from(Doctor).where(Doctor.is_active.is_(True))).scalar()
        return EarningsOverview(
            gross_cents=int(gross),
            commission_cents=int(commission or 0),
            doctor_earnings_cents=int(doctor_earnings or 0),
            refunds_cents=int(refunds),
            paid_appointments=int(paid),
            completed_appointments=int(completed or 0),
            patients=int(patients or 0),
            active_doctors=int(doctors or 0),
        )
