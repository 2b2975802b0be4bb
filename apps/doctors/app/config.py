"""
Runtime configuration and closed value sets for the Doctors service.

Everything tunable (commission split, refund policy, lock window, schedule
bounds) is read once from the environment into a frozen ``Settings``
object. Call sites take these values from ``get_settings()``; there are no
per-call-site percentages.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Dict, Optional


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on", "t")


def _env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or not v.strip():
        return default
    try:
        return int(v)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer, got {v!r}")


class Role(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


class AppointmentType(str, Enum):
    VIDEO = "video"
    CHAT = "chat"


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    RESCHEDULE_REQUESTED = "reschedule_requested"


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.REJECTED, AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED}
)

# Statuses whose appointment can never occupy a slot, whatever its lock says.
NON_HOLDING_STATUSES = frozenset({AppointmentStatus.REJECTED, AppointmentStatus.CANCELLED})


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"


class CancelledBy(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    NO_SHOW = "no_show"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    WAITING_FOR_DOCTOR = "WAITING_FOR_DOCTOR"
    CONTINUED_BY_DOCTOR = "CONTINUED_BY_DOCTOR"
    TEST_NEEDED = "TEST_NEEDED"
    ENDED = "ENDED"


class LedgerCategory(str, Enum):
    CONSULTATION_EARNINGS = "consultation_earnings"
    PLATFORM_COMMISSION = "platform_commission"
    REFUND = "refund"
    CANCELLATION_ADJUSTMENT = "cancellation_adjustment"


class Weekday(str, Enum):
    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"

    @property
    def index(self) -> int:
        # 0=Monday, matching date.weekday()
        return list(Weekday).index(self)

    @classmethod
    def from_index(cls, idx: int) -> "Weekday":
        return list(cls)[idx]


@dataclass(frozen=True)
class SplitShares:
    """Percentages of a consultation fee; always add up to 100."""

    patient_pct: int
    platform_pct: int
    doctor_pct: int

    def __post_init__(self):
        for v in (self.patient_pct, self.platform_pct, self.doctor_pct):
            if v < 0 or v > 100:
                raise ValueError("share percentages must be within 0..100")
        if self.patient_pct + self.platform_pct + self.doctor_pct != 100:
            raise ValueError("share percentages must add up to 100")


@dataclass(frozen=True)
class CommissionPolicy:
    doctor_pct: int = 80

    @property
    def platform_pct(self) -> int:
        return 100 - self.doctor_pct

    @property
    def on_payment(self) -> SplitShares:
        return SplitShares(patient_pct=0, platform_pct=self.platform_pct, doctor_pct=self.doctor_pct)


@dataclass(frozen=True)
class RefundPolicy:
    """Final distribution of a paid fee once an appointment is cancelled."""

    patient_cancel: SplitShares = SplitShares(patient_pct=70, platform_pct=10, doctor_pct=20)
    doctor_cancel: SplitShares = SplitShares(patient_pct=100, platform_pct=0, doctor_pct=0)
    admin_cancel: SplitShares = SplitShares(patient_pct=100, platform_pct=0, doctor_pct=0)

    def shares_for(self, cancelled_by: CancelledBy, commission: CommissionPolicy) -> SplitShares:
        if cancelled_by is CancelledBy.PATIENT:
            return self.patient_cancel
        if cancelled_by is CancelledBy.DOCTOR:
            return self.doctor_cancel
        if cancelled_by is CancelledBy.ADMIN:
            return self.admin_cancel
        if cancelled_by is CancelledBy.NO_SHOW:
            # No refund: the original payment split stands.
            return commission.on_payment
        raise ValueError(f"unhandled cancellation initiator: {cancelled_by!r}")


@dataclass(frozen=True)
class ScheduleLimits:
    default_slot_duration: int = 30
    min_slot_duration: int = 15
    max_slot_duration: int = 120
    default_buffer_time: int = 5
    max_buffer_time: int = 30
    default_max_patients: int = 1
    max_patients_cap: int = 10
    max_ranges_per_day: int = 3
    min_range_minutes: int = 15


@dataclass(frozen=True)
class Settings:
    env: str = "dev"
    db_url: str = "sqlite+pysqlite:////tmp/carebook-doctors.db"
    allowed_origins: str = ""
    default_timezone: str = "UTC"

    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    razorpay_timeout_secs: float = 15.0
    currency: str = "INR"
    minor_unit_multiplier: int = 100

    checkout_lock_minutes: int = 10
    platform_admin_user_id: Optional[str] = None

    commission: CommissionPolicy = field(default_factory=CommissionPolicy)
    refunds: RefundPolicy = field(default_factory=RefundPolicy)
    schedule: ScheduleLimits = field(default_factory=ScheduleLimits)

    require_internal_secret: bool = False
    internal_secret: str = ""
    demo_seed: bool = False

    @property
    def is_dev_like(self) -> bool:
        return self.env in ("dev", "test")

    def gateway_missing_keys(self) -> list[str]:
        missing = []
        if not self.razorpay_key_id:
            missing.append("RAZORPAY_KEY_ID")
        if not self.razorpay_key_secret:
            missing.append("RAZORPAY_KEY_SECRET")
        return missing

    def public_summary(self) -> Dict[str, object]:
        return {
            "env": self.env,
            "currency": self.currency,
            "checkout_lock_minutes": self.checkout_lock_minutes,
            "doctor_commission_pct": self.commission.doctor_pct,
            "platform_commission_pct": self.commission.platform_pct,
        }


def load_settings() -> Settings:
    env = _env_or("ENV", "dev").strip().lower()
    require_raw = _env_or("DOCTORS_REQUIRE_INTERNAL_SECRET", "").strip().lower()
    if require_raw in ("0", "false", "no", "off"):
        require_internal = False
    elif require_raw:
        require_internal = True
    else:
        require_internal = env in ("prod", "production", "staging")

    refunds = RefundPolicy(
        patient_cancel=SplitShares(
            patient_pct=_env_int("PATIENT_CANCEL_REFUND_PCT", 70),
            platform_pct=_env_int("PATIENT_CANCEL_ADMIN_PCT", 10),
            doctor_pct=_env_int("PATIENT_CANCEL_DOCTOR_PCT", 20),
        )
    )
    doctor_pct = _env_int("DOCTOR_COMMISSION_PCT", 80)
    if doctor_pct < 0 or doctor_pct > 100:
        raise RuntimeError("DOCTOR_COMMISSION_PCT must be within 0..100")

    return Settings(
        env=env,
        db_url=_env_or("DOCTORS_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/carebook-doctors.db")),
        allowed_origins=_env_or("ALLOWED_ORIGINS", ""),
        default_timezone=_env_or("DEFAULT_TIMEZONE", "UTC"),
        razorpay_key_id=_env_or("RAZORPAY_KEY_ID", os.getenv("RAZORPAY_API_KEY", "")).strip(),
        razorpay_key_secret=_env_or("RAZORPAY_KEY_SECRET", os.getenv("RAZORPAY_API_SECRET", "")).strip(),
        razorpay_base_url=_env_or("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1"),
        razorpay_timeout_secs=float(_env_or("RAZORPAY_TIMEOUT_SECS", "15")),
        currency=_env_or("PAYMENT_CURRENCY", "INR").upper(),
        minor_unit_multiplier=_env_int("PAYMENT_MINOR_UNIT_MULTIPLIER", 100),
        checkout_lock_minutes=_env_int("CHECKOUT_LOCK_MINUTES", 10),
        platform_admin_user_id=(os.getenv("PLATFORM_ADMIN_USER_ID") or "").strip() or None,
        commission=CommissionPolicy(doctor_pct=doctor_pct),
        refunds=refunds,
        require_internal_secret=require_internal,
        internal_secret=os.getenv("DOCTORS_INTERNAL_SECRET") or "",
        demo_seed=_env_bool("DOCTORS_DEMO_SEED", False),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
