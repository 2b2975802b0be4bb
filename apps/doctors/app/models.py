from __future__ import annotations

import secrets
import uuid
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .config import (
    AppointmentStatus,
    AppointmentType,
    CancelledBy,
    LedgerCategory,
    PaymentStatus,
    SessionStatus,
)
from .db import Base, UTCDateTime
from .timeutil import utcnow


def _enum(enum_cls, length: int = 32):
    # Stored as plain VARCHAR of the enum *values*; loaded back as enum members.
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        validate_strings=True,
        values_callable=lambda e: [m.value for m in e],
    )


def _uuid() -> str:
    return str(uuid.uuid4())


APPOINTMENT_REF_PREFIX = "APP"
RANGE_REF_PREFIX = "SLO"
SCHEDULE_REF_PREFIX = "SCH"


def new_ref(prefix: str) -> str:
    """Human readable reference such as ``APP483920``."""
    return f"{prefix}{secrets.randbelow(900_000) + 100_000}"


class Doctor(Base):
    """Read-only projection of the doctor profile owned by the profile service."""

    __tablename__ = "doctors"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(200))
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    video_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    chat_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    def fee_for(self, kind: AppointmentType) -> int:
        if kind is AppointmentType.VIDEO:
            return int(self.video_fee_cents or 0)
        return int(self.chat_fee_cents or 0)


class Schedule(Base):
    __tablename__ = "schedules"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[int] = mapped_column(ForeignKey("doctors.id"), unique=True, index=True)
    custom_id: Mapped[str] = mapped_column(String(16), unique=True)
    default_slot_duration: Mapped[int] = mapped_column(Integer, default=30)
    buffer_time: Mapped[int] = mapped_column(Integer, default=5)
    max_patients_per_slot: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    ranges: Mapped[List["ScheduleRange"]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="[ScheduleRange.weekday, ScheduleRange.start_minute]",
    )
    blocked_dates: Mapped[List["BlockedDate"]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="BlockedDate.day",
    )


class ScheduleRange(Base):
    __tablename__ = "schedule_ranges"
    __table_args__ = (CheckConstraint("start_minute < end_minute", name="ck_range_order"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[int] = mapped_column(ForeignKey("schedules.id", ondelete="CASCADE"), index=True)
    weekday: Mapped[int] = mapped_column(Integer)  # 0=Monday, 6=Sunday
    start_minute: Mapped[int] = mapped_column(Integer)
    end_minute: Mapped[int] = mapped_column(Integer)
    max_patients_per_slot: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    range_id: Mapped[str] = mapped_column(String(16))
    # Name of the recurring insertion that created this range, if any.
    label: Mapped[Optional[str]] = mapped_column(String(120), default=None)

    schedule: Mapped[Schedule] = relationship(back_populates="ranges")


class BlockedDate(Base):
    __tablename__ = "schedule_blocked_dates"
    __table_args__ = (UniqueConstraint("schedule_id", "day", name="uq_blocked_day"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[int] = mapped_column(ForeignKey("schedules.id", ondelete="CASCADE"), index=True)
    day: Mapped[date] = mapped_column(Date)
    reason: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    # None = whole day; otherwise a list of "HH:MM-HH:MM" sub-ranges.
    slots: Mapped[Optional[list]] = mapped_column(JSON, default=None)

    schedule: Mapped[Schedule] = relationship(back_populates="blocked_dates")

    @property
    def is_full_day(self) -> bool:
        return not self.slots


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appt_slot", "doctor_id", "appointment_date", "appointment_time"),
        Index("ix_appt_patient_status", "patient_id", "status"),
        CheckConstraint("reschedule_count >= 0 AND reschedule_count <= 1", name="ck_reschedule_cap"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    custom_id: Mapped[str] = mapped_column(String(16), unique=True, index=True)
    doctor_id: Mapped[int] = mapped_column(ForeignKey("doctors.id"), index=True)
    patient_id: Mapped[str] = mapped_column(String(64), index=True)
    appointment_date: Mapped[date] = mapped_column(Date, index=True)
    appointment_time: Mapped[str] = mapped_column(String(11))  # "HH:MM-HH:MM"
    slot_id: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    appointment_type: Mapped[AppointmentType] = mapped_column(_enum(AppointmentType, 8))
    status: Mapped[AppointmentStatus] = mapped_column(
        _enum(AppointmentStatus), default=AppointmentStatus.PENDING, index=True
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, 16), default=PaymentStatus.PENDING, index=True
    )
    checkout_lock_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=None)
    razorpay_order_id: Mapped[Optional[str]] = mapped_column(String(64), default=None, index=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    consultation_fee_cents: Mapped[int] = mapped_column(BigInteger)
    doctor_earnings_cents: Mapped[Optional[int]] = mapped_column(BigInteger, default=None)
    admin_commission_cents: Mapped[Optional[int]] = mapped_column(BigInteger, default=None)
    refund_cents: Mapped[Optional[int]] = mapped_column(BigInteger, default=None)
    reason: Mapped[Optional[str]] = mapped_column(String(500), default=None)

    reschedule_count: Mapped[int] = mapped_column(Integer, default=0)
    proposed_date: Mapped[Optional[date]] = mapped_column(Date, default=None)
    proposed_time: Mapped[Optional[str]] = mapped_column(String(11), default=None)
    reschedule_reason: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    rescheduled_from: Mapped[Optional[str]] = mapped_column(String(24), default=None)

    cancelled_by: Mapped[Optional[CancelledBy]] = mapped_column(_enum(CancelledBy, 16), default=None)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=None)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(500), default=None)

    session_status: Mapped[Optional[SessionStatus]] = mapped_column(_enum(SessionStatus, 24), default=None)
    session_start_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=None)
    session_end_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=None)
    doctor_notes: Mapped[Optional[str]] = mapped_column(String(4000), default=None)
    prescription_url: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    post_consultation_chat_enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    # Bumped by every conditional write; a stale in-memory copy never wins.
    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Wallet(Base):
    __tablename__ = "wallets"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_user_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    balance_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class WalletLedgerEntry(Base):
    """Append-only; rows are only ever inserted by the payment engine."""

    __tablename__ = "wallet_ledger_entries"
    __table_args__ = (
        UniqueConstraint("related_appointment_id", "owner_user_id", "category", name="uq_ledger_once"),
        Index("ix_ledger_owner_created", "owner_user_id", "created_at"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_user_id: Mapped[str] = mapped_column(String(64))
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    description: Mapped[str] = mapped_column(String(255))
    related_appointment_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("appointments.id"), default=None, index=True
    )
    category: Mapped[LedgerCategory] = mapped_column(_enum(LedgerCategory))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class Idempotency(Base):
    __tablename__ = "idempotency"
    key: Mapped[str] = mapped_column(String(120), primary_key=True)
    patient_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    ref_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
