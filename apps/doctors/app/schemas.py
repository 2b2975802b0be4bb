from __future__ import annotations

import datetime as dt
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import (
    AppointmentStatus,
    AppointmentType,
    CancelledBy,
    LedgerCategory,
    PaymentStatus,
    SessionStatus,
    Weekday,
)


class RangeIn(BaseModel):
    start_time: str = Field(description="HH:MM 24h")
    end_time: str = Field(description="HH:MM 24h")
    max_patients_per_slot: Optional[int] = None


class RangeOut(BaseModel):
    range_id: str
    start_time: str
    end_time: str
    max_patients_per_slot: Optional[int] = None
    label: Optional[str] = None


class ScheduleCreate(BaseModel):
    # Admins may create on behalf of a doctor; doctors always create their own.
    doctor_id: Optional[int] = None
    weekly_schedule: Dict[Weekday, List[RangeIn]] = Field(default_factory=dict)
    default_slot_duration: Optional[int] = None
    buffer_time: Optional[int] = None
    max_patients_per_slot: Optional[int] = None
    is_active: bool = True


class ScheduleUpdate(BaseModel):
    weekly_schedule: Optional[Dict[Weekday, List[RangeIn]]] = None
    default_slot_duration: Optional[int] = None
    buffer_time: Optional[int] = None
    max_patients_per_slot: Optional[int] = None
    is_active: Optional[bool] = None


class BlockedDateOut(BaseModel):
    date: dt.date
    reason: Optional[str] = None
    slots: Optional[List[str]] = None


class ScheduleOut(BaseModel):
    id: str
    doctor_id: int
    weekly_schedule: Dict[str, List[RangeOut]]
    default_slot_duration: int
    buffer_time: int
    max_patients_per_slot: int
    is_active: bool
    blocked_dates: List[BlockedDateOut] = []
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None


class BlockDateIn(BaseModel):
    date: dt.date
    reason: Optional[str] = None
    slots: Optional[List[str]] = Field(default=None, description="HH:MM-HH:MM sub-ranges; omit for a full day")


class RecurringSlotsIn(BaseModel):
    start_time: str
    end_time: str
    days: List[Weekday]
    label: Optional[str] = None
    max_patients_per_slot: Optional[int] = None
    skip_overlapping_days: bool = False


class RecurringSlotsRemove(BaseModel):
    start_time: str
    end_time: str
    days: Optional[List[Weekday]] = None


class RecurringSlotsOut(BaseModel):
    applied_days: List[Weekday] = []
    skipped_days: List[Weekday] = []
    removed: int = 0


class SlotOut(BaseModel):
    slot_id: str
    start_time: str
    end_time: str
    time: str
    available: bool
    booked_count: int
    max_patients: int


class AvailableSlotsOut(BaseModel):
    doctor_id: int
    date: dt.date
    weekday: Weekday
    is_blocked: bool = False
    slots: List[SlotOut] = []


class AppointmentCreate(BaseModel):
    doctor_id: int
    appointment_date: dt.date
    appointment_time: str = Field(description="HH:MM-HH:MM")
    appointment_type: AppointmentType
    slot_id: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class AppointmentOut(BaseModel):
    id: str
    custom_id: str
    doctor_id: int
    patient_id: str
    appointment_date: dt.date
    appointment_time: str
    slot_id: Optional[str] = None
    appointment_type: AppointmentType
    status: AppointmentStatus
    payment_status: PaymentStatus
    checkout_lock_until: Optional[dt.datetime] = None
    razorpay_order_id: Optional[str] = None
    payment_id: Optional[str] = None
    currency: str
    consultation_fees: float
    doctor_earnings: Optional[float] = None
    admin_commission: Optional[float] = None
    refund_amount: Optional[float] = None
    reason: Optional[str] = None
    reschedule_count: int
    proposed_date: Optional[dt.date] = None
    proposed_time: Optional[str] = None
    rescheduled_from: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    session_status: Optional[SessionStatus] = None
    session_start_time: Optional[dt.datetime] = None
    session_end_time: Optional[dt.datetime] = None
    doctor_notes: Optional[str] = None
    prescription_url: Optional[str] = None
    post_consultation_chat_enabled: bool = False
    created_at: Optional[dt.datetime] = None


class AppointmentPage(BaseModel):
    items: List[AppointmentOut]
    page: int
    limit: int
    total: int


class ReasonIn(BaseModel):
    reason: Optional[str] = None


class RescheduleIn(BaseModel):
    new_date: dt.date
    new_time: str = Field(description="HH:MM-HH:MM")
    reason: Optional[str] = None


class CompleteIn(BaseModel):
    doctor_notes: Optional[str] = Field(default=None, max_length=4000)
    prescription_url: Optional[str] = Field(default=None, max_length=500)


class SessionStatusIn(BaseModel):
    status: SessionStatus


class ChatToggleIn(BaseModel):
    enabled: bool


class OrderIn(BaseModel):
    appointment_id: str
    amount: float = Field(description="major units")
    currency: Optional[str] = None


class OrderOut(BaseModel):
    key_id: str
    order_id: str
    amount: int = Field(description="minor units, as sent to the gateway")
    currency: str


class VerifyIn(BaseModel):
    appointment_id: str
    order_id: str
    payment_id: str
    signature: str


class VerifyOut(BaseModel):
    appointment_id: str
    payment_id: str
    doctor_earnings: float
    admin_commission: float


class UnlockIn(BaseModel):
    appointment_id: str


class WalletOut(BaseModel):
    owner_user_id: str
    balance: float
    currency: str


class LedgerEntryOut(BaseModel):
    id: str
    amount: float
    description: str
    related_appointment_id: Optional[str] = None
    category: LedgerCategory
    created_at: Optional[dt.datetime] = None
    model_config = ConfigDict(from_attributes=True)


class LedgerPage(BaseModel):
    items: List[LedgerEntryOut]
    page: int
    limit: int
    total: int


class EarningsOverviewOut(BaseModel):
    currency: str
    gross_revenue: float
    platform_commission: float
    doctor_earnings: float
    refunds: float
    paid_appointments: int
    completed_appointments: int
    patients: int
    active_doctors: int
