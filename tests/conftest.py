from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from apps.doctors.app.auth import Caller
from apps.doctors.app.config import AppointmentType, Role, Settings, Weekday
from apps.doctors.app.db import Base, make_engine
from apps.doctors.app.errors import GatewayError
from apps.doctors.app.gateway import expected_signature
from apps.doctors.app.lifecycle import AppointmentLifecycle
from apps.doctors.app.models import Appointment, Doctor
from apps.doctors.app.notifications import Notice
from apps.doctors.app.payments import PaymentSplitEngine
from apps.doctors.app.schedule_store import ScheduleStore
from apps.doctors.app.schemas import AppointmentCreate, RangeIn, ScheduleCreate
from apps.doctors.app.slots import SlotComputer

# 2030-01-07 is a Monday; the clock starts the day before.
MONDAY = date(2030, 1, 7)
START = datetime(2030, 1, 6, 12, 0, tzinfo=timezone.utc)

KEY_ID = "rzp_test_key"
KEY_SECRET = "rzp_test_secret"


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.now = now


class FakeGateway:
    def __init__(self):
        self.calls: List[Tuple[int, str, str]] = []
        self.fail = False
        self._mu = threading.Lock()

    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: Optional[dict] = None) -> str:
        if self.fail:
            raise GatewayError("payment gateway unavailable")
        with self._mu:
            self.calls.append((amount_minor, currency, receipt))
            return f"order_test_{len(self.calls)}"


class RecordingNotifier:
    def __init__(self):
        self.sent: List[Notice] = []

    def send(self, notice: Notice) -> None:
        self.sent.append(notice)

    def kinds_for(self, user_id: str) -> List[str]:
        return [n.kind for n in self.sent if n.user_id == user_id]


@dataclass
class Clinic:
    """One doctor with a Monday 09:00-11:00 template (30 min slots, 5 min buffer)."""

    engine: Engine
    settings: Settings
    clock: FixedClock
    gateway: FakeGateway
    notifier: RecordingNotifier
    doctor_id: int = 0
    doctor: Caller = field(default_factory=lambda: Caller("doc-1", Role.DOCTOR))
    admin: Caller = field(default_factory=lambda: Caller("admin-1", Role.ADMIN))
    day: date = MONDAY
    fee_major: float = 1000.0

    def patient(self, n: int = 1) -> Caller:
        return Caller(f"patient-{n}", Role.PATIENT)

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def lifecycle(self, s: Session) -> AppointmentLifecycle:
        return AppointmentLifecycle(s, self.settings, self.clock, self.notifier)

    def payments(self, s: Session) -> PaymentSplitEngine:
        return PaymentSplitEngine(s, self.settings, self.clock, gateway=self.gateway, notifier=self.notifier)

    def store(self, s: Session) -> ScheduleStore:
        return ScheduleStore(s, self.settings, self.clock)

    def slots(self, s: Session) -> SlotComputer:
        return SlotComputer(s, self.settings, self.clock)

    def book(self, patient: Caller, time: str = "09:00-09:30", day: Optional[date] = None) -> str:
        with self.session() as s:
            a = self.lifecycle(s).create(
                patient,
                AppointmentCreate(
                    doctor_id=self.doctor_id,
                    appointment_date=day or self.day,
                    appointment_time=time,
                    appointment_type=AppointmentType.VIDEO,
                ),
            )
            return a.id

    def pay(self, patient: Caller, appointment_id: str, payment_id: str = "pay_test_1") -> Appointment:
        with self.session() as s:
            pay = self.payments(s)
            order = pay.create_order(patient.user_id, appointment_id, self.fee_major)
            sig = expected_signature(KEY_SECRET, order.order_id, payment_id)
            return pay.verify_payment(patient.user_id, appointment_id, order.order_id, payment_id, sig)

    def approve(self, appointment_id: str) -> Appointment:
        with self.session() as s:
            return self.lifecycle(s).approve(appointment_id, self.doctor)

    def confirmed_paid(self, patient: Caller, time: str = "09:00-09:30") -> str:
        aid = self.book(patient, time)
        self.pay(patient, aid)
        self.approve(aid)
        return aid

    def get(self, appointment_id: str) -> Appointment:
        with self.session() as s:
            return s.get(Appointment, appointment_id)

    def add_doctor(self, user_id: str, video: int = 100_000, chat: int = 50_000, tz: str = "UTC") -> int:
        return add_doctor(self.engine, user_id, video, chat, tz)

    def add_schedule(self, doctor_id: int, week=None, **params) -> None:
        add_schedule(self.engine, self.settings, self.clock, doctor_id, week, **params)


def make_settings(**overrides) -> Settings:
    base = dict(
        razorpay_key_id=KEY_ID,
        razorpay_key_secret=KEY_SECRET,
        platform_admin_user_id="admin-1",
    )
    base.update(overrides)
    return Settings(**base)


def add_doctor(engine: Engine, user_id: str = "doc-1", video: int = 100_000, chat: int = 50_000, tz: str = "UTC") -> int:
    with Session(engine) as s:
        d = Doctor(user_id=user_id, name="Dr. Test", timezone=tz, video_fee_cents=video, chat_fee_cents=chat)
        s.add(d)
        s.commit()
        return d.id


def add_schedule(
    engine: Engine,
    settings: Settings,
    clock: FixedClock,
    doctor_id: int,
    week: Optional[Dict[Weekday, Sequence[Tuple[str, str]]]] = None,
    duration: int = 30,
    buffer: int = 5,
    max_patients: int = 1,
) -> None:
    week = week if week is not None else {Weekday.MONDAY: [("09:00", "11:00")]}
    body = ScheduleCreate(
        weekly_schedule={d: [RangeIn(start_time=a, end_time=b) for a, b in ranges] for d, ranges in week.items()},
        default_slot_duration=duration,
        buffer_time=buffer,
        max_patients_per_slot=max_patients,
    )
    with Session(engine, expire_on_commit=False) as s:
        ScheduleStore(s, settings, clock).create(doctor_id, body)


@pytest.fixture()
def engine(tmp_path) -> Engine:
    """File-backed SQLite so worker threads share one database."""
    eng = make_engine(f"sqlite+pysqlite:///{tmp_path / 'doctors.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def clinic(engine, settings, clock, gateway, notifier) -> Clinic:
    doctor_id = add_doctor(engine)
    add_schedule(engine, settings, clock, doctor_id)
    return Clinic(engine, settings, clock, gateway, notifier, doctor_id=doctor_id)
