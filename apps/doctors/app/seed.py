from __future__ import annotations

import logging

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from .config import Settings, Weekday
from .models import Doctor
from .schedule_store import ScheduleStore
from .schemas import RangeIn, ScheduleCreate

_log = logging.getLogger("carebook.seed")

# user_id, name, timezone, video fee, chat fee (minor units)
_DOCTORS = [
    ("demo-doctor-1", "Dr. Anna Müller", "Asia/Kolkata", 100_000, 50_000),
    ("demo-doctor-2", "Dr. Samir Youssef", "Asia/Kolkata", 80_000, 40_000),
    ("demo-doctor-3", "Dr. Laura Rossi", "Europe/Berlin", 120_000, 60_000),
]

_WORKDAYS = [Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY, Weekday.THURSDAY, Weekday.FRIDAY]


def _default_week() -> ScheduleCreate:
    day = [RangeIn(start_time="09:00", end_time="12:00"), RangeIn(start_time="14:00", end_time="17:00")]
    return ScheduleCreate(weekly_schedule={wd: list(day) for wd in _WORKDAYS})


def seed_demo_data(engine: Engine, settings: Settings) -> int:
    """Insert demo doctors with a weekday schedule into an empty database."""
    if not settings.demo_seed:
        return 0
    with Session(engine, expire_on_commit=False) as s:
        existing = s.execute(select(func.count(Doctor.id))).scalar() or 0
        if existing > 0:
            return 0
        for user_id, name, tz, video, chat in _DOCTORS:
            s.add(Doctor(user_id=user_id, name=name, timezone=tz, video_fee_cents=video, chat_fee_cents=chat))
        s.commit()
        store = ScheduleStore(s, settings)
        ids = s.execute(select(Doctor.id).order_by(Doctor.id)).scalars().all()
        for doctor_id in ids:
            store.create(doctor_id, _default_week())
        _log.info("demo data seeded", extra={"doctors": len(ids)})
        return len(ids)
