from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import Settings, Weekday, get_settings
from .locks import holder_predicate
from .models import Appointment, Doctor, Schedule
from .timeutil import TimeRange, fmt_hhmm, get_tz, normalize_range_label, slot_start_at, subtract, utcnow


@dataclass(frozen=True)
class TemplateRange:
    range_id: str
    start: int
    end: int
    max_patients: int


@dataclass(frozen=True)
class Slot:
    slot_id: str
    start: int
    end: int
    available: bool
    booked_count: int
    max_patients: int

    @property
    def start_time(self) -> str:
        return fmt_hhmm(self.start)

    @property
    def end_time(self) -> str:
        return fmt_hhmm(self.end)

    @property
    def time(self) -> str:
        return f"{self.start_time}-{self.end_time}"


def compute_slots(
    ranges: Sequence[TemplateRange],
    target_date: date,
    duration: int,
    buffer: int,
    *,
    blocked_full_day: bool = False,
    blocked_ranges: Sequence[TimeRange] = (),
    holdings: Optional[Mapping[str, int]] = None,
    now_local: Optional[datetime] = None,
) -> List[Slot]:
    """
    Slice one day's template ranges into bookable slots.

    Blocked sub-ranges are cut out before slicing. Consecutive slots are
    separated by ``buffer`` minutes, also across range boundaries, and a
    trailing remainder shorter than ``duration`` is dropped. ``holdings``
    maps ``HH:MM-HH:MM`` to the number of appointments holding that slot.
    With ``now_local`` set, past dates yield nothing and slots on the
    current date that have already started are dropped.
    """
    if blocked_full_day or duration <= 0:
        return []
    if now_local is not None and target_date < now_local.date():
        return []
    holdings = holdings or {}

    pieces = []
    for r in sorted(ranges, key=lambda x: (x.start, x.end)):
        for part in subtract([TimeRange(r.start, r.end)], blocked_ranges):
            pieces.append((part, r))
    pieces.sort(key=lambda x: x[0])

    out: List[Slot] = []
    cursor: Optional[int] = None
    for part, origin in pieces:
        start = part.start if cursor is None else max(part.start, cursor)
        while start + duration <= part.end:
            end = start + duration
            label = f"{fmt_hhmm(start)}-{fmt_hhmm(end)}"
            booked = int(holdings.get(label, 0))
            out.append(
                Slot(
                    slot_id=f"{origin.range_id}-{fmt_hhmm(start).replace(':', '')}",
                    start=start,
                    end=end,
                    available=booked < origin.max_patients,
                    booked_count=booked,
                    max_patients=origin.max_patients,
                )
            )
            cursor = end + buffer
            start = cursor

    if now_local is not None and target_date == now_local.date():
        out = [sl for sl in out if slot_start_at(target_date, sl.start, now_local.tzinfo) > now_local]
    return out


@dataclass
class DayView:
    doctor_id: int
    day: date
    weekday: Weekday
    is_blocked: bool = False
    slots: List[Slot] = field(default_factory=list)


class SlotComputer:
    """Feeds ``compute_slots`` from the schedule and the live appointment rows."""

    def __init__(self, s: Session, settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow):
        self.s = s
        self.settings = settings or get_settings()
        self.clock = clock

    def _holdings(self, doctor_id: int, day: date, now: datetime) -> Dict[str, int]:
        rows = self.s.execute(
            select(Appointment.appointment_time, func.count())
            .where(
                Appointment.doctor_id == doctor_id,
                Appointment.appointment_date == day,
                holder_predicate(now),
            )
            .group_by(Appointment.appointment_time)
        ).all()
        return {t: int(n) for t, n in rows}

    @staticmethod
    def _day_inputs(sch: Schedule, day: date) -> Tuple[List[TemplateRange], bool, List[TimeRange]]:
        weekday = Weekday.from_index(day.weekday())
        template = [
            TemplateRange(
                range_id=r.range_id,
                start=r.start_minute,
                end=r.end_minute,
                max_patients=r.max_patients_per_slot or sch.max_patients_per_slot,
            )
            for r in sch.ranges
            if r.weekday == weekday.index
        ]
        block = next((b for b in sch.blocked_dates if b.day == day), None)
        full_day = block is not None and block.is_full_day
        cuts = [TimeRange.parse_label(x) for x in (block.slots or [])] if block else []
        return template, full_day, cuts

    def grid_labels(self, sch: Schedule, day: date) -> Set[str]:
        """Every slot label the template yields on ``day``, ignoring bookings, the clock and pauses."""
        template, full_day, cuts = self._day_inputs(sch, day)
        return {
            sl.time
            for sl in compute_slots(
                template,
                day,
                sch.default_slot_duration,
                sch.buffer_time,
                blocked_full_day=full_day,
                blocked_ranges=cuts,
            )
        }

    def day_view(self, doctor_id: int, day: date, include_past: bool = False) -> DayView:
        weekday = Weekday.from_index(day.weekday())
        view = DayView(doctor_id=doctor_id, day=day, weekday=weekday)
        doctor = self.s.get(Doctor, doctor_id)
        sch = self.s.execute(select(Schedule).where(Schedule.doctor_id == doctor_id)).scalars().first()
        # No schedule, or a paused one, means no slots rather than an error.
        if not doctor or not doctor.is_active or not sch or not sch.is_active:
            return view

        template, view.is_blocked, cuts = self._day_inputs(sch, day)

        now = self.clock()
        now_local = None if include_past else now.astimezone(get_tz(doctor.timezone or self.settings.default_timezone))
        view.slots = compute_slots(
            template,
            day,
            sch.default_slot_duration,
            sch.buffer_time,
            blocked_full_day=view.is_blocked,
            blocked_ranges=cuts,
            holdings=self._holdings(doctor_id, day, now) if template else {},
            now_local=now_local,
        )
        return view

    def compute_slots(self, doctor_id: int, day: date) -> List[Slot]:
        return self.day_view(doctor_id, day).slots

    def find_slot(self, doctor_id: int, day: date, time_label: str, include_past: bool = False) -> Optional[Slot]:
        label = normalize_range_label(time_label)
        for sl in self.day_view(doctor_id, day, include_past=include_past).slots:
            if sl.time == label:
                return sl
        return None

    def capacity(self, doctor_id: int, day: date, time_label: str) -> int:
        """Patients allowed in a slot, even once it has started or left the template."""
        sl = self.find_slot(doctor_id, day, time_label, include_past=True)
        if sl is not None:
            return sl.max_patients
        sch = self.s.execute(select(Schedule).where(Schedule.doctor_id == doctor_id)).scalars().first()
        return sch.max_patients_per_slot if sch else 1
