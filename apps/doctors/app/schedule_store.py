from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import TERMINAL_STATUSES, AppointmentStatus, Settings, Weekday, get_settings
from .errors import SCHEDULE_EXISTS, Conflict, NotFound, ValidationError
from .locks import holder_predicate
from .models import (
    RANGE_REF_PREFIX,
    SCHEDULE_REF_PREFIX,
    Appointment,
    BlockedDate,
    Doctor,
    Schedule,
    ScheduleRange,
    new_ref,
)
from .schemas import (
    BlockDateIn,
    BlockedDateOut,
    RangeIn,
    RangeOut,
    RecurringSlotsIn,
    RecurringSlotsOut,
    RecurringSlotsRemove,
    ScheduleCreate,
    ScheduleOut,
    ScheduleUpdate,
)
from .slots import SlotComputer
from .timeutil import TimeRange, any_overlap, fmt_hhmm, get_tz, utcnow

_log = logging.getLogger("carebook.schedule")


def schedule_to_out(sch: Schedule) -> ScheduleOut:
    weekly: Dict[str, List[RangeOut]] = {}
    for r in sorted(sch.ranges, key=lambda x: (x.weekday, x.start_minute)):
        weekly.setdefault(Weekday.from_index(r.weekday).value, []).append(
            RangeOut(
                range_id=r.range_id,
                start_time=fmt_hhmm(r.start_minute),
                end_time=fmt_hhmm(r.end_minute),
                max_patients_per_slot=r.max_patients_per_slot,
                label=r.label,
            )
        )
    return ScheduleOut(
        id=sch.custom_id,
        doctor_id=sch.doctor_id,
        weekly_schedule=weekly,
        default_slot_duration=sch.default_slot_duration,
        buffer_time=sch.buffer_time,
        max_patients_per_slot=sch.max_patients_per_slot,
        is_active=sch.is_active,
        blocked_dates=[
            BlockedDateOut(date=b.day, reason=b.reason, slots=list(b.slots) if b.slots else None)
            for b in sch.blocked_dates
        ],
        created_at=sch.created_at,
        updated_at=sch.updated_at,
    )


class ScheduleStore:
    """
    Owns a doctor's weekly template, its date exceptions and slot parameters.

    Every mutating method validates first and commits once at the end, so a
    rejected request leaves the stored schedule untouched.
    """

    def __init__(self, s: Session, settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow):
        self.s = s
        self.settings = settings or get_settings()
        self.clock = clock

    # lookups

    def doctor(self, doctor_id: int) -> Doctor:
        d = self.s.get(Doctor, doctor_id)
        if not d:
            raise NotFound("doctor not found", details={"doctor_id": doctor_id})
        return d

    def doctor_for_user(self, user_id: str) -> Doctor:
        d = self.s.execute(select(Doctor).where(Doctor.user_id == user_id)).scalars().first()
        if not d:
            raise NotFound("doctor profile not found for user")
        return d

    def find(self, doctor_id: int) -> Optional[Schedule]:
        return self.s.execute(select(Schedule).where(Schedule.doctor_id == doctor_id)).scalars().first()

    def get(self, doctor_id: int) -> Schedule:
        sch = self.find(doctor_id)
        if not sch:
            raise NotFound("schedule not found", details={"doctor_id": doctor_id})
        return sch

    def get_for_user(self, user_id: str) -> Schedule:
        return self.get(self.doctor_for_user(user_id).id)

    # validation

    def _check_params(self, duration: int, buffer: int, max_patients: int) -> None:
        lim = self.settings.schedule
        if not (lim.min_slot_duration <= duration <= lim.max_slot_duration):
            raise ValidationError(
                f"default_slot_duration must be between {lim.min_slot_duration} and {lim.max_slot_duration} minutes"
            )
        if not (0 <= buffer <= lim.max_buffer_time):
            raise ValidationError(f"buffer_time must be between 0 and {lim.max_buffer_time} minutes")
        self._check_capacity(max_patients)

    def _check_capacity(self, max_patients: Optional[int]) -> None:
        if max_patients is None:
            return
        cap = self.settings.schedule.max_patients_cap
        if not (1 <= max_patients <= cap):
            raise ValidationError(f"max_patients_per_slot must be between 1 and {cap}")

    def _build_day(self, day: Weekday, items: List[RangeIn]) -> List[Tuple[TimeRange, Optional[int]]]:
        lim = self.settings.schedule
        if len(items) > lim.max_ranges_per_day:
            raise ValidationError(
                f"at most {lim.max_ranges_per_day} ranges per day", details={"day": day.value}
            )
        out: List[Tuple[TimeRange, Optional[int]]] = []
        for it in items:
            tr = TimeRange.parse(it.start_time, it.end_time)
            if tr.minutes < lim.min_range_minutes:
                raise ValidationError(
                    f"a range must be at least {lim.min_range_minutes} minutes",
                    details={"day": day.value, "range": tr.label},
                )
            self._check_capacity(it.max_patients_per_slot)
            out.append((tr, it.max_patients_per_slot))
        if any_overlap(tr for tr, _ in out):
            raise ValidationError("ranges overlap within a day", details={"day": day.value})
        return sorted(out, key=lambda x: x[0])

    def _build_week(self, weekly: Dict[Weekday, List[RangeIn]]) -> Dict[Weekday, List[Tuple[TimeRange, Optional[int]]]]:
        return {day: self._build_day(day, items) for day, items in weekly.items()}

    @staticmethod
    def _new_ranges(day: Weekday, built: Iterable[Tuple[TimeRange, Optional[int]]], label: Optional[str] = None) -> List[ScheduleRange]:
        return [
            ScheduleRange(
                weekday=day.index,
                start_minute=tr.start,
                end_minute=tr.end,
                max_patients_per_slot=cap,
                range_id=new_ref(RANGE_REF_PREFIX),
                label=label,
            )
            for tr, cap in built
        ]

    def _today(self, doctor: Doctor) -> date:
        tz = get_tz(doctor.timezone or self.settings.default_timezone)
        return self.clock().astimezone(tz).date()

    def _off_grid(self, sch: Schedule) -> List[str]:
        """Upcoming bookings and pending proposals whose time is no longer a slot of the edited template."""
        today = self._today(self.doctor(sch.doctor_id))
        now = self.clock()
        held = self.s.execute(
            select(Appointment).where(
                Appointment.doctor_id == sch.doctor_id,
                Appointment.appointment_date >= today,
                Appointment.status.not_in(list(TERMINAL_STATUSES)),
                holder_predicate(now),
            )
        ).scalars().all()
        proposed = self.s.execute(
            select(Appointment).where(
                Appointment.doctor_id == sch.doctor_id,
                Appointment.status == AppointmentStatus.RESCHEDULE_REQUESTED,
                Appointment.proposed_date >= today,
            )
        ).scalars().all()

        computer = SlotComputer(self.s, self.settings, self.clock)
        grids: Dict[date, set] = {}

        def _on_grid(day: Optional[date], label: Optional[str]) -> bool:
            if day is None or not label:
                return True
            if day not in grids:
                grids[day] = computer.grid_labels(sch, day)
            return label in grids[day]

        bad = [a.custom_id for a in held if not _on_grid(a.appointment_date, a.appointment_time)]
        bad += [
            a.custom_id
            for a in proposed
            if not _on_grid(a.proposed_date, a.proposed_time) and a.custom_id not in bad
        ]
        return bad

    def _commit_keeping_grid(self, sch: Schedule) -> None:
        # Slots are matched by their exact label, so a booking that falls off
        # the recomputed grid would stop counting against any slot.
        bad = self._off_grid(sch)
        if bad:
            self.s.rollback()
            raise Conflict(
                "this change would move the slot grid under active appointments; cancel or reschedule them first",
                details={"appointments": bad},
            )
        self.s.commit()

    # writes

    def create(self, doctor_id: int, body: ScheduleCreate) -> Schedule:
        self.doctor(doctor_id)
        if self.find(doctor_id):
            raise Conflict("schedule already exists, update it instead", code=SCHEDULE_EXISTS)
        lim = self.settings.schedule
        duration = body.default_slot_duration if body.default_slot_duration is not None else lim.default_slot_duration
        buffer = body.buffer_time if body.buffer_time is not None else lim.default_buffer_time
        max_patients = (
            body.max_patients_per_slot if body.max_patients_per_slot is not None else lim.default_max_patients
        )
        self._check_params(duration, buffer, max_patients)
        week = self._build_week(body.weekly_schedule)

        sch = Schedule(
            doctor_id=doctor_id,
            custom_id=new_ref(SCHEDULE_REF_PREFIX),
            default_slot_duration=duration,
            buffer_time=buffer,
            max_patients_per_slot=max_patients,
            is_active=body.is_active,
        )
        for day, built in week.items():
            sch.ranges.extend(self._new_ranges(day, built))
        self.s.add(sch)
        try:
            self.s.commit()
        except IntegrityError:
            # Lost a race with a concurrent create for the same doctor.
            self.s.rollback()
            raise Conflict("schedule already exists, update it instead", code=SCHEDULE_EXISTS)
        _log.info("schedule created", extra={"doctor_id": doctor_id, "ranges": len(sch.ranges)})
        return sch

    def update(self, doctor_id: int, patch: ScheduleUpdate) -> Schedule:
        sch = self.get(doctor_id)
        duration = patch.default_slot_duration if patch.default_slot_duration is not None else sch.default_slot_duration
        buffer = patch.buffer_time if patch.buffer_time is not None else sch.buffer_time
        max_patients = (
            patch.max_patients_per_slot if patch.max_patients_per_slot is not None else sch.max_patients_per_slot
        )
        self._check_params(duration, buffer, max_patients)
        week = self._build_week(patch.weekly_schedule) if patch.weekly_schedule is not None else {}

        sch.default_slot_duration = duration
        sch.buffer_time = buffer
        sch.max_patients_per_slot = max_patients
        if patch.is_active is not None:
            sch.is_active = patch.is_active
        # Only the weekdays named in the patch are replaced.
        for day, built in week.items():
            for r in [r for r in sch.ranges if r.weekday == day.index]:
                sch.ranges.remove(r)
            sch.ranges.extend(self._new_ranges(day, built))
        sch.updated_at = self.clock()
        self._commit_keeping_grid(sch)
        _log.info("schedule updated", extra={"doctor_id": doctor_id, "days": [d.value for d in week]})
        return sch

    def block_date(self, doctor_id: int, body: BlockDateIn) -> Schedule:
        doctor = self.doctor(doctor_id)
        sch = self.get(doctor_id)
        if body.date < self._today(doctor):
            raise ValidationError("cannot block a date in the past", details={"date": body.date.isoformat()})
        cuts: List[TimeRange] = [TimeRange.parse_label(x) for x in (body.slots or [])]
        if any_overlap(cuts):
            raise ValidationError("blocked ranges overlap")

        clashes = self._active_on(doctor_id, body.date, cuts)
        if clashes:
            raise Conflict(
                "cannot block this date because there are active appointments; cancel or reschedule them first",
                details={"appointments": clashes},
            )

        labels = [c.label for c in sorted(cuts)] or None
        existing = next((b for b in sch.blocked_dates if b.day == body.date), None)
        if existing:
            existing.reason = body.reason
            existing.slots = labels
        else:
            sch.blocked_dates.append(BlockedDate(day=body.date, reason=body.reason, slots=labels))
        sch.updated_at = self.clock()
        self._commit_keeping_grid(sch)
        _log.info(
            "date blocked",
            extra={"doctor_id": doctor_id, "date": body.date.isoformat(), "partial": bool(labels)},
        )
        return sch

    def _active_on(self, doctor_id: int, day: date, cuts: List[TimeRange]) -> List[str]:
        now = self.clock()
        rows = self.s.execute(
            select(Appointment).where(
                Appointment.doctor_id == doctor_id,
                Appointment.appointment_date == day,
                holder_predicate(now) | (Appointment.status == AppointmentStatus.RESCHEDULE_REQUESTED),
            )
        ).scalars().all()
        proposed = self.s.execute(
            select(Appointment).where(
                Appointment.doctor_id == doctor_id,
                Appointment.status == AppointmentStatus.RESCHEDULE_REQUESTED,
                Appointment.proposed_date == day,
            )
        ).scalars().all()

        def _hit(label: Optional[str]) -> bool:
            if not cuts:
                return True
            if not label:
                return False
            tr = TimeRange.parse_label(label)
            return any(tr.overlaps(c) for c in cuts)

        hits = [a.custom_id for a in rows if _hit(a.appointment_time)]
        hits += [a.custom_id for a in proposed if _hit(a.proposed_time) and a.custom_id not in hits]
        return hits

    def unblock_date(self, doctor_id: int, day: date) -> Schedule:
        sch = self.get(doctor_id)
        existing = next((b for b in sch.blocked_dates if b.day == day), None)
        if existing is None:
            return sch
        sch.blocked_dates.remove(existing)
        sch.updated_at = self.clock()
        self._commit_keeping_grid(sch)
        _log.info("date unblocked", extra={"doctor_id": doctor_id, "date": day.isoformat()})
        return sch

    def add_recurring_slots(self, doctor_id: int, body: RecurringSlotsIn) -> RecurringSlotsOut:
        sch = self.get(doctor_id)
        lim = self.settings.schedule
        tr = TimeRange.parse(body.start_time, body.end_time)
        if tr.minutes < lim.min_range_minutes:
            raise ValidationError(f"a range must be at least {lim.min_range_minutes} minutes")
        self._check_capacity(body.max_patients_per_slot)
        if not body.days:
            raise ValidationError("days must not be empty")

        days = list(dict.fromkeys(body.days))
        applied: List[Weekday] = []
        overlapping: List[Weekday] = []
        for day in days:
            current = [TimeRange(r.start_minute, r.end_minute) for r in sch.ranges if r.weekday == day.index]
            if any(tr.overlaps(c) for c in current):
                overlapping.append(day)
                continue
            if len(current) >= lim.max_ranges_per_day:
                raise ValidationError(
                    f"at most {lim.max_ranges_per_day} ranges per day", details={"day": day.value}
                )
            applied.append(day)

        if overlapping and not body.skip_overlapping_days:
            raise Conflict(
                "the new range overlaps existing ranges",
                details={"overlapping_days": [d.value for d in overlapping]},
            )
        for day in applied:
            sch.ranges.extend(self._new_ranges(day, [(tr, body.max_patients_per_slot)], label=body.label))
        if applied:
            sch.updated_at = self.clock()
            self._commit_keeping_grid(sch)
        _log.info(
            "recurring slots added",
            extra={
                "doctor_id": doctor_id,
                "range": tr.label,
                "applied": [d.value for d in applied],
                "skipped": [d.value for d in overlapping],
            },
        )
        return RecurringSlotsOut(applied_days=applied, skipped_days=overlapping)

    def remove_recurring_slots(self, doctor_id: int, body: RecurringSlotsRemove) -> RecurringSlotsOut:
        sch = self.get(doctor_id)
        tr = TimeRange.parse(body.start_time, body.end_time)
        days = set(d.index for d in body.days) if body.days else None
        doomed = [
            r
            for r in sch.ranges
            if r.start_minute == tr.start and r.end_minute == tr.end and (days is None or r.weekday in days)
        ]
        for r in doomed:
            sch.ranges.remove(r)
        if doomed:
            sch.updated_at = self.clock()
            self._commit_keeping_grid(sch)
        _log.info("recurring slots removed", extra={"doctor_id": doctor_id, "range": tr.label, "removed": len(doomed)})
        return RecurringSlotsOut(
            applied_days=sorted({Weekday.from_index(r.weekday) for r in doomed}, key=lambda d: d.index),
            removed=len(doomed),
        )

    def delete_range(self, doctor_id: int, day: Weekday, range_id: str) -> Schedule:
        sch = self.get(doctor_id)
        target = next((r for r in sch.ranges if r.weekday == day.index and r.range_id == range_id), None)
        if target is None:
            raise NotFound("range not found", details={"day": day.value, "range_id": range_id})
        sch.ranges.remove(target)
        sch.updated_at = self.clock()
        self._commit_keeping_grid(sch)
        _log.info("range deleted", extra={"doctor_id": doctor_id, "day": day.value, "range_id": range_id})
        return sch

    def delete(self, doctor_id: int) -> None:
        sch = self.get(doctor_id)
        # Ranges and blocked dates go with it through the relationship cascade.
        self.s.delete(sch)
        self.s.commit()
        _log.info("schedule deleted", extra={"doctor_id": doctor_id})
