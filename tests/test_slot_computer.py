from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from apps.doctors.app.config import Weekday
from apps.doctors.app.schemas import BlockDateIn, ScheduleUpdate
from apps.doctors.app.slots import TemplateRange, compute_slots
from apps.doctors.app.timeutil import TimeRange, parse_hhmm

MONDAY = date(2030, 1, 7)


def _labels(slots):
    return [sl.time for sl in slots]


def _r(start: str, end: str, range_id: str = "SLO100001", cap: int = 1) -> TemplateRange:
    return TemplateRange(range_id=range_id, start=parse_hhmm(start), end=parse_hhmm(end), max_patients=cap)


def test_slices_with_buffer_and_drops_trailing_remainder():
    slots = compute_slots([_r("09:00", "11:00")], MONDAY, 30, 5)
    assert _labels(slots) == ["09:00-09:30", "09:35-10:05", "10:10-10:40"]
    assert [sl.slot_id for sl in slots] == ["SLO100001-0900", "SLO100001-0935", "SLO100001-1010"]
    assert all(sl.available and sl.booked_count == 0 for sl in slots)


def test_partial_block_cuts_out_sub_range():
    slots = compute_slots(
        [_r("09:00", "11:00")],
        MONDAY,
        30,
        5,
        blocked_ranges=[TimeRange.parse_label("10:10-10:40")],
    )
    assert _labels(slots) == ["09:00-09:30", "09:35-10:05"]


def test_full_day_block_yields_nothing():
    assert compute_slots([_r("09:00", "11:00")], MONDAY, 30, 5, blocked_full_day=True) == []


def test_buffer_carries_across_adjacent_ranges():
    slots = compute_slots([_r("09:00", "09:30", "A"), _r("09:30", "10:30", "B")], MONDAY, 30, 5)
    # The second range starts after the buffer that follows the first slot.
    assert _labels(slots) == ["09:00-09:30", "09:35-10:05"]
    assert slots[1].slot_id == "B-0935"


def test_holdings_mark_slots_full_per_range_capacity():
    slots = compute_slots(
        [_r("09:00", "10:00", cap=2)],
        MONDAY,
        30,
        0,
        holdings={"09:00-09:30": 2, "09:30-10:00": 1},
    )
    assert [(sl.time, sl.available, sl.booked_count) for sl in slots] == [
        ("09:00-09:30", False, 2),
        ("09:30-10:00", True, 1),
    ]


def test_past_dates_and_started_slots_are_not_offered():
    now_local = datetime(2030, 1, 7, 9, 40, tzinfo=timezone.utc)
    assert compute_slots([_r("09:00", "11:00")], MONDAY - timedelta(days=7), 30, 5, now_local=now_local) == []
    today = compute_slots([_r("09:00", "11:00")], MONDAY, 30, 5, now_local=now_local)
    assert _labels(today) == ["10:10-10:40"]


def test_day_view_reads_template_and_blocks(clinic):
    with clinic.session() as s:
        view = clinic.slots(s).day_view(clinic.doctor_id, clinic.day)
    assert view.weekday is Weekday.MONDAY
    assert not view.is_blocked
    assert _labels(view.slots) == ["09:00-09:30", "09:35-10:05", "10:10-10:40"]

    with clinic.session() as s:
        clinic.store(s).block_date(clinic.doctor_id, BlockDateIn(date=clinic.day, slots=["10:10-10:40"]))
    with clinic.session() as s:
        view = clinic.slots(s).day_view(clinic.doctor_id, clinic.day)
    assert _labels(view.slots) == ["09:00-09:30", "09:35-10:05"]

    with clinic.session() as s:
        clinic.store(s).block_date(clinic.doctor_id, BlockDateIn(date=clinic.day, reason="conference"))
    with clinic.session() as s:
        view = clinic.slots(s).day_view(clinic.doctor_id, clinic.day)
    assert view.is_blocked
    assert view.slots == []


def test_day_view_without_schedule_or_when_paused_is_empty(clinic):
    other = clinic.add_doctor("doc-2")
    with clinic.session() as s:
        assert clinic.slots(s).day_view(other, clinic.day).slots == []

    with clinic.session() as s:
        clinic.store(s).update(clinic.doctor_id, ScheduleUpdate(is_active=False))
    with clinic.session() as s:
        assert clinic.slots(s).day_view(clinic.doctor_id, clinic.day).slots == []


def test_booked_slot_counts_against_capacity(clinic):
    aid = clinic.book(clinic.patient(1))
    with clinic.session() as s:
        sl = clinic.slots(s).find_slot(clinic.doctor_id, clinic.day, "09:00-09:30")
    # A pending booking without payment or lock does not hold the slot.
    assert sl.available and sl.booked_count == 0

    clinic.pay(clinic.patient(1), aid)
    with clinic.session() as s:
        sl = clinic.slots(s).find_slot(clinic.doctor_id, clinic.day, "09:00-09:30")
    assert not sl.available and sl.booked_count == 1


def test_doctor_timezone_decides_what_today_is(clinic):
    # 2030-01-07 02:00 UTC is already 07:30 in Kolkata on the same Monday.
    kolkata = clinic.add_doctor("doc-kol", tz="Asia/Kolkata")
    clinic.add_schedule(kolkata, {Weekday.MONDAY: [("07:00", "09:00")]})
    clinic.clock.set(datetime(2030, 1, 7, 2, 0, tzinfo=timezone.utc))
    with clinic.session() as s:
        view = clinic.slots(s).day_view(kolkata, clinic.day)
    assert _labels(view.slots) == ["07:35-08:05", "08:10-08:40"]


def test_consecutive_slots_keep_the_buffer_apart():
    templates = [
        [_r("09:00", "11:00")],
        [_r("08:00", "09:00", "A"), _r("09:00", "10:30", "B")],
        [_r("08:15", "10:00", "A"), _r("10:20", "12:00", "B"), _r("14:00", "17:45", "C")],
    ]
    cut_sets = [
        [],
        ["09:00-09:10"],
        ["08:40-08:55", "10:25-10:50"],
        ["09:59-10:21", "15:00-15:07"],
    ]
    for template in templates:
        for cut_labels in cut_sets:
            cuts = [TimeRange.parse_label(x) for x in cut_labels]
            for duration in (15, 20, 30, 45):
                for buffer in (0, 5, 10):
                    slots = compute_slots(template, MONDAY, duration, buffer, blocked_ranges=cuts)
                    spans = [TimeRange.parse_label(sl.time) for sl in slots]
                    for a, b in zip(spans, spans[1:]):
                        assert a.end + buffer <= b.start, (template, cut_labels, duration, buffer)
                    for sp in spans:
                        assert sp.minutes == duration
                        assert any(r.start <= sp.start and sp.end <= r.end for r in template)
                        assert not any(sp.overlaps(c) for c in cuts)
