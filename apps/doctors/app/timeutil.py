"""
Minute-of-day arithmetic for schedule templates and slots.

Times travel as ``HH:MM`` strings and slot ranges as ``HH:MM-HH:MM``;
internally everything is an int of minutes since midnight.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Iterable, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError

_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def parse_hhmm(val: str) -> int:
    m = _HHMM.match((val or "").strip())
    if not m:
        raise ValidationError("time must be HH:MM 24h", details={"value": val})
    return int(m.group(1)) * 60 + int(m.group(2))


def fmt_hhmm(minute: int) -> str:
    return f"{minute // 60:02d}:{minute % 60:02d}"


@dataclass(frozen=True, order=True)
class TimeRange:
    start: int
    end: int

    @classmethod
    def parse(cls, start: str, end: str) -> "TimeRange":
        s, e = parse_hhmm(start), parse_hhmm(end)
        if s >= e:
            raise ValidationError("start time must be before end time", details={"start": start, "end": end})
        return cls(s, e)

    @classmethod
    def parse_label(cls, label: str) -> "TimeRange":
        parts = [p.strip() for p in (label or "").split("-")]
        if len(parts) != 2:
            raise ValidationError("time range must be HH:MM-HH:MM", details={"value": label})
        return cls.parse(parts[0], parts[1])

    @property
    def minutes(self) -> int:
        return self.end - self.start

    @property
    def label(self) -> str:
        return f"{fmt_hhmm(self.start)}-{fmt_hhmm(self.end)}"

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and other.start < self.end


def normalize_range_label(label: str) -> str:
    """Canonical ``HH:MM-HH:MM`` form ("9:00 - 9:30" -> "09:00-09:30")."""
    return TimeRange.parse_label(label).label


def subtract(ranges: Iterable[TimeRange], removed: Iterable[TimeRange]) -> List[TimeRange]:
    """Remove every ``removed`` interval from ``ranges``; result sorted."""
    out = sorted(ranges)
    for cut in sorted(removed):
        nxt: List[TimeRange] = []
        for r in out:
            if not r.overlaps(cut):
                nxt.append(r)
                continue
            if r.start < cut.start:
                nxt.append(TimeRange(r.start, cut.start))
            if cut.end < r.end:
                nxt.append(TimeRange(cut.end, r.end))
        out = nxt
    return out


def any_overlap(ranges: Iterable[TimeRange]) -> bool:
    ordered = sorted(ranges)
    return any(a.end > b.start for a, b in zip(ordered, ordered[1:]))


def get_tz(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError("invalid timezone", details={"timezone": name})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def slot_start_at(day: date, minute: int, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time(minute // 60, minute % 60), tzinfo=tz)


def parse_iso_date(val: str) -> date:
    try:
        return date.fromisoformat((val or "").strip())
    except ValueError:
        raise ValidationError("invalid date, expected YYYY-MM-DD", details={"value": val})
