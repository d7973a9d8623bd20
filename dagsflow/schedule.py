"""Cron-style schedules: five-field specs, descriptors and ``@every``."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


class ScheduleError(ValueError):
    """Raised for a schedule spec that cannot be parsed."""


_DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
_MONTHS = {n: i for i, n in enumerate("jan feb mar apr may jun jul aug sep oct nov dec".split(), 1)}
_DAYS = {n: i for i, n in enumerate("sun mon tue wed thu fri sat".split())}
# (min, max, names) for minute, hour, day of month, month, day of week
_BOUNDS = [(0, 59, {}), (0, 23, {}), (1, 31, {}), (1, 12, _MONTHS), (0, 6, _DAYS)]

_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)"
_UNIT_SECONDS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "μs": 1e-6,
                 "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


def _parse_duration(text: str) -> float:
    sign = -1.0 if text.startswith("-") else 1.0
    body = text.lstrip("+-")
    if body == "0":
        return 0.0
    if not re.fullmatch(f"(?:{_DURATION_PART})+", body):
        raise ScheduleError(f"invalid duration {text!r}")
    return sign * sum(float(n) * _UNIT_SECONDS[u] for n, u in re.findall(_DURATION_PART, body))


def _value(text: str, names: dict) -> int:
    if text.lower() in names:
        return names[text.lower()]
    if not text.isdigit():
        raise ScheduleError(f"failed to parse int from {text!r}")
    return int(text)


def _parse_field(text: str, low: int, high: int, names: dict) -> tuple[frozenset, bool]:
    values: set[int] = set()
    star = False
    for part in text.split(","):
        range_part, has_step, step_text = part.partition("/")
        step = 1
        if has_step:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ScheduleError(f"step of range should be a positive number: {part!r}")
            step = int(step_text)
        if range_part in ("*", "?"):
            start, end = low, high
            star = star or step == 1
        else:
            first, dash, last = range_part.partition("-")
            start = _value(first, names)
            end = _value(last, names) if dash else (high if has_step else start)
        if start < low or end > high or start > end:
            raise ScheduleError(f"range {start}-{end} outside {low}-{high}: {part!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values), star


@dataclass(frozen=True)
class Schedule:
    """A parsed schedule that can compute its next activation time."""

    spec: str
    every: Optional[timedelta] = None
    minutes: frozenset = frozenset()
    hours: frozenset = frozenset()
    days_of_month: frozenset = frozenset()
    months: frozenset = frozenset()
    days_of_week: frozenset = frozenset()
    dom_star: bool = False
    dow_star: bool = False

    def _day_matches(self, moment: datetime) -> bool:
        dom = moment.day in self.days_of_month
        dow = (moment.isoweekday() % 7) in self.days_of_week
        return (dom and dow) if (self.dom_star or self.dow_star) else (dom or dow)

    def next_after(self, moment: datetime) -> Optional[datetime]:
        """Return the first activation strictly after ``moment``, or None."""
        if self.every is not None:
            return moment.replace(microsecond=0) + self.every
        current = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit_year = current.year + 5
        while current.year <= limit_year:
            if current.month not in self.months:
                carry, month = divmod(current.month, 12)
                current = current.replace(year=current.year + carry, month=month + 1,
                                          day=1, hour=0, minute=0)
            elif not self._day_matches(current):
                current = current.replace(hour=0, minute=0) + timedelta(days=1)
            elif current.hour not in self.hours:
                current = current.replace(minute=0) + timedelta(hours=1)
            elif current.minute not in self.minutes:
                current += timedelta(minutes=1)
            else:
                return current
        return None


def parse_schedule(spec: str) -> Schedule:
    """Parse a five-field cron spec, a descriptor, or ``@every <duration>``."""
    text = spec.strip()
    if text.startswith("@every"):
        rest = text[len("@every"):].strip()
        if not rest:
            raise ScheduleError(f"missing duration in {spec!r}")
        return Schedule(spec=spec, every=timedelta(seconds=max(int(_parse_duration(rest)), 1)))
    if text.startswith("@"):
        if text not in _DESCRIPTORS:
            raise ScheduleError(f"unrecognized descriptor: {spec!r}")
        text = _DESCRIPTORS[text]
    fields = text.split()
    if len(fields) != 5:
        raise ScheduleError(f"expected exactly 5 fields, found {len(fields)}: {spec!r}")
    (mins, _), (hours, _), (doms, dom_star), (months, _), (dows, dow_star) = (
        _parse_field(f, lo, hi, names) for f, (lo, hi, names) in zip(fields, _BOUNDS)
    )
    return Schedule(spec=spec, minutes=mins, hours=hours, days_of_month=doms,
                    months=months, days_of_week=dows, dom_star=dom_star, dow_star=dow_star)