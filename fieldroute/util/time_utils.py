"""Tiny time helpers for "H:MM" schedule times and calendar-day strings."""

import calendar
from datetime import date, datetime, timedelta
from typing import Optional


def parse_hhmm(s: str) -> int:
    hours, minutes = s.strip().split(":")  # 'H:MM' or 'HH:MM'
    return int(hours) * 60 + int(minutes)  # minutes since midnight


def parse_hhmm_or_none(s: Optional[str]) -> Optional[int]:
    if not s:
        return None
    try:
        return parse_hhmm(s)
    except ValueError:
        return None


def format_hhmm(minutes: int) -> str:
    hours, mins = divmod(int(minutes), 60)
    return f"{hours}:{mins:02d}"  # no zero-padding on the hour


def hour_label(hour24: int) -> str:
    period = "AM" if hour24 % 24 < 12 else "PM"
    display = hour24 % 12 or 12
    return f"{display} {period}"


def parse_day(s: str) -> date:
    return date.fromisoformat(s)  # local calendar day, no timezone


def format_day(d: date) -> str:
    return d.isoformat()


def add_days(s: str, days: int) -> str:
    return format_day(parse_day(s) + timedelta(days=days))


def add_months(s: str, months: int) -> str:
    d = parse_day(s)
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])  # clamp Jan 31 -> Feb 28/29
    return format_day(date(year, month, day))


def weekday(s: str) -> int:
    return parse_day(s).weekday()  # Monday=0 .. Sunday=6


def day_name(s: str) -> str:
    return calendar.day_name[weekday(s)]


def elapsed_minutes(start: datetime, now: datetime) -> int:
    return max(0, int((now - start).total_seconds() // 60))
