from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, Mapping, Optional

from entries import TimeEntry, new_entry_id, parse_date
from summary import start_of_week


class ValidationError(Exception):
    """A candidate entry was rejected. ``message`` is safe to show to the user."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MissingField(ValidationError):
    def __init__(self, field_name: str) -> None:
        super().__init__(f"{field_name.capitalize()} is required.")
        self.field = field_name


class NonPositiveHours(ValidationError):
    pass


class InvalidDate(ValidationError):
    pass


class DailyCapExceeded(ValidationError):
    def __init__(self, day: date, logged_hours: float, cap: float) -> None:
        super().__init__(
            f"Daily limit of {format_hours(cap)} hours exceeded. "
            f"Already logged {format_hours(logged_hours)} hours for {day.isoformat()}."
        )
        self.day = day
        self.logged_hours = logged_hours
        self.cap = cap


@dataclass(frozen=True)
class DatePolicy:
    allow_weekends: bool = True
    allow_future: bool = True
    current_week_only: bool = False


@dataclass(frozen=True)
class ValidationPolicy:
    daily_cap: float = 8.0
    require_document: bool = False
    dates: DatePolicy = field(default_factory=DatePolicy)


CAP_TOLERANCE = 1e-9


def format_hours(value: float) -> str:
    return f"{value:g}"


def _text(candidate: Mapping[str, object], key: str) -> Optional[str]:
    value = candidate.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _hours(raw: object) -> float:
    if isinstance(raw, bool):
        raise NonPositiveHours("Hours must be a positive number.")
    try:
        hours = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise NonPositiveHours("Hours must be a positive number.") from None
    if not math.isfinite(hours):
        raise NonPositiveHours("Hours must be a positive number.")
    if hours <= 0:
        raise NonPositiveHours("Hours must be greater than zero.")
    return hours


def check_date(day: date, policy: DatePolicy, today: date) -> None:
    if not policy.allow_weekends and day.weekday() >= 5:
        raise InvalidDate(f"{day.isoformat()} is a weekend; entries are limited to weekdays.")
    if not policy.allow_future and day > today:
        raise InvalidDate(f"{day.isoformat()} is in the future.")
    if policy.current_week_only:
        week_start = start_of_week(today)
        if day < week_start or day > week_start + timedelta(days=6):
            raise InvalidDate(f"{day.isoformat()} is outside the current week.")


def validate(
    candidate: Mapping[str, object],
    existing_for_date: Iterable[TimeEntry],
    policy: Optional[ValidationPolicy] = None,
    today: Optional[date] = None,
) -> TimeEntry:
    """Turn a submitted candidate into a new :class:`TimeEntry`.

    ``existing_for_date`` are the entries already stored for the candidate's
    date; their hours count against the daily cap. Raises a
    :class:`ValidationError` subclass on the first failed check.
    """
    policy = policy or ValidationPolicy()
    today = today or date.today()

    date_raw = candidate.get("date")
    if date_raw is None or (isinstance(date_raw, str) and not date_raw.strip()):
        raise MissingField("date")
    hours_raw = candidate.get("hours")
    if hours_raw is None or (isinstance(hours_raw, str) and not hours_raw.strip()):
        raise MissingField("hours")

    hours = _hours(hours_raw)
    try:
        day = parse_date(date_raw)
    except (TypeError, ValueError):
        raise InvalidDate("Date must use the YYYY-MM-DD format.") from None
    check_date(day, policy.dates, today)

    logged_hours = [entry.hours for entry in existing_for_date if entry.date == day]
    logged = math.fsum(logged_hours)
    # Decimal hours summing to exactly the cap (1.1 + 2.2 + 4.4 + 0.3) are accepted.
    if math.fsum([*logged_hours, hours]) - policy.daily_cap > CAP_TOLERANCE:
        raise DailyCapExceeded(day, logged, policy.daily_cap)

    project = _text(candidate, "project")
    if project is None:
        raise MissingField("project")
    document = _text(candidate, "document")
    if document is None and policy.require_document:
        raise MissingField("document")

    return TimeEntry(
        id=new_entry_id(),
        date=day,
        project=project,
        hours=hours,
        document=document,
        description=_text(candidate, "description"),
    )
