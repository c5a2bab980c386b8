from __future__ import annotations

import calendar
import enum
import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Tuple

from entries import TimeEntry

WEEKDAY_LABELS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
DESCRIPTION_SEPARATOR = ", "


class Bucket(enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class WeekWindow(enum.Enum):
    TO_DATE = "to_date"
    FULL = "full"


class GroupKey(NamedTuple):
    project: str
    document: Optional[str] = None
    label: Optional[str] = None


def start_of_week(anchor: date) -> date:
    return anchor - timedelta(days=anchor.weekday())


def calculate_week_bounds(anchor: date, window: WeekWindow = WeekWindow.TO_DATE) -> Tuple[date, date]:
    start = start_of_week(anchor)
    if window is WeekWindow.FULL:
        return start, start + timedelta(days=6)
    return start, anchor


def calculate_month_bounds(anchor: date) -> Tuple[date, date]:
    last_day = calendar.monthrange(anchor.year, anchor.month)[1]
    return anchor.replace(day=1), anchor.replace(day=last_day)


def weekday_label(day: date) -> str:
    return WEEKDAY_LABELS[day.weekday()]


def week_of_month(day: date) -> int:
    """Monday-start week index within the month.

    Week 1 begins on the month's first Monday; the days before it form
    week 0.
    """
    first_monday = 1 + (7 - day.replace(day=1).weekday()) % 7
    if day.day < first_monday:
        return 0
    return (day.day - first_monday) // 7 + 1


def week_of_month_label(day: date) -> str:
    return f"Week {week_of_month(day)}"


def classify(
    entry: TimeEntry,
    reference_date: date,
    week_window: WeekWindow = WeekWindow.TO_DATE,
) -> FrozenSet[Bucket]:
    buckets = set()
    if entry.date == reference_date:
        buckets.add(Bucket.DAILY)
    week_start, week_end = calculate_week_bounds(reference_date, week_window)
    if week_start <= entry.date <= week_end:
        buckets.add(Bucket.WEEKLY)
    month_start, month_end = calculate_month_bounds(reference_date)
    if month_start <= entry.date <= month_end:
        buckets.add(Bucket.MONTHLY)
    return frozenset(buckets)


def group_key(entry: TimeEntry, bucket: Bucket, by_document: bool = False) -> GroupKey:
    document = entry.document if by_document else None
    if bucket is Bucket.WEEKLY:
        label: Optional[str] = weekday_label(entry.date)
    elif bucket is Bucket.MONTHLY:
        label = week_of_month_label(entry.date)
    else:
        label = None
    return GroupKey(entry.project, document, label)


def _sort_key(key: GroupKey) -> Tuple[str, str, str]:
    # Weekday labels sort by position in the week, not alphabetically.
    label = key.label or ""
    if label in WEEKDAY_LABELS:
        label = str(WEEKDAY_LABELS.index(label))
    elif label.startswith("Week "):
        label = label[5:].zfill(2)
    return key.project, key.document or "", label


@dataclass
class BucketSummary:
    bucket: Bucket
    reference_date: date
    groups: Dict[GroupKey, float] = field(default_factory=dict)
    total: float = 0.0
    descriptions: Dict[GroupKey, str] = field(default_factory=dict)

    def rows(self) -> List[Dict[str, object]]:
        return [
            {
                "project": key.project,
                "document": key.document,
                "label": key.label,
                "hours": self.groups[key],
                "description": self.descriptions.get(key, ""),
            }
            for key in sorted(self.groups, key=_sort_key)
        ]

    def to_dict(self) -> Dict[str, object]:
        return {
            "bucket": self.bucket.value,
            "reference_date": self.reference_date.isoformat(),
            "rows": self.rows(),
            "total": self.total,
        }


@dataclass
class SummaryView:
    reference_date: date
    daily: BucketSummary
    weekly: BucketSummary
    monthly: BucketSummary

    def buckets(self) -> List[BucketSummary]:
        return [self.daily, self.weekly, self.monthly]

    def to_dict(self) -> Dict[str, object]:
        return {summary.bucket.value: summary.to_dict() for summary in self.buckets()}


def aggregate(
    entries: Iterable[TimeEntry],
    bucket: Bucket,
    reference_date: date,
    by_document: bool = False,
    week_window: WeekWindow = WeekWindow.TO_DATE,
) -> BucketSummary:
    """Sum hours per group key for the entries falling into ``bucket``.

    Sums use :func:`math.fsum`, so the result does not depend on the order
    of ``entries``. Descriptions keep the order the entries were given in.
    """
    per_group: Dict[GroupKey, List[float]] = {}
    notes: Dict[GroupKey, List[str]] = {}
    matched: List[float] = []
    for entry in entries:
        if bucket not in classify(entry, reference_date, week_window):
            continue
        key = group_key(entry, bucket, by_document)
        per_group.setdefault(key, []).append(entry.hours)
        matched.append(entry.hours)
        if entry.description:
            notes.setdefault(key, []).append(entry.description)

    return BucketSummary(
        bucket=bucket,
        reference_date=reference_date,
        groups={key: math.fsum(hours) for key, hours in per_group.items()},
        total=math.fsum(matched),
        descriptions={key: DESCRIPTION_SEPARATOR.join(texts) for key, texts in notes.items()},
    )


def summarize(
    entries: Iterable[TimeEntry],
    reference_date: date,
    by_document: bool = False,
    week_window: WeekWindow = WeekWindow.TO_DATE,
) -> SummaryView:
    snapshot = tuple(entries)
    return SummaryView(
        reference_date=reference_date,
        daily=aggregate(snapshot, Bucket.DAILY, reference_date, by_document, week_window),
        weekly=aggregate(snapshot, Bucket.WEEKLY, reference_date, by_document, week_window),
        monthly=aggregate(snapshot, Bucket.MONTHLY, reference_date, by_document, week_window),
    )
