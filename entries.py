from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple


def new_entry_id() -> str:
    return uuid.uuid4().hex


def parse_date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()


@dataclass(frozen=True)
class TimeEntry:
    id: str
    date: date
    project: str
    hours: float
    document: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "TimeEntry":
        return cls(
            id=str(data["id"]),
            date=parse_date(data["date"]),
            project=str(data["project"]),
            hours=float(data["hours"]),  # type: ignore[arg-type]
            document=data.get("document") or None,  # type: ignore[arg-type]
            description=data.get("description") or None,  # type: ignore[arg-type]
        )


class EntryStore:
    """Ordered, in-memory collection of one user's time entries.

    Entries are never changed in place. The only ways to remove an entry
    are replacing every entry of its date or resetting the whole store.
    Each mutation builds the new list before swapping it in.
    """

    def __init__(self, entries: Iterable[TimeEntry] = ()) -> None:
        self._entries: List[TimeEntry] = []
        for entry in entries:
            self.append(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TimeEntry]:
        return iter(tuple(self._entries))

    def all(self) -> Tuple[TimeEntry, ...]:
        return tuple(self._entries)

    def for_date(self, day: date) -> Tuple[TimeEntry, ...]:
        return tuple(entry for entry in self._entries if entry.date == day)

    def append(self, entry: TimeEntry) -> None:
        if any(existing.id == entry.id for existing in self._entries):
            raise ValueError(f"Duplicate entry id {entry.id!r}.")
        self._entries = self._entries + [entry]

    def replace_for_date(self, day: date, entries: Iterable[TimeEntry]) -> None:
        replacement = list(entries)
        seen = set()
        for entry in replacement:
            if entry.date != day:
                raise ValueError(
                    f"Entry {entry.id!r} is dated {entry.date.isoformat()}, expected {day.isoformat()}."
                )
            if entry.id in seen:
                raise ValueError(f"Duplicate entry id {entry.id!r}.")
            seen.add(entry.id)

        kept = [entry for entry in self._entries if entry.date != day]
        if any(entry.id in seen for entry in kept):
            raise ValueError("Replacement ids collide with entries of another date.")
        self._entries = kept + replacement

    def reset(self) -> None:
        self._entries = []
