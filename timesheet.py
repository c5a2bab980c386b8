from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable, List, Mapping, Optional, Tuple

from advisory import NO_ANOMALY, Advisory, AnomalyChecker
from entries import EntryStore, TimeEntry
from persistence import PersistenceFailure, SnapshotCache, SqliteEntryRepository
from summary import SummaryView, WeekWindow, summarize
from validation import ValidationError, ValidationPolicy, validate

logger = logging.getLogger(__name__)


@dataclass
class SubmitOutcome:
    entry: TimeEntry
    summaries: SummaryView
    advisory: Advisory = NO_ANOMALY
    warnings: List[str] = field(default_factory=list)


@dataclass
class DayOutcome:
    day: date
    entries: Tuple[TimeEntry, ...]
    summaries: SummaryView
    warnings: List[str] = field(default_factory=list)


class TimesheetUnavailable(PersistenceFailure):
    """The saved entries are not loaded, so changes cannot be checked against them."""


class RowValidationError(ValidationError):
    """A row of an edit-day submission was rejected."""

    def __init__(self, row: int, error: ValidationError) -> None:
        super().__init__(f"Row {row}: {error.message}")
        self.row = row
        self.error = error


class TimesheetSession:
    """One user's entries plus the summaries derived from them.

    Every public mutation runs validate -> store -> write-through ->
    recompute while holding the session lock, so callers only ever see
    summaries that match the store.
    """

    def __init__(
        self,
        owner_id: int,
        user_name: str = "",
        policy: Optional[ValidationPolicy] = None,
        repository: Optional[SqliteEntryRepository] = None,
        cache: Optional[SnapshotCache] = None,
        checker: Optional[AnomalyChecker] = None,
        week_window: WeekWindow = WeekWindow.TO_DATE,
        by_document: bool = False,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self.owner_id = owner_id
        self.user_name = user_name
        self.policy = policy or ValidationPolicy()
        self.repository = repository
        self.cache = cache
        self.checker = checker or AnomalyChecker()
        self.week_window = week_window
        self.by_document = by_document
        self.clock = clock
        self.store = EntryStore()
        self.reference_date = clock()
        self.stale = False
        self._lock = threading.RLock()
        self.summaries = self.recompute()

    def load(self) -> List[str]:
        """Fill the store from the repository, or from the snapshot cache without one.

        When the load fails the session is marked stale and refuses changes
        until a later load succeeds. With both backends configured, a failed
        repository load shows the snapshot copy read-only.
        """
        warnings: List[str] = []
        with self._lock:
            try:
                if self.repository is not None:
                    entries: Iterable[TimeEntry] = self.repository.query_by_owner(self.owner_id)
                elif self.cache is not None:
                    entries = self.cache.load(self.owner_id)
                else:
                    entries = ()
                self.store = EntryStore(entries)
                self.stale = False
            except (PersistenceFailure, ValueError) as exc:
                logger.warning("Owner %s: saved entries could not be loaded: %s", self.owner_id, exc)
                warnings.append(f"Saved entries could not be loaded: {exc}")
                self.stale = True
                self.store = EntryStore()
                if self.repository is not None and self.cache is not None:
                    warnings.extend(self._load_snapshot_copy())
            self.recompute()
        return warnings

    def _load_snapshot_copy(self) -> List[str]:
        try:
            self.store = EntryStore(self.cache.load(self.owner_id))  # type: ignore[union-attr]
        except (PersistenceFailure, ValueError) as exc:
            logger.warning("Owner %s: snapshot copy unavailable: %s", self.owner_id, exc)
            return []
        return ["Showing the last local copy of your entries; changes are disabled until the database is back."]

    def _ensure_writable(self) -> None:
        if self.stale:
            raise TimesheetUnavailable("Your saved entries could not be loaded; please try again shortly.")

    def entries(self) -> Tuple[TimeEntry, ...]:
        return self.store.all()

    def recompute(self) -> SummaryView:
        with self._lock:
            self.summaries = summarize(
                self.store.all(),
                self.reference_date,
                by_document=self.by_document,
                week_window=self.week_window,
            )
            return self.summaries

    def set_reference_date(self, day: date) -> SummaryView:
        with self._lock:
            if day != self.reference_date:
                self.reference_date = day
                self.recompute()
            return self.summaries

    def _write_through(self, action: str, write_repository: Callable[[], object]) -> List[str]:
        warnings = []
        if self.repository is not None:
            try:
                write_repository()
            except PersistenceFailure as exc:
                logger.warning("Owner %s: %s not saved to the database: %s", self.owner_id, action, exc)
                warnings.append(f"Your change was kept but could not be saved: {exc}")
        if self.cache is not None:
            try:
                self.cache.save(self.owner_id, self.store.all())
            except PersistenceFailure as exc:
                logger.warning("Owner %s: %s not written to the snapshot: %s", self.owner_id, action, exc)
                warnings.append(f"Your change was kept but the local copy is stale: {exc}")
        return warnings

    def submit(self, candidate: Mapping[str, object]) -> SubmitOutcome:
        """Validate and store one entry. Raises ValidationError, leaving the store untouched.

        Raises TimesheetUnavailable while the saved entries are not loaded.
        """
        with self._lock:
            self._ensure_writable()
            entry = validate(candidate, self.store.all(), self.policy, today=self.clock())
            self.store.append(entry)
            logger.info("Owner %s logged %sh on %s for %s", self.owner_id, entry.hours, entry.date, entry.project)
            warnings = self._write_through(
                "new entry",
                lambda: self.repository.insert(self.owner_id, entry),  # type: ignore[union-attr]
            )
            summaries = self.recompute()
        advisory = self.checker.check(entry, self.user_name)
        return SubmitOutcome(entry=entry, summaries=summaries, advisory=advisory, warnings=warnings)

    def replace_day(self, day: date, candidates: Iterable[Mapping[str, object]]) -> DayOutcome:
        """Replace every entry of ``day`` with the validated ``candidates``.

        Each row counts against the daily cap together with the rows before
        it; the entries currently stored for ``day`` do not.
        """
        with self._lock:
            self._ensure_writable()
            accepted: List[TimeEntry] = []
            for row, candidate in enumerate(candidates, start=1):
                values = dict(candidate)
                values["date"] = day.isoformat()
                try:
                    accepted.append(validate(values, accepted, self.policy, today=self.clock()))
                except ValidationError as exc:
                    raise RowValidationError(row, exc) from exc
            self.store.replace_for_date(day, accepted)
            logger.info("Owner %s replaced %s with %d entries", self.owner_id, day, len(accepted))
            warnings = self._write_through(
                f"edit of {day.isoformat()}",
                lambda: self.repository.replace_for_date(self.owner_id, day, accepted),  # type: ignore[union-attr]
            )
            return DayOutcome(day=day, entries=tuple(accepted), summaries=self.recompute(), warnings=warnings)

    def reset(self) -> List[str]:
        with self._lock:
            self._ensure_writable()
            self.store.reset()
            logger.info("Owner %s cleared the timesheet", self.owner_id)
            warnings = self._write_through(
                "reset",
                lambda: self.repository.clear(self.owner_id),  # type: ignore[union-attr]
            )
            self.recompute()
            return warnings
