from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Union

from entries import TimeEntry

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "timeEntries"


class PersistenceFailure(Exception):
    """Writing to or reading from a persistence backend failed."""


class SqliteEntryRepository:
    """Stores time entry records per owner in the application database."""

    def __init__(self, database: Union[str, Path]) -> None:
        self.database = str(database)

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.database)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not open {self.database}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    def init_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS time_entries (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE NOT NULL,
                    owner_id INTEGER NOT NULL,
                    entry_date TEXT NOT NULL,
                    project TEXT NOT NULL,
                    document TEXT,
                    hours REAL NOT NULL,
                    description TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_time_entries_owner
                    ON time_entries(owner_id, entry_date);
                """
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not prepare entry storage: {exc}") from exc
        finally:
            conn.close()

    def _insert_rows(self, conn: sqlite3.Connection, owner_id: int, entries: Iterable[TimeEntry]) -> None:
        now = datetime.now(timezone.utc).isoformat(timespec="seconds")
        conn.executemany(
            """
            INSERT INTO time_entries
            (id, owner_id, entry_date, project, document, hours, description, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    entry.id,
                    owner_id,
                    entry.date.isoformat(),
                    entry.project,
                    entry.document,
                    entry.hours,
                    entry.description,
                    now,
                )
                for entry in entries
            ],
        )

    def insert(self, owner_id: int, entry: TimeEntry) -> str:
        conn = self._connect()
        try:
            self._insert_rows(conn, owner_id, [entry])
            conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not save entry: {exc}") from exc
        finally:
            conn.close()
        return entry.id

    def replace_for_date(self, owner_id: int, day: date, entries: Iterable[TimeEntry]) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "DELETE FROM time_entries WHERE owner_id = ? AND entry_date = ?",
                    (owner_id, day.isoformat()),
                )
                self._insert_rows(conn, owner_id, entries)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not save entries for {day.isoformat()}: {exc}") from exc
        finally:
            conn.close()

    def clear(self, owner_id: int) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM time_entries WHERE owner_id = ?", (owner_id,))
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not clear entries: {exc}") from exc
        finally:
            conn.close()

    def query_by_owner(self, owner_id: int) -> List[TimeEntry]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT id, entry_date, project, document, hours, description
                FROM time_entries
                WHERE owner_id = ?
                ORDER BY seq ASC
                """,
                (owner_id,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not load entries: {exc}") from exc
        finally:
            conn.close()
        return [
            TimeEntry(
                id=row["id"],
                date=datetime.strptime(row["entry_date"], "%Y-%m-%d").date(),
                project=row["project"],
                hours=row["hours"],
                document=row["document"],
                description=row["description"],
            )
            for row in rows
        ]


_snapshot_locks: Dict[str, threading.Lock] = {}
_snapshot_locks_guard = threading.Lock()


def _snapshot_lock(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _snapshot_locks_guard:
        return _snapshot_locks.setdefault(key, threading.Lock())


class SnapshotCache:
    """Whole-store snapshots kept in a JSON file, one key per owner.

    The file is shared by all owners; every read-modify-write of it holds a
    lock keyed by the file path.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = _snapshot_lock(self.path)

    @staticmethod
    def key(owner_id: int) -> str:
        return f"{SNAPSHOT_KEY}:{owner_id}"

    def _read(self) -> Dict[str, list]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            raise PersistenceFailure(f"Could not read snapshot {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceFailure(f"Snapshot {self.path} is not a JSON object.")
        return data

    def load(self, owner_id: int) -> List[TimeEntry]:
        with self._lock:
            records = self._read().get(self.key(owner_id), [])
        try:
            return [TimeEntry.from_dict(record) for record in records]
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceFailure(f"Snapshot {self.path} holds an invalid entry: {exc}") from exc

    def save(self, owner_id: int, entries: Iterable[TimeEntry]) -> None:
        records = [entry.to_dict() for entry in entries]
        with self._lock:
            data = self._read()
            data[self.key(owner_id)] = records
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as fh:
                        json.dump(data, fh, indent=2)
                    os.replace(tmp_name, self.path)
                except BaseException:
                    os.unlink(tmp_name)
                    raise
            except OSError as exc:
                raise PersistenceFailure(f"Could not write snapshot {self.path}: {exc}") from exc
        logger.debug("Wrote %d entries for owner %s to %s", len(records), owner_id, self.path)
