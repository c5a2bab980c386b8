import json
import threading
from datetime import date

import pytest

from conftest import make_entry
from persistence import PersistenceFailure, SnapshotCache, SqliteEntryRepository


@pytest.fixture
def repository(tmp_path):
    repository = SqliteEntryRepository(tmp_path / "entries.db")
    repository.init_schema()
    return repository


def test_insert_and_query_by_owner(repository):
    first = make_entry("2024-06-10", "Project A", 3, document="Document 1", description="kickoff")
    second = make_entry("2024-06-09", "Project B", 1.5)
    assert repository.insert(1, first) == first.id
    repository.insert(1, second)
    repository.insert(2, make_entry("2024-06-10", "Project C", 4))

    assert repository.query_by_owner(1) == [first, second]
    assert len(repository.query_by_owner(2)) == 1
    assert repository.query_by_owner(3) == []


def test_replace_for_date_and_clear(repository):
    repository.insert(1, make_entry("2024-06-10", "Project A", 3))
    kept = make_entry("2024-06-11", "Project B", 2)
    repository.insert(1, kept)
    replacement = make_entry("2024-06-10", "Project C", 1)

    repository.replace_for_date(1, date(2024, 6, 10), [replacement])
    assert repository.query_by_owner(1) == [kept, replacement]

    repository.clear(1)
    assert repository.query_by_owner(1) == []


def test_duplicate_insert_is_reported(repository):
    entry = make_entry("2024-06-10", "Project A", 3)
    repository.insert(1, entry)
    with pytest.raises(PersistenceFailure):
        repository.insert(1, entry)


def test_unreachable_database_is_reported(tmp_path):
    repository = SqliteEntryRepository(tmp_path / "missing" / "entries.db")
    with pytest.raises(PersistenceFailure):
        repository.query_by_owner(1)


def test_snapshot_round_trip_per_owner(tmp_path):
    cache = SnapshotCache(tmp_path / "snapshot.json")
    assert cache.load(1) == []
    entries = [make_entry("2024-06-10", "Project A", 3), make_entry("2024-06-11", "Project B", 2)]
    cache.save(1, entries)
    cache.save(2, entries[:1])

    assert cache.load(1) == entries
    assert cache.load(2) == entries[:1]
    data = json.loads((tmp_path / "snapshot.json").read_text(encoding="utf-8"))
    assert set(data) == {"timeEntries:1", "timeEntries:2"}


def test_snapshot_invalid_content(tmp_path):
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps({"timeEntries:1": [{"id": "x"}]}), encoding="utf-8")
    with pytest.raises(PersistenceFailure):
        SnapshotCache(path).load(1)


def test_concurrent_snapshot_saves_keep_every_owner(tmp_path):
    path = tmp_path / "snapshot.json"
    entries = [make_entry("2024-06-10", "Project A", 1)]

    def save_many(owner_id):
        cache = SnapshotCache(path)
        for _ in range(20):
            cache.save(owner_id, entries)

    threads = [threading.Thread(target=save_many, args=(owner_id,)) for owner_id in range(1, 6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    data = json.loads(path.read_text(encoding="utf-8"))
    assert set(data) == {f"timeEntries:{owner_id}" for owner_id in range(1, 6)}
    assert [p.name for p in tmp_path.iterdir()] == ["snapshot.json"]
