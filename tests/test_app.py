from datetime import date

import advisory
import persistence
from conftest import register_and_login


def test_requires_login(client):
    response = client.get("/dashboard")
    assert response.status_code == 302
    assert "/login" in response.headers["Location"]
    assert client.get("/api/summary").status_code == 401


def test_register_and_login(client):
    response = register_and_login(client)
    assert response.status_code == 302
    assert "/dashboard" in response.headers["Location"]


def test_login_rejects_bad_password(client):
    register_and_login(client)
    client.get("/logout")
    response = client.post("/login", data={"email": "ada@example.com", "password": "wrong"})
    assert b"Invalid email or password." in response.data


def test_submit_form_and_dashboard(auth_client):
    response = auth_client.post(
        "/entries",
        data={"date": "2024-06-10", "project": "Project A", "document": "Document 1", "hours": "3"},
    )
    assert response.status_code == 302
    assert "date=2024-06-10" in response.headers["Location"]

    page = auth_client.get("/dashboard?date=2024-06-10")
    assert page.status_code == 200
    assert b"Entry added." in page.data
    assert b"Document 1" in page.data


def test_form_rejection_is_flashed(auth_client):
    auth_client.post("/entries", data={"date": "2024-06-10", "project": "Project A", "hours": "8"})
    auth_client.post("/entries", data={"date": "2024-06-10", "project": "Project B", "hours": "1"})
    page = auth_client.get("/dashboard?date=2024-06-10")
    assert b"Already logged 8 hours" in page.data


def test_api_scenarios(auth_client):
    for project, hours in (("Project A", 3), ("Project B", 5)):
        response = auth_client.post(
            "/api/time_entries", json={"date": "2024-06-10", "project": project, "hours": hours}
        )
        assert response.status_code == 201

    summary = auth_client.get("/api/summary?date=2024-06-10&by_document=0").get_json()
    daily = {row["project"]: row["hours"] for row in summary["daily"]["rows"]}
    assert daily == {"Project A": 3, "Project B": 5}
    assert summary["daily"]["total"] == 8

    rejected = auth_client.post("/api/time_entries", json={"date": "2024-06-10", "hours": 1})
    assert rejected.status_code == 400
    assert rejected.get_json()["code"] == "DailyCapExceeded"

    missing = auth_client.post("/api/time_entries", json={"date": "2024-06-11", "project": "", "hours": 1})
    assert missing.get_json()["code"] == "MissingField"
    assert len(auth_client.get("/api/time_entries").get_json()) == 2


def test_api_replace_day(auth_client):
    auth_client.post("/api/time_entries", json={"date": "2024-06-10", "project": "Project A", "hours": 3})
    auth_client.post("/api/time_entries", json={"date": "2024-06-11", "project": "Project A", "hours": 2})
    body = {"entries": [{"project": "Project C", "hours": 4, "description": "rework"}]}

    first = auth_client.put("/api/days/2024-06-10", json=body)
    assert first.status_code == 200
    second = auth_client.put("/api/days/2024-06-10", json=body)
    assert second.status_code == 200

    entries = auth_client.get("/api/time_entries?start=2024-06-10").get_json()
    assert [(entry["project"], entry["hours"]) for entry in entries] == [("Project C", 4)]
    assert len(auth_client.get("/api/time_entries").get_json()) == 2

    bad = auth_client.put("/api/days/2024-06-10", json={"entries": [{"project": "Project A", "hours": 9}]})
    assert bad.status_code == 400
    assert bad.get_json()["code"] == "DailyCapExceeded"
    assert auth_client.put("/api/days/not-a-date", json=body).status_code == 404


def test_edit_day_form(auth_client):
    auth_client.post("/entries", data={"date": "2024-06-10", "project": "Project A", "hours": "3"})
    page = auth_client.get("/days/2024-06-10/edit")
    assert page.status_code == 200
    assert b'value="Project A"' in page.data

    response = auth_client.post(
        "/days/2024-06-10",
        data={
            "project": ["Project B", ""],
            "document": ["", ""],
            "hours": ["2", ""],
            "description": ["", ""],
        },
    )
    assert response.status_code == 302
    entries = auth_client.get("/api/time_entries").get_json()
    assert [(entry["project"], entry["hours"]) for entry in entries] == [("Project B", 2)]


def test_entries_survive_restart(app, auth_client):
    auth_client.post("/api/time_entries", json={"date": "2024-06-10", "project": "Project A", "hours": 3})
    app.extensions["timesheet_sessions"].clear()
    entries = auth_client.get("/api/time_entries").get_json()
    assert [entry["project"] for entry in entries] == ["Project A"]


def test_reset_and_export(auth_client):
    auth_client.post(
        "/api/time_entries",
        json={"date": "2024-06-10", "project": "Project A", "hours": 1.5, "description": "standup, notes"},
    )
    export = auth_client.get("/entries/export.csv")
    assert export.mimetype == "text/csv"
    lines = export.get_data(as_text=True).splitlines()
    assert lines[0] == "id,date,project,document,hours,description"
    assert lines[1].endswith(',2024-06-10,Project A,,1.5,"standup, notes"')

    auth_client.post("/entries/reset")
    assert auth_client.get("/api/time_entries").get_json() == []


def test_anomaly_warning_is_flashed(tmp_path, monkeypatch):
    from app import create_app

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "DATABASE": str(tmp_path / "timesheet.db"),
            "ANOMALY_CHECK_URL": "https://llm.example/v1/chat/completions",
        }
    )

    class Response:
        def raise_for_status(self):
            pass

        def json(self):
            content = '{"confirmationNeeded": true, "reason": "8 hours on a single plan"}'
            return {"choices": [{"message": {"content": content}}]}

    monkeypatch.setattr(advisory.requests, "post", lambda *args, **kwargs: Response())
    client = app.test_client()
    register_and_login(client)
    today = date.today().isoformat()
    client.post("/entries", data={"date": today, "project": "Project A", "hours": "8"})
    page = client.get(f"/dashboard?date={today}")
    assert b"Please double-check this entry: 8 hours on a single plan" in page.data
    assert b"Entry added." in page.data


def fail_next_load(monkeypatch):
    original = persistence.SqliteEntryRepository.query_by_owner
    calls = []

    def query_by_owner(self, owner_id):
        calls.append(owner_id)
        if len(calls) == 1:
            raise persistence.PersistenceFailure("unable to open database file")
        return original(self, owner_id)

    monkeypatch.setattr(persistence.SqliteEntryRepository, "query_by_owner", query_by_owner)


def test_failed_load_rejects_changes_and_retries(app, auth_client, monkeypatch):
    auth_client.post("/api/time_entries", json={"date": "2024-06-10", "project": "Project A", "hours": 8})
    app.extensions["timesheet_sessions"].clear()
    fail_next_load(monkeypatch)

    response = auth_client.post("/api/time_entries", json={"date": "2024-06-10", "project": "Project B", "hours": 8})
    assert response.status_code == 503
    assert response.get_json()["code"] == "TimesheetUnavailable"
    assert app.extensions["timesheet_sessions"] == {}

    entries = auth_client.get("/api/time_entries").get_json()
    assert [(entry["project"], entry["hours"]) for entry in entries] == [("Project A", 8)]
    rejected = auth_client.post("/api/time_entries", json={"date": "2024-06-10", "project": "Project B", "hours": 8})
    assert rejected.get_json()["code"] == "DailyCapExceeded"

    stored = persistence.SqliteEntryRepository(app.config["DATABASE"]).query_by_owner(1)
    assert [entry.hours for entry in stored] == [8]


def test_failed_load_form_submit_is_flashed(app, auth_client, monkeypatch):
    app.extensions["timesheet_sessions"].clear()
    fail_next_load(monkeypatch)
    auth_client.post("/entries", data={"date": "2024-06-10", "project": "Project A", "hours": "2"})
    page = auth_client.get("/dashboard?date=2024-06-10")
    assert b"Saved entries could not be loaded" in page.data
    assert b"please try again shortly" in page.data
    assert b"Entry added." not in page.data


def test_failed_load_falls_back_to_snapshot(tmp_path, monkeypatch):
    from app import create_app

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "DATABASE": str(tmp_path / "timesheet.db"),
            "SNAPSHOT_PATH": str(tmp_path / "snapshot.json"),
        }
    )
    client = app.test_client()
    register_and_login(client)
    client.post("/api/time_entries", json={"date": "2024-06-10", "project": "Project A", "hours": 3})
    app.extensions["timesheet_sessions"].clear()
    fail_next_load(monkeypatch)

    entries = client.get("/api/time_entries").get_json()
    assert [(entry["project"], entry["hours"]) for entry in entries] == [("Project A", 3)]
    assert app.extensions["timesheet_sessions"] == {}
