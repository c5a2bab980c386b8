from datetime import date

import pytest

from app import create_app
from entries import TimeEntry, new_entry_id


def make_entry(day, project, hours, document=None, description=None):
    if isinstance(day, str):
        day = date.fromisoformat(day)
    return TimeEntry(
        id=new_entry_id(),
        date=day,
        project=project,
        hours=hours,
        document=document,
        description=description,
    )


@pytest.fixture
def app(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "DATABASE": str(tmp_path / "timesheet.db"),
        }
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


def register_and_login(client, email="ada@example.com", name="Ada", password="secret"):
    client.post("/register", data={"email": email, "name": name, "password": password})
    return client.post("/login", data={"email": email, "password": password})


@pytest.fixture
def auth_client(client):
    register_and_login(client)
    return client
