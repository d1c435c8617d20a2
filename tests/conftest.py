from datetime import datetime

import pytest

import app as app_module


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FlaskSession:
    """Routes RoutineClient requests into a Flask test client."""

    def __init__(self, test_client, base_url="http://tracker.test"):
        self.test_client = test_client
        self.base_url = base_url

    def request(self, method, url, json=None, params=None, timeout=None):
        path = url[len(self.base_url):]
        return FlaskResponse(
            self.test_client.open(path, method=method, json=json, query_string=params)
        )


class FlaskResponse:
    def __init__(self, response):
        self.status_code = response.status_code
        self.text = response.get_data(as_text=True)
        self._json = response.get_json(silent=True)

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json


@pytest.fixture
def flask_app(tmp_path, monkeypatch):
    monkeypatch.setattr(app_module, "DATABASE_URL", "")
    monkeypatch.setattr(app_module, "DB_BACKEND", "sqlite")
    monkeypatch.setitem(app_module.app.config, "DATABASE", str(tmp_path / "routines.db"))
    monkeypatch.setitem(app_module.app.config, "TIMEZONE", None)
    monkeypatch.setitem(app_module.app.config, "TESTING", True)
    yield app_module.app


@pytest.fixture
def clock(monkeypatch):
    # 2024-03-06 is a Wednesday.
    current = Clock(datetime(2024, 3, 6, 12, 0))
    monkeypatch.setattr(app_module, "local_now", current)
    return current


def signup(test_client, username="sam"):
    response = test_client.post(
        "/auth/signup",
        json={"username": username, "email": f"{username}@example.com", "password": "secret"},
    )
    assert response.status_code == 201
    return response.get_json()


@pytest.fixture
def client(flask_app, clock):
    test_client = flask_app.test_client()
    signup(test_client)
    return test_client


@pytest.fixture
def other_client(flask_app, clock):
    test_client = flask_app.test_client()
    signup(test_client, "alex")
    return test_client
