from datetime import date, datetime

import pytest
import requests

from client import APIError, RoutineBoard, RoutineClient, apply_toggle, plan_toggle, revert_toggle
from conftest import FlaskSession
from routines import RELAXED

BASE_URL = "http://tracker.test"


@pytest.fixture
def api(client):
    return RoutineClient(BASE_URL, session=FlaskSession(client, BASE_URL))


@pytest.fixture
def board(api, clock):
    api.create_routine("Morning", [{"name": "Stretch", "startTime": "07:00", "endTime": "07:15"}])
    board = RoutineBoard(api, clock=clock)
    board.refresh()
    return board


def only_routine(board):
    return next(iter(board.routines.values()))


class BrokenSession:
    def request(self, *args, **kwargs):
        raise requests.ConnectionError("connection refused")


def test_errors_carry_status_and_message(flask_app, clock):
    anonymous = RoutineClient(BASE_URL, session=FlaskSession(flask_app.test_client(), BASE_URL))
    with pytest.raises(APIError) as excinfo:
        anonymous.list_routines()
    assert excinfo.value.status_code == 401
    assert excinfo.value.message == "Not authorized, please log in"


def test_network_errors_become_api_errors():
    with pytest.raises(APIError) as excinfo:
        RoutineClient(BASE_URL, session=BrokenSession()).list_routines()
    assert excinfo.value.status_code == 0


def test_crud_round_trip(api):
    routine = api.create_routine("Evening", [{"name": "Read", "startTime": "21:00"}])
    updated = api.update_routine(routine["id"], title="Night")
    assert updated["title"] == "Night"
    assert api.progress(window="trailing")["summary"]["totalRoutines"] == 1
    assert api.delete_routine(routine["id"]) == {"message": "Routine deleted"}
    assert api.list_routines() == []


def test_plan_and_revert_toggle():
    routine = {
        "id": 1,
        "ownerId": 1,
        "title": "Morning",
        "createdAt": "",
        "tasks": [{"id": 5, "name": "Run", "startTime": "06:00", "completedDates": []}],
    }
    toggle = plan_toggle(routine, 5, date(2024, 3, 6))
    assert toggle["action"] == "complete"
    apply_toggle(routine, toggle)
    assert routine["tasks"][0]["completedDates"] == ["2024-03-06T00:00:00"]
    assert plan_toggle(routine, 5, "2024-03-06")["action"] == "uncomplete"
    revert_toggle(routine, toggle)
    assert routine["tasks"][0]["completedDates"] == []


def test_grid_marks_only_today_after_end_time(board, clock):
    routine = only_routine(board)
    clock.now = datetime(2024, 3, 6, 7, 15)
    rows = board.grid(routine["id"])
    cells = rows[0]["cells"]
    assert [cell["date"] for cell in cells][0] == "2024-03-04"
    assert [cell["actionable"] for cell in cells] == [False, False, True, False, False, False, False]


def test_toggle_not_actionable_sends_nothing(board, clock):
    routine = only_routine(board)
    task = routine["tasks"][0]
    clock.now = datetime(2024, 3, 6, 6, 59)
    outcome = board.toggle(routine["id"], task["id"], date(2024, 3, 6))
    assert outcome["ok"] is False
    assert outcome["toggle"] is None
    assert task["completedDates"] == []


def test_toggle_success_replaces_local_view(board, clock, api):
    routine = only_routine(board)
    task_id = routine["tasks"][0]["id"]
    clock.now = datetime(2024, 3, 6, 7, 15)

    outcome = board.toggle(routine["id"], task_id, date(2024, 3, 6))
    assert outcome["ok"] is True
    assert outcome["toggle"]["action"] == "complete"
    assert only_routine(board)["tasks"][0]["completedDates"] == ["2024-03-06T00:00:00"]
    assert api.list_routines()[0]["tasks"][0]["completedDates"] == ["2024-03-06T00:00:00"]

    outcome = board.toggle(routine["id"], task_id, "2024-03-06")
    assert outcome["toggle"]["action"] == "uncomplete"
    assert only_routine(board)["tasks"][0]["completedDates"] == []


def test_toggle_failure_rolls_back(board, clock):
    routine = only_routine(board)
    task = routine["tasks"][0]
    clock.now = datetime(2024, 3, 6, 7, 15)
    board.client.session = BrokenSession()

    outcome = board.toggle(routine["id"], task["id"], date(2024, 3, 6))
    assert outcome["ok"] is False
    assert outcome["toggle"]["completedDates"] == ["2024-03-06T00:00:00"]
    assert "connection refused" in outcome["error"]
    assert task["completedDates"] == []


def test_relaxed_board_edits_past_days(api, clock):
    api.create_routine("Evening", [{"name": "Read", "startTime": "21:00"}])
    board = RoutineBoard(api, policy=RELAXED, clock=clock)
    routine = board.refresh()[0]
    outcome = board.toggle(routine["id"], routine["tasks"][0]["id"], "2024-03-01")
    assert outcome["ok"] is True
    assert board.routines[routine["id"]]["tasks"][0]["completedDates"] == ["2024-03-01T00:00:00"]
