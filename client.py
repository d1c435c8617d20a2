from __future__ import annotations

from datetime import date, datetime, tzinfo
import logging
from typing import Callable, TypedDict

import requests

from routines import (
    STRICT,
    DateLike,
    Routine,
    Task,
    day_key,
    entry_for,
    is_actionable,
    is_completed_on,
    sorted_tasks,
    week_days,
)

logger = logging.getLogger(__name__)


class APIError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class Toggle(TypedDict):
    routineId: int
    taskId: int
    day: str
    action: str
    previous: list[str]
    completedDates: list[str]


class ToggleOutcome(TypedDict):
    ok: bool
    toggle: Toggle | None
    error: str | None


class RoutineClient:
    def __init__(
        self,
        base_url: str,
        session: requests.Session | None = None,
        timeout: float = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: dict | None = None, params: dict | None = None):
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise APIError(0, str(exc)) from exc

        if not 200 <= response.status_code < 300:
            try:
                message = response.json().get("message", "")
            except ValueError:
                message = response.text
            raise APIError(response.status_code, message or f"HTTP {response.status_code}")
        return response.json()

    def signup(self, username: str, email: str, password: str) -> dict:
        return self._request(
            "POST",
            "/auth/signup",
            {"username": username, "email": email, "password": password},
        )

    def login(self, username: str, password: str) -> dict:
        return self._request("POST", "/auth/login", {"username": username, "password": password})

    def me(self) -> dict:
        return self._request("GET", "/auth/me")

    def list_routines(self) -> list[Routine]:
        return self._request("GET", "/routines")

    def create_routine(self, title: str, tasks: list[dict]) -> Routine:
        return self._request("POST", "/routines", {"title": title, "tasks": tasks})

    def update_routine(self, routine_id: int, **changes) -> Routine:
        return self._request("PUT", f"/routines/{routine_id}", changes)

    def delete_routine(self, routine_id: int) -> dict:
        return self._request("DELETE", f"/routines/{routine_id}")

    def complete_task(self, routine_id: int, task_id: int, day: str, view: str = "grid") -> Routine:
        return self._request(
            "PATCH",
            f"/routines/{routine_id}/tasks/{task_id}/complete",
            {"date": day, "view": view},
        )

    def uncomplete_task(self, routine_id: int, task_id: int, day: str, view: str = "grid") -> Routine:
        return self._request(
            "PATCH",
            f"/routines/{routine_id}/tasks/{task_id}/uncomplete",
            {"date": day, "view": view},
        )

    def progress(self, day: str | None = None, window: str = "week") -> dict:
        params = {"window": window}
        if day:
            params["date"] = day
        return self._request("GET", "/routines/progress", params=params)


def find_task(routine: Routine, task_id: int) -> Task:
    for task in routine["tasks"]:
        if task["id"] == task_id:
            return task
    raise KeyError(task_id)


def plan_toggle(routine: Routine, task_id: int, day: DateLike, tz: tzinfo | None = None) -> Toggle:
    task = find_task(routine, task_id)
    key = day_key(day, tz)
    previous = list(task.get("completedDates") or [])
    if is_completed_on(task, key, tz):
        action = "uncomplete"
        updated = [entry for entry in previous if day_key(entry, tz) != key]
    else:
        action = "complete"
        updated = previous + [entry_for(key)]
    return {
        "routineId": routine["id"],
        "taskId": task_id,
        "day": key,
        "action": action,
        "previous": previous,
        "completedDates": updated,
    }


def apply_toggle(routine: Routine, toggle: Toggle) -> None:
    find_task(routine, toggle["taskId"])["completedDates"] = list(toggle["completedDates"])


def revert_toggle(routine: Routine, toggle: Toggle) -> None:
    find_task(routine, toggle["taskId"])["completedDates"] = list(toggle["previous"])


class RoutineBoard:
    def __init__(
        self,
        client: RoutineClient,
        policy: str = STRICT,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.client = client
        self.policy = policy
        self.tz = tz
        self.clock = clock
        self.routines: dict[int, Routine] = {}

    def refresh(self) -> list[Routine]:
        self.routines = {routine["id"]: routine for routine in self.client.list_routines()}
        return list(self.routines.values())

    def week(self, pivot: date | None = None) -> list[date]:
        return week_days(pivot or self.clock().date())

    def grid(self, routine_id: int, pivot: date | None = None) -> list[dict]:
        routine = self.routines[routine_id]
        now = self.clock()
        days = self.week(pivot)
        rows = []
        for task in sorted_tasks(routine):
            cells = [
                {
                    "date": day_key(day),
                    "completed": is_completed_on(task, day, self.tz),
                    "actionable": is_actionable(task, day, now, self.policy, self.tz),
                }
                for day in days
            ]
            rows.append({"taskId": task["id"], "name": task["name"], "cells": cells})
        return rows

    def toggle(self, routine_id: int, task_id: int, day: DateLike) -> ToggleOutcome:
        routine = self.routines[routine_id]
        task = find_task(routine, task_id)
        if not is_actionable(task, day, self.clock(), self.policy, self.tz):
            return {"ok": False, "toggle": None, "error": "Task is not actionable right now"}

        toggle = plan_toggle(routine, task_id, day, self.tz)
        apply_toggle(routine, toggle)
        view = "grid" if self.policy == STRICT else "card"
        try:
            if toggle["action"] == "complete":
                updated = self.client.complete_task(routine_id, task_id, toggle["day"], view)
            else:
                updated = self.client.uncomplete_task(routine_id, task_id, toggle["day"], view)
        except APIError as exc:
            revert_toggle(routine, toggle)
            logger.warning("Failed to %s task %s: %s", toggle["action"], task_id, exc.message)
            return {"ok": False, "toggle": toggle, "error": exc.message}

        self.routines[routine_id] = updated
        return {"ok": True, "toggle": toggle, "error": None}
