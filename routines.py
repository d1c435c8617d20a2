from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta, tzinfo
from typing import TypedDict

from errors import ValidationError

TIME_PATTERN = re.compile(r"^([0-1][0-9]|2[0-3]):[0-5][0-9]$")
ALARM_PATTERN = re.compile(r"wake\s*up|alarm", re.IGNORECASE)
STRICT = "strict"
RELAXED = "relaxed"
VIEW_POLICIES = {"grid": STRICT, "card": RELAXED}
DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
ROUTINE_NAME_LIMIT = 15


class Task(TypedDict, total=False):
    id: int
    name: str
    startTime: str
    endTime: str | None
    completedDates: list[str]


class Routine(TypedDict):
    id: int
    ownerId: int
    title: str
    createdAt: str
    tasks: list[Task]


DateLike = date | datetime | str


def day_key(value: DateLike, tz: tzinfo | None = None) -> str:
    # Naive values are already local; aware ones are moved into tz first.
    if isinstance(value, str):
        value = _parse_date_like(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(tz)
        value = value.date()
    if not isinstance(value, date):
        raise ValidationError(f"Unsupported date value: {value!r}")
    return value.strftime("%Y-%m-%d")


def _parse_date_like(raw: str) -> date | datetime:
    text = raw.strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid date: {raw!r}") from exc


def parse_day(value: DateLike, tz: tzinfo | None = None) -> date:
    return date.fromisoformat(day_key(value, tz))


def entry_for(day: DateLike, tz: tzinfo | None = None) -> str:
    return f"{day_key(day, tz)}T00:00:00"


def is_completed_on(task: Task, day: DateLike, tz: tzinfo | None = None) -> bool:
    key = day_key(day, tz)
    return any(day_key(entry, tz) == key for entry in task.get("completedDates") or [])


def mark_complete(task: Task, day: DateLike, tz: tzinfo | None = None) -> bool:
    if is_completed_on(task, day, tz):
        return False
    task.setdefault("completedDates", []).append(entry_for(day, tz))
    return True


def mark_incomplete(task: Task, day: DateLike, tz: tzinfo | None = None) -> int:
    key = day_key(day, tz)
    entries = task.get("completedDates") or []
    kept = [entry for entry in entries if day_key(entry, tz) != key]
    task["completedDates"] = kept
    return len(entries) - len(kept)


def time_to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def clock_minutes(now: datetime) -> int:
    return now.hour * 60 + now.minute


def _strict_gate(task: Task, target: DateLike, now: datetime, tz: tzinfo | None) -> bool:
    if day_key(target, tz) != day_key(now, tz):
        return False
    if not task.get("startTime"):
        return True
    if now.tzinfo is not None:
        now = now.astimezone(tz)
    deadline = task.get("endTime") or task["startTime"]
    return clock_minutes(now) >= time_to_minutes(deadline)


def _relaxed_gate(task: Task, target: DateLike, now: datetime, tz: tzinfo | None) -> bool:
    return True


TOGGLE_POLICIES: dict[str, Callable[[Task, DateLike, datetime, tzinfo | None], bool]] = {
    STRICT: _strict_gate,
    RELAXED: _relaxed_gate,
}


def is_actionable(
    task: Task,
    target: DateLike,
    now: datetime,
    policy: str = STRICT,
    tz: tzinfo | None = None,
) -> bool:
    try:
        gate = TOGGLE_POLICIES[policy]
    except KeyError:
        raise ValueError(f"Unknown toggle policy: {policy}") from None
    return gate(task, target, now, tz)


def policy_for_view(view: str | None) -> str:
    if view is None:
        return STRICT
    try:
        return VIEW_POLICIES[view]
    except KeyError:
        raise ValidationError(f"Unknown view: {view}") from None


def is_schedule_locked(task: Task, now: datetime, tz: tzinfo | None = None) -> bool:
    if not task.get("startTime"):
        return False
    if now.tzinfo is not None:
        now = now.astimezone(tz)
    return clock_minutes(now) >= time_to_minutes(task["startTime"])


def validate_time(value: str | None, field: str) -> str:
    if not isinstance(value, str) or not TIME_PATTERN.match(value):
        raise ValidationError(f"Please provide a valid {field} in HH:MM format")
    return value


def validate_task(data: dict, tz: tzinfo | None = None) -> Task:
    if not isinstance(data, dict):
        raise ValidationError("Each task must be an object")
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValidationError("Each task needs a name")
    start_time = validate_time(data.get("startTime"), "startTime")
    end_time = data.get("endTime") or None
    if end_time is not None:
        validate_time(end_time, "endTime")
        if end_time <= start_time:
            raise ValidationError(f'Task "{name}" has invalid time range')
    task: Task = {"name": name, "startTime": start_time, "endTime": end_time}
    if data.get("completedDates") is not None:
        task["completedDates"] = normalize_entries(data["completedDates"], tz)
    return task


def normalize_entries(values: Iterable[DateLike], tz: tzinfo | None = None) -> list[str]:
    if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
        raise ValidationError("completedDates must be a list")
    return [entry_for(value, tz) for value in values]


def validate_title(value: object) -> str:
    title = value.strip() if isinstance(value, str) else ""
    if not title:
        raise ValidationError("Please provide a routine title")
    return title


def merge_tasks(
    existing: list[Task],
    submitted: list[dict],
    now: datetime,
    tz: tzinfo | None = None,
) -> list[Task]:
    if not isinstance(submitted, list):
        raise ValidationError("tasks must be a list")
    by_id = {task["id"]: task for task in existing}
    merged: list[Task] = []
    for raw in submitted:
        task = validate_task(raw, tz)
        current = by_id.get(_coerce_id(raw.get("id")))
        if current is None:
            task.setdefault("completedDates", [])
            merged.append(task)
            continue
        rescheduled = (
            task["startTime"] != current.get("startTime")
            or task["endTime"] != (current.get("endTime") or None)
        )
        if rescheduled and is_schedule_locked(current, now, tz):
            raise ValidationError(
                f'Task "{current["name"]}" has already started today; its schedule is locked'
            )
        task["id"] = current["id"]
        if "completedDates" not in task:
            task["completedDates"] = list(current.get("completedDates") or [])
        merged.append(task)
    return merged


def _coerce_id(value: object) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def sorted_tasks(routine: Routine) -> list[Task]:
    return sorted(routine["tasks"], key=lambda task: task.get("startTime") or "")


def is_alarm(task: Task) -> bool:
    return bool(ALARM_PATTERN.search(task.get("name") or ""))


def percentage(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


def progress_for_day(
    routine: Routine, day: DateLike, tz: tzinfo | None = None
) -> tuple[int, int]:
    tasks = routine["tasks"]
    completed = sum(1 for task in tasks if is_completed_on(task, day, tz))
    return completed, len(tasks)


def weekly_average(
    routine: Routine, days: list[DateLike], tz: tzinfo | None = None
) -> int:
    total = len(routine["tasks"])
    if total == 0 or not days:
        return 0
    completed = sum(progress_for_day(routine, day, tz)[0] for day in days)
    return percentage(completed, total * len(days))


def week_start(pivot: date) -> date:
    # Sunday=0..Saturday=6, weeks start on Monday.
    weekday = (pivot.weekday() + 1) % 7
    return pivot - timedelta(days=(weekday + 6) % 7)


def week_days(pivot: date) -> list[date]:
    monday = week_start(pivot)
    return [monday + timedelta(days=offset) for offset in range(7)]


def trailing_days(today: date, count: int = 7) -> list[date]:
    return [today - timedelta(days=offset) for offset in range(count - 1, -1, -1)]


def daily_progress(
    routines: list[Routine], days: list[date], tz: tzinfo | None = None
) -> list[dict]:
    rows = []
    for day in days:
        completed = 0
        total = 0
        for routine in routines:
            done, count = progress_for_day(routine, day, tz)
            completed += done
            total += count
        rows.append(
            {
                "date": day_key(day),
                "day": DAY_NAMES[(day.weekday() + 1) % 7],
                "completed": completed,
                "total": total,
                "completion": percentage(completed, total),
            }
        )
    return rows


def routine_progress(
    routines: list[Routine], days: list[date], tz: tzinfo | None = None
) -> list[dict]:
    rows = []
    for routine in routines:
        name = routine["title"]
        if len(name) > ROUTINE_NAME_LIMIT:
            name = name[:ROUTINE_NAME_LIMIT] + "..."
        rows.append(
            {
                "id": routine["id"],
                "name": name,
                "completion": weekly_average(routine, days, tz),
            }
        )
    return rows


def overview(
    routines: list[Routine], days: list[date], today: date, tz: tzinfo | None = None
) -> dict[str, int]:
    total_tasks = sum(len(routine["tasks"]) for routine in routines)
    today_completed = sum(progress_for_day(routine, today, tz)[0] for routine in routines)
    window_completed = sum(
        progress_for_day(routine, day, tz)[0] for routine in routines for day in days
    )
    return {
        "totalRoutines": len(routines),
        "totalTasks": total_tasks,
        "todayCompleted": today_completed,
        "todayPercentage": percentage(today_completed, total_tasks),
        "windowPercentage": percentage(window_completed, total_tasks * len(days)),
    }
