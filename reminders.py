from __future__ import annotations

from datetime import datetime, tzinfo
from html import escape
import logging
import os
import threading
from typing import Callable, TypedDict

import requests

from routines import Routine, clock_minutes, day_key, is_alarm, is_completed_on, time_to_minutes

logger = logging.getLogger(__name__)

CHECK_INTERVAL_SECONDS = 60
REMINDER_WINDOW_MINUTES = 1


class Reminder(TypedDict):
    key: str
    title: str
    body: str
    alarm: bool


def log_notifier(reminder: Reminder) -> bool:
    logger.info("%s (%s)", reminder["title"], reminder["body"])
    return True


def send_reminder_email(to_email: str, reminder: Reminder) -> bool:
    api_key = os.environ.get("RESEND_API_KEY", "").strip()
    sender = os.environ.get("REMINDER_EMAIL_FROM", "").strip()
    if not api_key or not sender:
        return False

    payload = {
        "from": sender,
        "to": [to_email],
        "subject": reminder["title"],
        "html": f"<p>{escape(reminder['body'])}</p>",
    }

    try:
        response = requests.post(
            "https://api.resend.com/emails",
            json=payload,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=10,
        )
    except requests.RequestException as exc:
        logger.warning("Reminder email to %s failed: %s", to_email, exc)
        return False
    return response.status_code in (200, 201)


def email_notifier(to_email: str) -> Callable[[Reminder], bool]:
    def notify(reminder: Reminder) -> bool:
        return send_reminder_email(to_email, reminder)

    return notify


class ReminderService:
    def __init__(
        self,
        notify: Callable[[Reminder], object] = log_notifier,
        clock: Callable[[], datetime] = datetime.now,
        interval: float = CHECK_INTERVAL_SECONDS,
        tz: tzinfo | None = None,
    ):
        self.notify = notify
        self.clock = clock
        self.interval = interval
        self.tz = tz
        self.routines: list[Routine] = []
        self.enabled = False
        self.active = False
        self.notified: set[str] = set()
        self._timer: threading.Timer | None = None
        self._lock = threading.RLock()
        self._day: str | None = None

    def enable(self) -> None:
        self.enabled = True
        if self.routines:
            self.start(self.routines)

    def disable(self) -> None:
        self.enabled = False
        self.stop()

    def start(self, routines: list[Routine]) -> None:
        with self._lock:
            self.routines = list(routines)
        if not self.enabled:
            return
        self.active = True
        self.check()
        self._schedule()

    def stop(self) -> None:
        self.active = False
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def update_routines(self, routines: list[Routine]) -> None:
        with self._lock:
            self.routines = list(routines)
        if self.enabled:
            self.stop()
            self.start(routines)

    def _schedule(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.interval, self._tick)
            self._timer.daemon = True
            self._timer.start()

    def _tick(self) -> None:
        if not self.active:
            return
        try:
            self.check()
        except Exception:
            logger.exception("Reminder check failed")
        if self.active:
            self._schedule()

    def check(self, now: datetime | None = None) -> list[Reminder]:
        if not self.active or not self.enabled:
            return []
        now = now or self.clock()
        if now.tzinfo is not None:
            now = now.astimezone(self.tz)
        today = day_key(now, self.tz)
        current = clock_minutes(now)

        with self._lock:
            if today != self._day:
                self.notified = {key for key in self.notified if key.endswith(today)}
                self._day = today
            return self._fire_due(list(self.routines), today, current)

    def _fire_due(self, routines: list[Routine], today: str, current: int) -> list[Reminder]:
        fired: list[Reminder] = []
        for routine in routines:
            for task in routine.get("tasks") or []:
                start_time = task.get("startTime")
                if not start_time:
                    continue
                if abs(current - time_to_minutes(start_time)) > REMINDER_WINDOW_MINUTES:
                    continue
                if is_completed_on(task, today, self.tz):
                    continue
                key = f"{routine['id']}-{task['id']}-{today}"
                if key in self.notified:
                    continue

                end_time = task.get("endTime")
                reminder: Reminder = {
                    "key": key,
                    "title": f"Time for: {task['name']}",
                    "body": f"{routine['title']} - {start_time}"
                    + (f" to {end_time}" if end_time else ""),
                    "alarm": is_alarm(task),
                }
                self.notify(reminder)
                self.notified.add(key)
                fired.append(reminder)
        return fired
