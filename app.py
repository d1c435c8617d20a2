from __future__ import annotations

from datetime import datetime
from functools import wraps
import logging
import os
import sqlite3
from pathlib import Path
from zoneinfo import ZoneInfo

from flask import Flask, g, jsonify, request, session
import psycopg2
from psycopg2.extras import RealDictCursor
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from errors import APIException, Forbidden, NotFound, Unauthorized, ValidationError
from routines import (
    Routine,
    Task,
    daily_progress,
    day_key,
    is_actionable,
    mark_complete,
    mark_incomplete,
    merge_tasks,
    overview,
    parse_day,
    policy_for_view,
    routine_progress,
    trailing_days,
    validate_task,
    validate_title,
    week_days,
)

BASE_DIR = Path(__file__).resolve().parent
DATABASE_URL = os.environ.get("DATABASE_URL", "").strip()
DB_BACKEND = "postgres" if DATABASE_URL else "sqlite"
APP_TIMEZONE = os.environ.get("APP_TIMEZONE", "").strip()

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.environ.get("APP_SECRET_KEY", "dev-secret-change-me")
app.config["DATABASE"] = os.environ.get("DATABASE_PATH", str(BASE_DIR / "routines.db"))
app.config["TIMEZONE"] = ZoneInfo(APP_TIMEZONE) if APP_TIMEZONE else None
_db_ready: str | None = None


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if g.user is None:
            raise Unauthorized("Not authorized, please log in")
        return view(*args, **kwargs)

    return wrapped


@app.before_request
def load_user() -> None:
    ensure_db()
    user_id = session.get("user_id")
    if user_id is None:
        g.user = None
        return

    with get_conn() as conn:
        g.user = conn.execute(
            "SELECT id, username, email FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()


@app.errorhandler(APIException)
def handle_api_exception(error: APIException):
    logger.info(
        "%s %s failed with %s: %s",
        request.method,
        request.path,
        error.status_code,
        error.message,
    )
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(HTTPException)
def handle_http_exception(error: HTTPException):
    return jsonify({"message": error.description}), error.code


class DBConn:
    def __init__(self, conn, backend: str):
        self.conn = conn
        self.backend = backend

    def execute(self, query: str, params: tuple | list = ()):
        if self.backend == "postgres":
            sql = query.replace("?", "%s")
            cur = self.conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(sql, params)
            return cur
        return self.conn.execute(query, params)

    def executescript(self, script: str) -> None:
        if self.backend == "postgres":
            statements = [s.strip() for s in script.split(";") if s.strip()]
            for statement in statements:
                self.execute(statement)
        else:
            self.conn.executescript(script)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is None:
                self.conn.commit()
            else:
                self.conn.rollback()
        finally:
            self.conn.close()


def get_conn() -> DBConn:
    if DB_BACKEND == "postgres":
        conn = psycopg2.connect(DATABASE_URL)
        return DBConn(conn, "postgres")
    conn = sqlite3.connect(app.config["DATABASE"])
    conn.row_factory = sqlite3.Row
    return DBConn(conn, "sqlite")


def init_db() -> None:
    with get_conn() as conn:
        if DB_BACKEND == "postgres":
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS routines (
                    id SERIAL PRIMARY KEY,
                    user_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS routines_user_id ON routines (user_id);

                CREATE TABLE IF NOT EXISTS routine_tasks (
                    id SERIAL PRIMARY KEY,
                    routine_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    sort_order INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS task_completions (
                    id SERIAL PRIMARY KEY,
                    task_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    completed_at TEXT NOT NULL
                );
                """
            )
        else:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS routines (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users (id)
                );

                CREATE INDEX IF NOT EXISTS routines_user_id ON routines (user_id);

                CREATE TABLE IF NOT EXISTS routine_tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    routine_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (routine_id) REFERENCES routines (id)
                );

                CREATE TABLE IF NOT EXISTS task_completions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    completed_at TEXT NOT NULL,
                    FOREIGN KEY (task_id) REFERENCES routine_tasks (id)
                );
                """
            )


def ensure_db() -> None:
    global _db_ready
    target = DATABASE_URL or app.config["DATABASE"]
    if _db_ready != target:
        init_db()
        logger.info("Database ready (%s)", DB_BACKEND)
        _db_ready = target


def local_now() -> datetime:
    tz = app.config["TIMEZONE"]
    return datetime.now(tz) if tz is not None else datetime.now()


def today_str() -> str:
    return local_now().strftime("%Y-%m-%d")


def json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def serialize_user(user) -> dict:
    return {"id": user["id"], "username": user["username"], "email": user["email"]}


def fetch_routines(conn: DBConn, user_id: int, routine_id: int | None = None) -> list[Routine]:
    if routine_id is None:
        routines = conn.execute(
            """
            SELECT * FROM routines
            WHERE user_id = ?
            ORDER BY created_at DESC, id DESC
            """,
            (user_id,),
        ).fetchall()
    else:
        routines = conn.execute(
            "SELECT * FROM routines WHERE id = ?",
            (routine_id,),
        ).fetchall()

    routine_map: dict[int, Routine] = {}
    for routine in routines:
        routine_map[routine["id"]] = {
            "id": routine["id"],
            "ownerId": routine["user_id"],
            "title": routine["title"],
            "createdAt": routine["created_at"],
            "tasks": [],
        }
    if not routine_map:
        return []

    placeholders = ", ".join("?" for _ in routine_map)
    routine_ids = tuple(routine_map)
    tasks = conn.execute(
        f"""
        SELECT * FROM routine_tasks
        WHERE routine_id IN ({placeholders})
        ORDER BY sort_order, id
        """,
        routine_ids,
    ).fetchall()
    completions = conn.execute(
        f"""
        SELECT tc.task_id, tc.completed_at
        FROM task_completions tc
        JOIN routine_tasks rt ON rt.id = tc.task_id
        WHERE rt.routine_id IN ({placeholders})
        ORDER BY tc.id
        """,
        routine_ids,
    ).fetchall()

    completion_map: dict[int, list[str]] = {}
    for row in completions:
        completion_map.setdefault(row["task_id"], []).append(row["completed_at"])

    for task in tasks:
        routine_map[task["routine_id"]]["tasks"].append(
            {
                "id": task["id"],
                "name": task["name"],
                "startTime": task["start_time"],
                "endTime": task["end_time"],
                "completedDates": completion_map.get(task["id"], []),
            }
        )
    return list(routine_map.values())


def load_routine(conn: DBConn, routine_id: int, user_id: int) -> Routine:
    found = fetch_routines(conn, user_id, routine_id)
    if not found:
        raise NotFound("Routine not found")
    routine = found[0]
    if routine["ownerId"] != user_id:
        raise Forbidden("Not authorized")
    return routine


def find_task(routine: Routine, task_id: int) -> Task:
    for task in routine["tasks"]:
        if task["id"] == task_id:
            return task
    raise NotFound("Task not found")


def save_completions(conn: DBConn, task_id: int, user_id: int, entries: list[str]) -> None:
    conn.execute("DELETE FROM task_completions WHERE task_id = ?", (task_id,))
    for entry in entries:
        conn.execute(
            """
            INSERT INTO task_completions (task_id, user_id, completed_at)
            VALUES (?, ?, ?)
            """,
            (task_id, user_id, entry),
        )


def insert_task(conn: DBConn, routine_id: int, user_id: int, task: Task, sort_order: int) -> int:
    task_id = conn.execute(
        """
        INSERT INTO routine_tasks (routine_id, user_id, name, start_time, end_time, sort_order)
        VALUES (?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (routine_id, user_id, task["name"], task["startTime"], task["endTime"], sort_order),
    ).fetchone()["id"]
    save_completions(conn, task_id, user_id, task.get("completedDates") or [])
    return task_id


def delete_tasks(conn: DBConn, task_ids: list[int]) -> None:
    for task_id in task_ids:
        conn.execute("DELETE FROM task_completions WHERE task_id = ?", (task_id,))
        conn.execute("DELETE FROM routine_tasks WHERE id = ?", (task_id,))


def save_routine(conn: DBConn, routine: Routine, previous_ids: list[int]) -> None:
    user_id = routine["ownerId"]
    conn.execute(
        "UPDATE routines SET title = ? WHERE id = ?",
        (routine["title"], routine["id"]),
    )
    kept_ids = {task["id"] for task in routine["tasks"] if "id" in task}
    delete_tasks(conn, [task_id for task_id in previous_ids if task_id not in kept_ids])
    for sort_order, task in enumerate(routine["tasks"]):
        if "id" not in task:
            task["id"] = insert_task(conn, routine["id"], user_id, task, sort_order)
            continue
        conn.execute(
            """
            UPDATE routine_tasks
            SET name = ?, start_time = ?, end_time = ?, sort_order = ?
            WHERE id = ?
            """,
            (task["name"], task["startTime"], task["endTime"], sort_order, task["id"]),
        )
        save_completions(conn, task["id"], user_id, task["completedDates"])


@app.route("/auth/signup", methods=["POST"])
def signup():
    data = json_body()
    username = str(data.get("username", "")).strip().lower()
    email = str(data.get("email", "")).strip().lower()
    password = str(data.get("password", ""))

    if not username or not email or not password:
        raise ValidationError("Username, email, and password are required.")

    now = datetime.now().isoformat(timespec="seconds")
    with get_conn() as conn:
        taken = conn.execute(
            "SELECT 1 FROM users WHERE username = ? OR email = ?",
            (username, email),
        ).fetchone()
        if taken:
            raise ValidationError("That username or email is already registered.")
        try:
            user_id = conn.execute(
                """
                INSERT INTO users (username, email, password_hash, created_at)
                VALUES (?, ?, ?, ?)
                RETURNING id
                """,
                (username, email, generate_password_hash(password), now),
            ).fetchone()["id"]
        except (sqlite3.IntegrityError, psycopg2.IntegrityError) as exc:
            raise ValidationError("That username is taken.") from exc

    session["user_id"] = user_id
    logger.info("Registered user %s", user_id)
    return jsonify({"id": user_id, "username": username, "email": email}), 201


@app.route("/auth/login", methods=["POST"])
def login():
    data = json_body()
    username = str(data.get("username", "")).strip().lower()
    password = str(data.get("password", ""))

    with get_conn() as conn:
        user = conn.execute(
            "SELECT * FROM users WHERE username = ? OR email = ?",
            (username, username),
        ).fetchone()

    if user is None or not check_password_hash(user["password_hash"], password):
        raise Unauthorized("Invalid username or password.")
    session["user_id"] = user["id"]
    return jsonify(serialize_user(user))


@app.route("/auth/logout", methods=["POST"])
@login_required
def logout():
    session.clear()
    return jsonify({"message": "Logged out"})


@app.route("/auth/me", methods=["GET"])
@login_required
def me():
    return jsonify(serialize_user(g.user))


@app.route("/routines", methods=["GET"])
@login_required
def list_routines():
    with get_conn() as conn:
        routines = fetch_routines(conn, g.user["id"])
    return jsonify(routines)


@app.route("/routines", methods=["POST"])
@login_required
def create_routine():
    user_id = g.user["id"]
    data = json_body()
    title = validate_title(data.get("title"))
    raw_tasks = data.get("tasks") or []
    if not isinstance(raw_tasks, list):
        raise ValidationError("tasks must be a list")
    tasks = [validate_task(raw, app.config["TIMEZONE"]) for raw in raw_tasks]

    now = datetime.now().isoformat(timespec="seconds")
    with get_conn() as conn:
        routine_id = conn.execute(
            """
            INSERT INTO routines (user_id, title, created_at)
            VALUES (?, ?, ?)
            RETURNING id
            """,
            (user_id, title, now),
        ).fetchone()["id"]
        for sort_order, task in enumerate(tasks):
            insert_task(conn, routine_id, user_id, task, sort_order)
        routine = load_routine(conn, routine_id, user_id)

    logger.info("Created routine %s with %d tasks", routine_id, len(tasks))
    return jsonify(routine), 201


@app.route("/routines/<int:routine_id>", methods=["PUT"])
@login_required
def update_routine(routine_id: int):
    user_id = g.user["id"]
    data = json_body()
    with get_conn() as conn:
        routine = load_routine(conn, routine_id, user_id)
        previous_ids = [task["id"] for task in routine["tasks"]]
        if "title" in data:
            routine["title"] = validate_title(data["title"])
        if data.get("tasks") is not None:
            routine["tasks"] = merge_tasks(
                routine["tasks"], data["tasks"], local_now(), app.config["TIMEZONE"]
            )
        save_routine(conn, routine, previous_ids)
        routine = load_routine(conn, routine_id, user_id)
    return jsonify(routine)


@app.route("/routines/<int:routine_id>", methods=["DELETE"])
@login_required
def delete_routine(routine_id: int):
    user_id = g.user["id"]
    with get_conn() as conn:
        routine = load_routine(conn, routine_id, user_id)
        delete_tasks(conn, [task["id"] for task in routine["tasks"]])
        conn.execute("DELETE FROM routines WHERE id = ?", (routine_id,))
    logger.info("Deleted routine %s", routine_id)
    return jsonify({"message": "Routine deleted"})


def toggle_task(routine_id: int, task_id: int, complete: bool):
    user_id = g.user["id"]
    tz = app.config["TIMEZONE"]
    data = json_body()
    if not data.get("date"):
        raise ValidationError("Please provide a date")
    key = day_key(str(data["date"]), tz)
    policy = policy_for_view(data.get("view"))

    with get_conn() as conn:
        routine = load_routine(conn, routine_id, user_id)
        task = find_task(routine, task_id)
        if not is_actionable(task, key, local_now(), policy, tz):
            raise ValidationError(f'Task "{task["name"]}" cannot be changed for {key} yet')
        if complete:
            changed = mark_complete(task, key, tz)
        else:
            changed = mark_incomplete(task, key, tz) > 0
        if changed:
            save_completions(conn, task_id, user_id, task["completedDates"])
            logger.info(
                "Task %s %s for %s",
                task_id,
                "completed" if complete else "reopened",
                key,
            )
    return jsonify(routine)


@app.route("/routines/<int:routine_id>/tasks/<int:task_id>/complete", methods=["PATCH"])
@login_required
def complete_task(routine_id: int, task_id: int):
    return toggle_task(routine_id, task_id, complete=True)


@app.route("/routines/<int:routine_id>/tasks/<int:task_id>/uncomplete", methods=["PATCH"])
@login_required
def uncomplete_task(routine_id: int, task_id: int):
    return toggle_task(routine_id, task_id, complete=False)


@app.route("/routines/progress", methods=["GET"])
@login_required
def routine_progress_view():
    tz = app.config["TIMEZONE"]
    today = parse_day(today_str())
    pivot = parse_day(request.args.get("date", "").strip() or today, tz)
    window = request.args.get("window", "week").strip()
    if window == "week":
        days = week_days(pivot)
    elif window == "trailing":
        days = trailing_days(pivot)
    else:
        raise ValidationError("window must be 'week' or 'trailing'")

    with get_conn() as conn:
        routines = fetch_routines(conn, g.user["id"])

    return jsonify(
        {
            "window": window,
            "today": today.isoformat(),
            "startDate": days[0].isoformat(),
            "endDate": days[-1].isoformat(),
            "days": daily_progress(routines, days, tz),
            "routines": routine_progress(routines, days, tz),
            "summary": overview(routines, days, today, tz),
        }
    )


if __name__ == "__main__":
    init_db()
    app.run(debug=True)
