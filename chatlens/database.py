"""SQLite storage for tasks, reports, cached chatlogs, prompt templates and run logs."""

import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from config import settings
from chatlens.models import (
    AllTime,
    Custom,
    Message,
    Once,
    ProgressState,
    Recent,
    Recurring,
    Report,
    ScheduleSpec,
    Task,
    TimeRangeSpec,
)
from chatlens.time_window import normalize_timestamp, parse_time_range

logger = logging.getLogger(__name__)

DB_PATH = Path(settings.db_path)


def _get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    """Get a database connection, creating the DB and tables if needed."""
    path = db_path or DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    _create_tables(conn)
    return conn


def _create_tables(conn: sqlite3.Connection) -> None:
    """Create tables if they don't exist."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            rooms TEXT NOT NULL DEFAULT '[]',
            schedule TEXT,
            time_range TEXT NOT NULL DEFAULT '{"type": "recent_7d"}',
            model TEXT NOT NULL DEFAULT 'deepseek-chat',
            prompt TEXT NOT NULL DEFAULT '',
            prompt_template_id INTEGER,
            enabled INTEGER NOT NULL DEFAULT 1,
            progress TEXT NOT NULL DEFAULT 'not_started',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS reports (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id INTEGER NOT NULL,
            task_name TEXT NOT NULL DEFAULT '',
            room TEXT,
            status TEXT NOT NULL,
            time_window TEXT,
            file TEXT,
            message_count INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            execution_time TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS chatlogs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            room TEXT NOT NULL,
            sender TEXT NOT NULL,
            content TEXT NOT NULL,
            timestamp INTEGER,
            imported_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS prompt_templates (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            system_prompt TEXT NOT NULL DEFAULT '',
            is_default INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS pipeline_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id TEXT NOT NULL,
            task_id INTEGER,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            status TEXT NOT NULL DEFAULT 'running',
            current_step TEXT,
            error_message TEXT,
            steps_log TEXT NOT NULL DEFAULT '[]'
        );

        CREATE INDEX IF NOT EXISTS idx_reports_task ON reports(task_id);
        CREATE INDEX IF NOT EXISTS idx_chatlogs_room ON chatlogs(room, timestamp);
        CREATE INDEX IF NOT EXISTS idx_runs_started ON pipeline_runs(started_at);
    """)
    conn.commit()


def _now() -> str:
    return datetime.now(UTC).isoformat()


# --- Spec (de)serialization ---

def _schedule_to_json(schedule: ScheduleSpec | None) -> str | None:
    if isinstance(schedule, Once):
        return json.dumps({"type": "once", "instant": schedule.instant.isoformat()})
    if isinstance(schedule, Recurring):
        return json.dumps({"type": "cron", "expression": schedule.cron_expression})
    return None


def _schedule_from_json(raw: str | None) -> ScheduleSpec | None:
    if not raw:
        return None
    data = json.loads(raw)
    if data.get("type") == "once" and data.get("instant"):
        instant = datetime.fromisoformat(data["instant"])
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=settings.tz)
        return Once(instant)
    if data.get("expression"):
        return Recurring(data["expression"])
    logger.warning("Unrecognized schedule record: %s", raw)
    return None


def _time_range_to_json(spec: TimeRangeSpec | dict | None) -> str:
    spec = parse_time_range(spec)
    if isinstance(spec, AllTime):
        return json.dumps({"type": "all"})
    if isinstance(spec, Custom):
        return json.dumps({"type": "custom", "start_date": spec.start, "end_date": spec.end})
    if isinstance(spec, Recent):
        return json.dumps({"type": f"recent_{spec.days}d"})
    return json.dumps({"type": "recent_7d"})


def _task_from_row(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        name=row["name"],
        rooms=json.loads(row["rooms"] or "[]"),
        schedule=_schedule_from_json(row["schedule"]),
        time_range=parse_time_range(json.loads(row["time_range"] or "null")),
        model=row["model"],
        prompt=row["prompt"] or "",
        prompt_template_id=row["prompt_template_id"],
        enabled=bool(row["enabled"]),
        progress=ProgressState(row["progress"]),
    )


# --- Tasks ---

def create_task(name: str, rooms: list[str], schedule: ScheduleSpec | None = None,
                time_range: TimeRangeSpec | dict | None = None,
                model: str = "deepseek-chat", prompt: str = "",
                prompt_template_id: int | None = None, enabled: bool = True,
                db_path: Path | None = None) -> int:
    """Insert a task and return its id."""
    conn = _get_connection(db_path)
    try:
        now = _now()
        cursor = conn.execute(
            """INSERT INTO tasks (name, rooms, schedule, time_range, model, prompt,
               prompt_template_id, enabled, progress, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (name, json.dumps(rooms, ensure_ascii=False), _schedule_to_json(schedule),
             _time_range_to_json(time_range), model, prompt, prompt_template_id,
             int(enabled), ProgressState.NOT_STARTED.value, now, now),
        )
        conn.commit()
        logger.info("Created task %d (%s)", cursor.lastrowid, name)
        return cursor.lastrowid
    finally:
        conn.close()


def get_task(task_id: int, db_path: Path | None = None) -> Task | None:
    conn = _get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _task_from_row(row) if row else None
    finally:
        conn.close()


def get_enabled_tasks(db_path: Path | None = None) -> list[Task]:
    conn = _get_connection(db_path)
    try:
        rows = conn.execute("SELECT * FROM tasks WHERE enabled = 1 ORDER BY id").fetchall()
        return [_task_from_row(r) for r in rows]
    finally:
        conn.close()


def set_progress(task_id: int, state: ProgressState, db_path: Path | None = None) -> None:
    """Write a task's progress state."""
    conn = _get_connection(db_path)
    try:
        conn.execute(
            "UPDATE tasks SET progress = ?, updated_at = ? WHERE id = ?",
            (ProgressState(state).value, _now(), task_id),
        )
        conn.commit()
    finally:
        conn.close()


def reset_stale_progress(db_path: Path | None = None) -> int:
    """Turn tasks left ``analyzing`` by a previous process back to ``not_started``.

    Returns:
        Number of tasks reset.
    """
    conn = _get_connection(db_path)
    try:
        cursor = conn.execute(
            "UPDATE tasks SET progress = ?, updated_at = ? WHERE progress = ?",
            (ProgressState.NOT_STARTED.value, _now(), ProgressState.ANALYZING.value),
        )
        conn.commit()
        if cursor.rowcount:
            logger.warning("Reset %d task(s) stuck in analyzing", cursor.rowcount)
        return cursor.rowcount
    finally:
        conn.close()


# --- Reports ---

def create_report(report: Report, db_path: Path | None = None) -> int:
    """Insert a report record and return its id."""
    window = None
    if report.time_window is not None:
        window = json.dumps({
            "start": report.time_window.start.isoformat(),
            "end": report.time_window.end.isoformat(),
            "wire": report.time_window.wire,
        })
    conn = _get_connection(db_path)
    try:
        cursor = conn.execute(
            """INSERT INTO reports (task_id, task_name, room, status, time_window, file,
               message_count, error_message, execution_time)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (report.task_id, report.task_name, report.room, str(report.status), window,
             report.file, report.message_count, report.error_message,
             report.execution_time.isoformat()),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def list_reports(task_id: int | None = None, limit: int = 50,
                 db_path: Path | None = None) -> list[dict]:
    """List reports (most recent first), optionally for one task."""
    conn = _get_connection(db_path)
    try:
        if task_id is None:
            rows = conn.execute(
                "SELECT * FROM reports ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM reports WHERE task_id = ? ORDER BY id DESC LIMIT ?",
                (task_id, limit),
            ).fetchall()
        reports = []
        for r in rows:
            report = dict(r)
            report["time_window"] = json.loads(report["time_window"]) if report["time_window"] else None
            reports.append(report)
        return reports
    finally:
        conn.close()


# --- Local chatlog cache ---

def import_chatlog(room: str, messages: list[Message], replace: bool = True,
                   db_path: Path | None = None) -> int:
    """Store a room's messages in the local cache.

    Args:
        room: Room identifier.
        messages: Messages to store; timestamps are normalized to epoch ms.
        replace: Drop the room's previously cached messages first.

    Returns:
        Number of messages stored.
    """
    conn = _get_connection(db_path)
    try:
        if replace:
            conn.execute("DELETE FROM chatlogs WHERE room = ?", (room,))
        imported_at = _now()
        rows = [
            (room, m.sender, m.content, normalize_timestamp(m.timestamp), imported_at)
            for m in messages
            if m.content and m.content.strip()
        ]
        conn.executemany(
            "INSERT INTO chatlogs (room, sender, content, timestamp, imported_at) "
            "VALUES (?, ?, ?, ?, ?)",
            rows,
        )
        conn.commit()
        logger.info("Cached %d messages for %s", len(rows), room)
        return len(rows)
    finally:
        conn.close()


def get_messages_for_rooms(rooms: list[str], db_path: Path | None = None) -> dict[str, list[Message]]:
    """Return cached messages keyed by room, for the rooms that have any."""
    if not rooms:
        return {}
    conn = _get_connection(db_path)
    try:
        placeholders = ", ".join("?" for _ in rooms)
        rows = conn.execute(
            f"SELECT room, sender, content, timestamp FROM chatlogs "
            f"WHERE room IN ({placeholders}) ORDER BY room, timestamp, id",
            list(rooms),
        ).fetchall()
        cached: dict[str, list[Message]] = {}
        for r in rows:
            cached.setdefault(r["room"], []).append(
                Message(sender=r["sender"], content=r["content"], timestamp=r["timestamp"])
            )
        return cached
    finally:
        conn.close()


# --- Prompt templates ---

def save_prompt_template(name: str, system_prompt: str, is_default: bool = False,
                         db_path: Path | None = None) -> int:
    """Insert a prompt template. A new default replaces the previous one."""
    conn = _get_connection(db_path)
    try:
        if is_default:
            conn.execute("UPDATE prompt_templates SET is_default = 0")
        cursor = conn.execute(
            "INSERT INTO prompt_templates (name, system_prompt, is_default, created_at) "
            "VALUES (?, ?, ?, ?)",
            (name, system_prompt, int(is_default), _now()),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def get_prompt_template(template_id: int, db_path: Path | None = None) -> dict | None:
    conn = _get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM prompt_templates WHERE id = ?", (template_id,)
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def get_default_prompt_template(db_path: Path | None = None) -> dict | None:
    conn = _get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM prompt_templates WHERE is_default = 1 ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


# --- Pipeline run log ---

def start_run(run_id: str, task_id: int | None = None, db_path: Path | None = None) -> None:
    """Open a run-log entry for one task run."""
    conn = _get_connection(db_path)
    try:
        conn.execute(
            "INSERT INTO pipeline_runs (run_id, task_id, started_at, status, steps_log) "
            "VALUES (?, ?, ?, 'running', '[]')",
            (run_id, task_id, _now()),
        )
        conn.commit()
    finally:
        conn.close()


def log_step(run_id: str, step: str, status: str, message: str = "",
             db_path: Path | None = None) -> None:
    """Append a step to a run's log."""
    conn = _get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT steps_log FROM pipeline_runs WHERE run_id = ?", (run_id,)
        ).fetchone()
        if row is None:
            logger.warning("log_step for unknown run %s", run_id)
            return

        steps = [*json.loads(row["steps_log"]),
                 {"step": step, "status": status, "message": message, "timestamp": _now()}]
        conn.execute(
            "UPDATE pipeline_runs SET steps_log = ?, current_step = ? WHERE run_id = ?",
            (json.dumps(steps, ensure_ascii=False), step, run_id),
        )
        conn.commit()
    finally:
        conn.close()


def finish_run(run_id: str, status: str, error_message: str = "",
               db_path: Path | None = None) -> None:
    """Close a run with its final status (``success``, ``partial`` or ``failed``)."""
    conn = _get_connection(db_path)
    try:
        conn.execute(
            "UPDATE pipeline_runs SET status = ?, finished_at = ?, error_message = ? "
            "WHERE run_id = ?",
            (status, _now(), error_message or None, run_id),
        )
        conn.commit()
    finally:
        conn.close()


def _run_from_row(row: sqlite3.Row) -> dict:
    run = dict(row)
    run["steps_log"] = json.loads(run["steps_log"] or "[]")
    return run


def get_run(run_id: str, db_path: Path | None = None) -> dict | None:
    conn = _get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,)).fetchone()
        return _run_from_row(row) if row else None
    finally:
        conn.close()


def list_runs(task_id: int | None = None, limit: int = 20,
              db_path: Path | None = None) -> list[dict]:
    """List runs, newest first, optionally for one task."""
    query = "SELECT * FROM pipeline_runs"
    params: list = []
    if task_id is not None:
        query += " WHERE task_id = ?"
        params.append(task_id)
    query += " ORDER BY started_at DESC, id DESC LIMIT ?"
    params.append(limit)

    conn = _get_connection(db_path)
    try:
        return [_run_from_row(r) for r in conn.execute(query, params).fetchall()]
    finally:
        conn.close()
