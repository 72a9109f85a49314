import calendar
import sqlite3
import time
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import store

STATUSES = ("OPEN", "IN_PROGRESS", "IN_REVIEW", "CLOSED")
PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
RECURRING_TYPES = ("DAILY", "WEEKLY", "MONTHLY")
EDITABLE_FIELDS = ("title", "description", "priority", "category", "assignee_id", "polyhouse_id", "zone_id",
                   "due_date", "is_recurring", "recurring_type")


class TaskError(Exception):
    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


def _parse_due_date(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value)[:10]).isoformat()
    except ValueError:
        raise TaskError("due_date must be an ISO date (YYYY-MM-DD)")


def next_due_date(due: Optional[str], recurring_type: str, today: Optional[date] = None) -> str:
    base = date.fromisoformat(due) if due else (today or date.today())
    if recurring_type == "DAILY":
        return (base + timedelta(days=1)).isoformat()
    if recurring_type == "WEEKLY":
        return (base + timedelta(days=7)).isoformat()
    year = base.year + (1 if base.month == 12 else 0)
    month = 1 if base.month == 12 else base.month + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return date(year, month, day).isoformat()


def is_overdue(task: Dict[str, Any], today: Optional[date] = None) -> bool:
    if not task.get("due_date") or task.get("status") == "CLOSED":
        return False
    return task["due_date"] < (today or date.today()).isoformat()


def public_task(row: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "farm_id": row["farm_id"],
        "title": row["title"],
        "description": row.get("description"),
        "status": row["status"],
        "position": row["position"],
        "priority": row["priority"],
        "category": row.get("category"),
        "assignee_id": row.get("assignee_id"),
        "assignee_name": row.get("assignee_name"),
        "polyhouse_id": row.get("polyhouse_id"),
        "zone_id": row.get("zone_id"),
        "due_date": row.get("due_date"),
        "is_recurring": bool(row.get("is_recurring")),
        "recurring_type": row.get("recurring_type"),
        "is_overdue": is_overdue(row, today),
        "created_at": store.iso(row["created_at"]),
        "updated_at": store.iso(row["updated_at"]),
    }


def get_task(task_id: str) -> Optional[Dict[str, Any]]:
    return store.fetch_one(
        "SELECT t.*, u.name AS assignee_name FROM tasks t LEFT JOIN users u ON u.id = t.assignee_id WHERE t.id = ?",
        (task_id,),
    )


def _column_ids(conn: sqlite3.Connection, farm_id: str, status: str, exclude: Optional[str] = None) -> List[str]:
    rows = conn.execute(
        "SELECT id FROM tasks WHERE farm_id = ? AND status = ? ORDER BY position, created_at",
        (farm_id, status),
    ).fetchall()
    return [row["id"] for row in rows if row["id"] != exclude]


def _renumber(conn: sqlite3.Connection, ids: List[str], status: str, now: float) -> None:
    for position, task_id in enumerate(ids):
        conn.execute(
            "UPDATE tasks SET position = ?, status = ?, updated_at = ? WHERE id = ?",
            (position, status, now, task_id),
        )


def _validate_fields(farm_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    if "title" in data:
        title = str(data.get("title") or "").strip()
        if not title:
            raise TaskError("title is required")
        fields["title"] = title
    if "description" in data:
        fields["description"] = data.get("description")
    if "category" in data:
        fields["category"] = data.get("category")
    if "priority" in data:
        priority = str(data.get("priority") or "").strip().upper()
        if priority not in PRIORITIES:
            raise TaskError(f"priority must be one of {', '.join(PRIORITIES)}")
        fields["priority"] = priority
    if "due_date" in data:
        fields["due_date"] = _parse_due_date(data.get("due_date"))
    if "assignee_id" in data:
        assignee_id = data.get("assignee_id") or None
        if assignee_id and not store.fetch_one("SELECT id FROM users WHERE id = ?", (assignee_id,)):
            raise TaskError("assignee not found", 404)
        fields["assignee_id"] = assignee_id
    if "polyhouse_id" in data:
        polyhouse_id = data.get("polyhouse_id") or None
        if polyhouse_id and not store.fetch_one(
            "SELECT id FROM polyhouses WHERE id = ? AND farm_id = ?", (polyhouse_id, farm_id)
        ):
            raise TaskError("polyhouse not found in this farm", 404)
        fields["polyhouse_id"] = polyhouse_id
    if "zone_id" in data:
        zone_id = data.get("zone_id") or None
        if zone_id and not store.fetch_one(
            "SELECT z.id FROM zones z JOIN polyhouses p ON p.id = z.polyhouse_id WHERE z.id = ? AND p.farm_id = ?",
            (zone_id, farm_id),
        ):
            raise TaskError("zone not found in this farm", 404)
        fields["zone_id"] = zone_id
    if "is_recurring" in data:
        fields["is_recurring"] = 1 if data.get("is_recurring") else 0
    if "recurring_type" in data:
        recurring_type = data.get("recurring_type")
        if recurring_type is not None:
            recurring_type = str(recurring_type).strip().upper()
            if recurring_type not in RECURRING_TYPES:
                raise TaskError(f"recurring_type must be one of {', '.join(RECURRING_TYPES)}")
        fields["recurring_type"] = recurring_type
    return fields


def create_task(farm_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(data)
    payload.setdefault("title", "")
    fields = _validate_fields(farm_id, payload)
    status = str(data.get("status") or "OPEN").strip().upper()
    if status not in STATUSES:
        raise TaskError(f"status must be one of {', '.join(STATUSES)}")
    if fields.get("is_recurring") and not fields.get("recurring_type"):
        raise TaskError("recurring_type is required for recurring tasks")
    now = time.time()
    task_id = store.new_id()
    conn = store.connect()
    try:
        row = conn.execute(
            "SELECT COALESCE(MAX(position) + 1, 0) AS next FROM tasks WHERE farm_id = ? AND status = ?",
            (farm_id, status),
        ).fetchone()
        conn.execute(
            """
            INSERT INTO tasks (
                id, farm_id, title, description, status, position, priority, category, assignee_id,
                polyhouse_id, zone_id, due_date, is_recurring, recurring_type, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task_id,
                farm_id,
                fields["title"],
                fields.get("description"),
                status,
                int(row["next"]),
                fields.get("priority", "MEDIUM"),
                fields.get("category"),
                fields.get("assignee_id"),
                fields.get("polyhouse_id"),
                fields.get("zone_id"),
                fields.get("due_date"),
                fields.get("is_recurring", 0),
                fields.get("recurring_type"),
                now,
                now,
            ),
        )
        conn.commit()
    finally:
        conn.close()
    task = get_task(task_id)
    assert task is not None
    return public_task(task)


def update_task(task_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    task = get_task(task_id)
    if not task:
        raise TaskError("Task not found", 404)
    fields = _validate_fields(task["farm_id"], {k: v for k, v in data.items() if k in EDITABLE_FIELDS})
    recurring = fields.get("is_recurring", task["is_recurring"])
    recurring_type = fields.get("recurring_type", task["recurring_type"])
    if recurring and not recurring_type:
        raise TaskError("recurring_type is required for recurring tasks")
    status = str(data.get("status") or "").strip().upper()
    if status and status not in STATUSES:
        raise TaskError(f"status must be one of {', '.join(STATUSES)}")
    if fields:
        assignments = ", ".join(f"{key} = ?" for key in fields)
        store.execute(
            f"UPDATE tasks SET {assignments}, updated_at = ? WHERE id = ?",
            list(fields.values()) + [time.time(), task_id],
        )
    if status and status != task["status"]:
        return move_task(task_id, status, None)["task"]
    updated = get_task(task_id)
    assert updated is not None
    return public_task(updated)


def delete_task(task_id: str) -> None:
    task = get_task(task_id)
    if not task:
        raise TaskError("Task not found", 404)
    now = time.time()
    conn = store.connect()
    try:
        conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        _renumber(conn, _column_ids(conn, task["farm_id"], task["status"]), task["status"], now)
        conn.commit()
    finally:
        conn.close()


def _spawn_next_occurrence(conn: sqlite3.Connection, task: Dict[str, Any], now: float) -> str:
    next_id = store.new_id()
    row = conn.execute(
        "SELECT COALESCE(MAX(position) + 1, 0) AS next FROM tasks WHERE farm_id = ? AND status = 'OPEN'",
        (task["farm_id"],),
    ).fetchone()
    conn.execute(
        """
        INSERT INTO tasks (
            id, farm_id, title, description, status, position, priority, category, assignee_id,
            polyhouse_id, zone_id, due_date, is_recurring, recurring_type, created_at, updated_at
        ) VALUES (?, ?, ?, ?, 'OPEN', ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
        """,
        (
            next_id,
            task["farm_id"],
            task["title"],
            task.get("description"),
            int(row["next"]),
            task["priority"],
            task.get("category"),
            task.get("assignee_id"),
            task.get("polyhouse_id"),
            task.get("zone_id"),
            next_due_date(task.get("due_date"), task["recurring_type"]),
            task["recurring_type"],
            now,
            now,
        ),
    )
    return next_id


def move_task(task_id: str, status: str, index: Optional[int]) -> Dict[str, Any]:
    """Splice a task out of its column and into ``status`` at ``index``; None appends."""
    status = (status or "").strip().upper()
    if status not in STATUSES:
        raise TaskError(f"status must be one of {', '.join(STATUSES)}")
    if index is not None:
        try:
            index = int(index)
        except (TypeError, ValueError):
            raise TaskError("index must be an integer")
    task = get_task(task_id)
    if not task:
        raise TaskError("Task not found", 404)
    now = time.time()
    spawned_id = None
    conn = store.connect()
    try:
        source = _column_ids(conn, task["farm_id"], task["status"], exclude=task_id)
        dest = source if status == task["status"] else _column_ids(conn, task["farm_id"], status, exclude=task_id)
        position = len(dest) if index is None else max(0, min(index, len(dest)))
        dest.insert(position, task_id)
        if status != task["status"]:
            _renumber(conn, source, task["status"], now)
        _renumber(conn, dest, status, now)
        if status == "CLOSED" and task["status"] != "CLOSED" and task["is_recurring"] and task["recurring_type"]:
            spawned_id = _spawn_next_occurrence(conn, task, now)
        conn.commit()
    finally:
        conn.close()
    moved = get_task(task_id)
    assert moved is not None
    result: Dict[str, Any] = {"task": public_task(moved), "next_occurrence": None}
    if spawned_id:
        spawned = get_task(spawned_id)
        result["next_occurrence"] = public_task(spawned) if spawned else None
    return result


def board(farm_id: str, today: Optional[date] = None) -> Dict[str, Any]:
    rows = store.fetch_all(
        "SELECT t.*, u.name AS assignee_name FROM tasks t LEFT JOIN users u ON u.id = t.assignee_id "
        "WHERE t.farm_id = ? ORDER BY t.position, t.created_at",
        (farm_id,),
    )
    columns: Dict[str, List[Dict[str, Any]]] = {status: [] for status in STATUSES}
    for row in rows:
        columns.setdefault(row["status"], []).append(public_task(row, today))
    return {"columns": [{"status": status, "tasks": columns[status]} for status in STATUSES]}


def count_overdue(farm_id: str, today: Optional[date] = None) -> int:
    row = store.fetch_one(
        "SELECT COUNT(*) AS n FROM tasks WHERE farm_id = ? AND status != 'CLOSED' AND due_date IS NOT NULL "
        "AND due_date < ?",
        (farm_id, (today or date.today()).isoformat()),
    )
    return int(row["n"]) if row else 0


def tasks_summary(farm_id: str, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    by_status = {status: 0 for status in STATUSES}
    for row in store.fetch_all("SELECT status, COUNT(*) AS n FROM tasks WHERE farm_id = ? GROUP BY status", (farm_id,)):
        by_status[row["status"]] = int(row["n"])
    due_today = store.fetch_one(
        "SELECT COUNT(*) AS n FROM tasks WHERE farm_id = ? AND status != 'CLOSED' AND due_date = ?",
        (farm_id, today.isoformat()),
    )
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "overdue": count_overdue(farm_id, today),
        "due_today": int(due_today["n"]) if due_today else 0,
    }
