import json
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"
DB_PATH = DATA_DIR / "hydrobloom.db"

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE,
        mobile TEXT UNIQUE,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'FARM_MANAGER',
        language_pref TEXT NOT NULL DEFAULT 'en',
        is_active INTEGER NOT NULL DEFAULT 1,
        password_hash TEXT,
        onboarding_completed INTEGER NOT NULL DEFAULT 0,
        location_lat REAL,
        location_lng REAL,
        location_place_id TEXT,
        address TEXT,
        email_verified INTEGER NOT NULL DEFAULT 0,
        mobile_verified INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS farms (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        location TEXT,
        location_lat REAL,
        location_lng REAL,
        timezone TEXT NOT NULL DEFAULT 'UTC',
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS farm_access (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        farm_id TEXT NOT NULL REFERENCES farms (id) ON DELETE CASCADE,
        created_at REAL NOT NULL,
        UNIQUE (user_id, farm_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS polyhouses (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        farm_id TEXT NOT NULL REFERENCES farms (id) ON DELETE CASCADE,
        capacity INTEGER,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS zones (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        polyhouse_id TEXT NOT NULL REFERENCES polyhouses (id) ON DELETE CASCADE,
        capacity INTEGER,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS nurseries (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        zone_id TEXT NOT NULL REFERENCES zones (id) ON DELETE CASCADE,
        capacity INTEGER,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lifecycles (
        id TEXT PRIMARY KEY,
        crop TEXT NOT NULL,
        polyhouse_id TEXT REFERENCES polyhouses (id) ON DELETE SET NULL,
        zone_id TEXT REFERENCES zones (id) ON DELETE SET NULL,
        status TEXT NOT NULL DEFAULT 'PLANNED',
        expected_start TEXT,
        expected_end TEXT,
        total_quantity INTEGER,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        farm_id TEXT NOT NULL REFERENCES farms (id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'OPEN',
        position INTEGER NOT NULL DEFAULT 0,
        priority TEXT NOT NULL DEFAULT 'MEDIUM',
        category TEXT,
        assignee_id TEXT REFERENCES users (id) ON DELETE SET NULL,
        polyhouse_id TEXT REFERENCES polyhouses (id) ON DELETE SET NULL,
        zone_id TEXT REFERENCES zones (id) ON DELETE SET NULL,
        due_date TEXT,
        is_recurring INTEGER NOT NULL DEFAULT 0,
        recurring_type TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sensors (
        id TEXT PRIMARY KEY,
        zone_id TEXT NOT NULL REFERENCES zones (id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        name TEXT,
        latest_value REAL,
        unit TEXT,
        last_seen REAL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sensor_readings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sensor_id TEXT NOT NULL REFERENCES sensors (id) ON DELETE CASCADE,
        value REAL NOT NULL,
        ts REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS devices (
        id TEXT PRIMARY KEY,
        farm_id TEXT NOT NULL REFERENCES farms (id) ON DELETE CASCADE,
        polyhouse_id TEXT REFERENCES polyhouses (id) ON DELETE SET NULL,
        zone_id TEXT REFERENCES zones (id) ON DELETE SET NULL,
        name TEXT NOT NULL,
        type TEXT NOT NULL,
        supported_actions TEXT NOT NULL,
        value REAL,
        is_on INTEGER NOT NULL DEFAULT 0,
        mode TEXT NOT NULL DEFAULT 'auto',
        source TEXT,
        locked INTEGER NOT NULL DEFAULT 0,
        manual_override_until REAL,
        pulse_until REAL,
        online INTEGER NOT NULL DEFAULT 1,
        last_seen REAL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS commands (
        id TEXT PRIMARY KEY,
        farm_id TEXT NOT NULL,
        target_type TEXT NOT NULL,
        target_id TEXT NOT NULL,
        cmd_type TEXT NOT NULL DEFAULT 'override',
        action TEXT NOT NULL,
        parameters TEXT,
        status TEXT NOT NULL DEFAULT 'PENDING',
        requested_by TEXT,
        reason TEXT,
        executed_at REAL,
        result TEXT,
        error TEXT,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_rules (
        id TEXT PRIMARY KEY,
        farm_id TEXT NOT NULL REFERENCES farms (id) ON DELETE CASCADE,
        zone_id TEXT REFERENCES zones (id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        priority INTEGER NOT NULL DEFAULT 0,
        sensor_type TEXT NOT NULL,
        operator TEXT NOT NULL,
        threshold REAL NOT NULL,
        device_id TEXT NOT NULL REFERENCES devices (id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        value REAL,
        else_action TEXT,
        else_value REAL,
        last_triggered REAL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alert_configs (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        farm_id TEXT NOT NULL REFERENCES farms (id) ON DELETE CASCADE,
        severity TEXT NOT NULL DEFAULT 'MEDIUM',
        repeats_in INTEGER NOT NULL,
        repeat_unit TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        conditions TEXT NOT NULL,
        channels TEXT,
        last_triggered REAL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alert_subscriptions (
        id TEXT PRIMARY KEY,
        alert_config_id TEXT NOT NULL REFERENCES alert_configs (id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        created_at REAL NOT NULL,
        UNIQUE (alert_config_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alerts (
        id TEXT PRIMARY KEY,
        config_id TEXT REFERENCES alert_configs (id) ON DELETE SET NULL,
        farm_id TEXT NOT NULL,
        severity TEXT NOT NULL DEFAULT 'MEDIUM',
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        source TEXT,
        is_acknowledged INTEGER NOT NULL DEFAULT 0,
        acknowledged_by TEXT,
        acknowledged_at REAL,
        is_resolved INTEGER NOT NULL DEFAULT 0,
        resolved_at REAL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reservoirs (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        farm_id TEXT NOT NULL REFERENCES farms (id) ON DELETE CASCADE,
        capacity REAL,
        current_level REAL,
        last_refill REAL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_items (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        farm_id TEXT NOT NULL REFERENCES farms (id) ON DELETE CASCADE,
        category TEXT,
        current_stock REAL NOT NULL DEFAULT 0,
        unit TEXT,
        cost_per_unit REAL,
        low_stock_alert REAL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_transactions (
        id TEXT PRIMARY KEY,
        inventory_item_id TEXT NOT NULL REFERENCES inventory_items (id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        quantity REAL NOT NULL,
        unit_cost REAL,
        total_cost REAL,
        notes TEXT,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS assets (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        name TEXT NOT NULL,
        controller_macid TEXT NOT NULL UNIQUE,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invites (
        id TEXT PRIMARY KEY,
        email TEXT,
        mobile TEXT,
        role TEXT NOT NULL DEFAULT 'VIEWER',
        status TEXT NOT NULL DEFAULT 'PENDING',
        language_pref TEXT NOT NULL DEFAULT 'en',
        token TEXT NOT NULL UNIQUE,
        farm_id TEXT REFERENCES farms (id) ON DELETE SET NULL,
        expires_at REAL NOT NULL,
        created_by_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_logs (
        id TEXT PRIMARY KEY,
        contact TEXT NOT NULL,
        otp_hash TEXT NOT NULL,
        expires_at REAL NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        sent_at REAL NOT NULL,
        used_at REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ts REAL NOT NULL,
        category TEXT,
        level TEXT,
        message TEXT,
        meta TEXT,
        farm_id TEXT
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_sensor_readings_sensor_ts ON sensor_readings (sensor_id, ts)",
    "CREATE INDEX IF NOT EXISTS idx_otp_logs_contact_expires ON otp_logs (contact, expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_farm_status ON tasks (farm_id, status, position)",
    "CREATE INDEX IF NOT EXISTS idx_devices_farm ON devices (farm_id)",
    "CREATE INDEX IF NOT EXISTS idx_commands_farm_created ON commands (farm_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_alerts_farm_created ON alerts (farm_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_automation_rules_farm ON automation_rules (farm_id, priority)",
    "CREATE INDEX IF NOT EXISTS idx_event_log_ts ON event_log (ts)",
    "CREATE INDEX IF NOT EXISTS idx_event_log_farm ON event_log (farm_id, ts)",
]


def connect() -> sqlite3.Connection:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _ensure_column(cur: sqlite3.Cursor, table: str, column: str, col_type: str) -> None:
    cur.execute(f"PRAGMA table_info({table})")
    existing = {row[1] for row in cur.fetchall()}
    if column not in existing:
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")


def init_db() -> None:
    conn = connect()
    cur = conn.cursor()
    for statement in SCHEMA:
        cur.execute(statement)
    # columns added after the first schema revision
    _ensure_column(cur, "invites", "farm_id", "TEXT")
    _ensure_column(cur, "commands", "reason", "TEXT")
    _ensure_column(cur, "alert_configs", "severity", "TEXT NOT NULL DEFAULT 'MEDIUM'")
    _ensure_column(cur, "devices", "pulse_until", "REAL")
    _ensure_column(cur, "event_log", "farm_id", "TEXT")
    for statement in INDEXES:
        cur.execute(statement)
    conn.commit()
    conn.close()


def new_id() -> str:
    return uuid.uuid4().hex


def iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def fetch_one(sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
    conn = connect()
    try:
        row = conn.execute(sql, tuple(params)).fetchone()
    finally:
        conn.close()
    return dict(row) if row else None


def fetch_all(sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
    conn = connect()
    try:
        rows = conn.execute(sql, tuple(params)).fetchall()
    finally:
        conn.close()
    return [dict(row) for row in rows]


def execute(sql: str, params: Iterable[Any] = ()) -> int:
    conn = connect()
    try:
        cur = conn.execute(sql, tuple(params))
        conn.commit()
        return int(cur.rowcount or 0)
    finally:
        conn.close()


def log_event(category: str, level: str, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
    payload = json.dumps(meta) if meta else None
    farm_id = meta.get("farm_id") if meta else None
    try:
        conn = connect()
        try:
            conn.execute(
                "INSERT INTO event_log (ts, category, level, message, meta, farm_id) VALUES (?, ?, ?, ?, ?, ?)",
                (time.time(), category, level, message, payload, farm_id),
            )
            conn.commit()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        print("[store] event log write failed:", exc)


def list_events(
    categories: List[str],
    level: Optional[str] = None,
    device_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    farm_ids: Optional[List[str]] = None,
) -> Dict[str, Any]:
    clauses = ["category IN (%s)" % ",".join("?" for _ in categories)]
    params: List[Any] = list(categories)
    if farm_ids is not None:
        if not farm_ids:
            return {"logs": [], "total": 0, "limit": limit, "offset": offset}
        clauses.append("farm_id IN (%s)" % ",".join("?" for _ in farm_ids))
        params.extend(farm_ids)
    if level:
        clauses.append("level = ?")
        params.append(level)
    if device_id:
        clauses.append("meta LIKE ?")
        params.append(f'%"device_id": "{device_id}"%')
    where = " AND ".join(clauses)
    total_row = fetch_one(f"SELECT COUNT(*) AS n FROM event_log WHERE {where}", params)
    rows = fetch_all(
        f"SELECT * FROM event_log WHERE {where} ORDER BY ts DESC, id DESC LIMIT ? OFFSET ?",
        params + [limit, offset],
    )
    logs = []
    for row in rows:
        meta = None
        if row.get("meta"):
            try:
                meta = json.loads(row["meta"])
            except ValueError:
                meta = None
        logs.append({
            "id": row["id"],
            "ts": iso(row["ts"]),
            "category": row["category"],
            "farm_id": row.get("farm_id"),
            "level": row["level"],
            "message": row["message"],
            "meta": meta,
        })
    return {"logs": logs, "total": int(total_row["n"]) if total_row else 0, "limit": limit, "offset": offset}
