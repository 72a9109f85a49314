#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import re
import sys
import time
from datetime import date, timedelta
from pathlib import Path
from typing import Any


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


sys.path.insert(0, str(_repo_root()))

import auth  # noqa: E402
import devices  # noqa: E402
import store  # noqa: E402
import telemetry  # noqa: E402


def _load_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _slugify(value: str) -> str:
    cleaned = re.sub(r"[^a-z0-9_-]+", "-", value.lower())
    cleaned = cleaned.strip("-")
    return cleaned or "item"


def build_plan(cfg: dict[str, Any]) -> dict[str, list[dict[str, Any]]]:
    """Flatten the demo config into rows keyed by table, with ids derived from names."""
    farm_cfg = cfg["farm"]
    farm_id = _slugify(farm_cfg["name"])
    plan: dict[str, list[dict[str, Any]]] = {
        "farms": [{"id": farm_id, **farm_cfg}],
        "polyhouses": [],
        "zones": [],
        "sensors": [],
        "lifecycles": [],
        "devices": [],
        "tasks": [],
        "reservoirs": [],
        "inventory": [],
    }
    polyhouse_ids: dict[str, str] = {}
    zone_ids: dict[tuple[str, str], str] = {}
    for ph in cfg.get("polyhouses") or []:
        ph_id = f"{farm_id}-{_slugify(ph['name'])}"
        polyhouse_ids[ph["name"]] = ph_id
        plan["polyhouses"].append({"id": ph_id, "farm_id": farm_id, "name": ph["name"], "capacity": ph.get("capacity")})
        for zone in ph.get("zones") or []:
            zone_id = f"{ph_id}-{_slugify(zone['name'])}"
            zone_ids[(ph["name"], zone["name"])] = zone_id
            plan["zones"].append({"id": zone_id, "polyhouse_id": ph_id, "name": zone["name"],
                                  "capacity": zone.get("capacity")})
            for sensor_type in zone.get("sensors") or []:
                if sensor_type not in telemetry.SENSOR_TYPES:
                    raise SystemExit(f"unknown sensor type in {zone['name']}: {sensor_type}")
                plan["sensors"].append({"id": f"{zone_id}-{sensor_type}", "zone_id": zone_id, "type": sensor_type})
            if zone.get("crop"):
                plan["lifecycles"].append({"id": f"{zone_id}-lifecycle", "crop": zone["crop"],
                                           "polyhouse_id": ph_id, "zone_id": zone_id})
    for device in cfg.get("devices") or []:
        ph_name = device.get("polyhouse")
        zone_name = device.get("zone")
        if ph_name and ph_name not in polyhouse_ids:
            raise SystemExit(f"device {device['name']}: unknown polyhouse {ph_name}")
        if zone_name and (ph_name, zone_name) not in zone_ids:
            raise SystemExit(f"device {device['name']}: unknown zone {zone_name}")
        plan["devices"].append({
            "id": f"{farm_id}-{_slugify(device['name'])}",
            "farm_id": farm_id,
            "polyhouse_id": polyhouse_ids.get(ph_name) if ph_name else None,
            "zone_id": zone_ids.get((ph_name, zone_name)) if zone_name else None,
            "name": device["name"],
            "type": device["type"],
        })
    for task in cfg.get("tasks") or []:
        plan["tasks"].append({"id": f"{farm_id}-task-{_slugify(task['title'])}", "farm_id": farm_id, **task})
    for reservoir in cfg.get("reservoirs") or []:
        plan["reservoirs"].append({"id": f"{farm_id}-{_slugify(reservoir['name'])}", "farm_id": farm_id, **reservoir})
    for item in cfg.get("inventory") or []:
        plan["inventory"].append({"id": f"{farm_id}-{_slugify(item['name'])}", "farm_id": farm_id, **item})
    return plan


def _ensure_owner(owner: dict[str, Any], password: str | None) -> tuple[str, bool]:
    existing = auth.find_user_by_contact(owner["email"])
    if existing:
        return existing["id"], False
    mobile = auth.normalize_mobile(owner["mobile"]) if owner.get("mobile") else None
    user = auth.create_user(
        owner["name"],
        email=owner["email"].lower(),
        mobile=mobile,
        role="OWNER",
        password=password,
        onboarding_completed=True,
        email_verified=True,
    )
    return user["id"], True


def apply_plan(plan: dict[str, list[dict[str, Any]]], owner_id: str) -> dict[str, int]:
    now = time.time()
    today = date.today()
    inserted: dict[str, int] = {}
    conn = store.connect()
    try:
        def insert(table: str, sql: str, params: tuple[Any, ...]) -> None:
            cur = conn.execute(sql, params)
            inserted[table] = inserted.get(table, 0) + (cur.rowcount or 0)

        for farm in plan["farms"]:
            insert("farms", "INSERT OR IGNORE INTO farms (id, name, location, location_lat, location_lng, timezone, "
                   "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                   (farm["id"], farm["name"], farm.get("location"), farm.get("location_lat"), farm.get("location_lng"),
                    farm.get("timezone") or "UTC", now, now))
            insert("farm_access", "INSERT OR IGNORE INTO farm_access (id, user_id, farm_id, created_at) "
                   "VALUES (?, ?, ?, ?)", (store.new_id(), owner_id, farm["id"], now))
        for ph in plan["polyhouses"]:
            insert("polyhouses", "INSERT OR IGNORE INTO polyhouses (id, name, farm_id, capacity, created_at, updated_at) "
                   "VALUES (?, ?, ?, ?, ?, ?)", (ph["id"], ph["name"], ph["farm_id"], ph.get("capacity"), now, now))
        for zone in plan["zones"]:
            insert("zones", "INSERT OR IGNORE INTO zones (id, name, polyhouse_id, capacity, created_at, updated_at) "
                   "VALUES (?, ?, ?, ?, ?, ?)",
                   (zone["id"], zone["name"], zone["polyhouse_id"], zone.get("capacity"), now, now))
        for sensor in plan["sensors"]:
            unit = telemetry.SENSOR_TYPES[sensor["type"]]["unit"]
            insert("sensors", "INSERT OR IGNORE INTO sensors (id, zone_id, type, name, unit, created_at) "
                   "VALUES (?, ?, ?, ?, ?, ?)",
                   (sensor["id"], sensor["zone_id"], sensor["type"], sensor["type"].replace("_", " ").title(), unit, now))
        for lifecycle in plan["lifecycles"]:
            insert("lifecycles", "INSERT OR IGNORE INTO lifecycles (id, crop, polyhouse_id, zone_id, status, "
                   "expected_start, expected_end, created_at) VALUES (?, ?, ?, ?, 'ACTIVE', ?, ?, ?)",
                   (lifecycle["id"], lifecycle["crop"], lifecycle["polyhouse_id"], lifecycle["zone_id"],
                    today.isoformat(), (today + timedelta(days=120)).isoformat(), now))
        for device in plan["devices"]:
            actions = devices.DEFAULT_ACTIONS[device["type"]]
            insert("devices", "INSERT OR IGNORE INTO devices (id, farm_id, polyhouse_id, zone_id, name, type, "
                   "supported_actions, value, is_on, mode, source, locked, online, last_seen, created_at, updated_at) "
                   "VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0, 'auto', 'system', 0, 1, ?, ?, ?)",
                   (device["id"], device["farm_id"], device["polyhouse_id"], device["zone_id"], device["name"],
                    device["type"], json.dumps(actions), now, now, now))
        positions: dict[str, int] = {}
        for task in plan["tasks"]:
            status = task.get("status") or "OPEN"
            position = positions.get(status, 0)
            positions[status] = position + 1
            due = today + timedelta(days=int(task["due_in_days"])) if task.get("due_in_days") is not None else None
            insert("tasks", "INSERT OR IGNORE INTO tasks (id, farm_id, title, status, position, priority, category, "
                   "due_date, is_recurring, recurring_type, created_at, updated_at) "
                   "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                   (task["id"], task["farm_id"], task["title"], status, position, task.get("priority") or "MEDIUM",
                    task.get("category"), due.isoformat() if due else None, 1 if task.get("recurring_type") else 0,
                    task.get("recurring_type"), now, now))
        for reservoir in plan["reservoirs"]:
            insert("reservoirs", "INSERT OR IGNORE INTO reservoirs (id, name, farm_id, capacity, current_level, "
                   "last_refill, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                   (reservoir["id"], reservoir["name"], reservoir["farm_id"], reservoir.get("capacity"),
                    reservoir.get("current_level"), now, now))
        for item in plan["inventory"]:
            insert("inventory_items", "INSERT OR IGNORE INTO inventory_items (id, name, farm_id, category, "
                   "current_stock, unit, cost_per_unit, low_stock_alert, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                   (item["id"], item["name"], item["farm_id"], item.get("category"), item.get("current_stock") or 0,
                    item.get("unit"), item.get("cost_per_unit"), item.get("low_stock_alert"), now))
        conn.commit()
    finally:
        conn.close()
    return inserted


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Seed a demo farm from config/demo_farm.json (idempotent).")
    parser.add_argument("--config", type=Path, default=_repo_root() / "config" / "demo_farm.json")
    parser.add_argument("--db", type=Path, help="SQLite file (default: data/hydrobloom.db).")
    parser.add_argument("--password", help="Password for the demo owner (OTP-only when omitted).")
    parser.add_argument("--dry-run", action="store_true", help="Print the plan without writing.")
    args = parser.parse_args(argv)

    if not args.config.exists():
        raise SystemExit(f"config not found: {args.config}")
    cfg = _load_json(args.config)
    if not isinstance(cfg, dict) or "farm" not in cfg or "owner" not in cfg:
        raise SystemExit("demo config must be an object with owner and farm")
    if args.password is not None and len(args.password) < 8:
        raise SystemExit("password must be at least 8 characters")

    plan = build_plan(cfg)
    print(" ".join(f"{table}={len(rows)}" for table, rows in plan.items()))
    if args.dry_run:
        print("dry-run preview:")
        print(json.dumps(plan, indent=2, ensure_ascii=False))
        return 0

    if args.db:
        store.DB_PATH = args.db
    store.init_db()
    owner_id, created = _ensure_owner(cfg["owner"], args.password)
    print(f"owner: {cfg['owner']['email']} ({'created' if created else 'existing'})")
    inserted = apply_plan(plan, owner_id)
    print("inserted: " + (" ".join(f"{table}={count}" for table, count in sorted(inserted.items())) or "nothing"))
    print(f"database: {store.DB_PATH}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
