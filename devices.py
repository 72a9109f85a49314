import json
import sqlite3
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import auth
import store

DEVICE_TYPES = ("fan", "vent", "pump", "valve", "dosing_pump", "sensor")
CMD_TYPES = ("override", "pulse", "release")
TARGET_TYPES = ("farm", "polyhouse", "zone", "device")
MODES = ("auto", "manual", "safety")
ACTION_PARAMS: Dict[str, Optional[Tuple[str, float, float]]] = {
    "on": None,
    "off": None,
    "set_speed": ("percentage", 0.0, 100.0),
    "set_position": ("percentage", 0.0, 100.0),
    "pulse": ("seconds", 1.0, 60.0),
    "set_flow_rate": ("ml_per_sec", 0.1, 10.0),
}
DEFAULT_ACTIONS: Dict[str, List[str]] = {
    "fan": ["on", "off", "set_speed"],
    "pump": ["on", "off", "set_speed"],
    "vent": ["set_position"],
    "valve": ["on", "off", "set_position"],
    "dosing_pump": ["pulse", "set_flow_rate"],
    "sensor": [],
}
FULL_ON_TYPES = ("fan", "pump")

CONTROL_LIMITS: Dict[str, int] = {
    "default_override_seconds": 1800,
    "max_override_seconds": 3600,
}


class CommandError(Exception):
    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


class CommandRejected(Exception):
    def __init__(self, message: str, command_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.command_id = command_id


def configure_limits(cfg: Dict[str, Any]) -> None:
    for key in CONTROL_LIMITS:
        if key in (cfg or {}):
            CONTROL_LIMITS[key] = int(cfg[key])


def _coerce_float(value: Any) -> Optional[float]:
    try:
        if value is None or isinstance(value, bool):
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def describe_action(action: str) -> Dict[str, Any]:
    params = ACTION_PARAMS.get(action)
    if params is None:
        return {"action": action}
    return {"action": action, "parameter_type": params[0], "min_value": params[1], "max_value": params[2]}


def validate_action_value(action: str, value: Any) -> Optional[float]:
    if action not in ACTION_PARAMS:
        raise CommandError(f"Unknown action: {action}")
    params = ACTION_PARAMS[action]
    if params is None:
        return None
    number = _coerce_float(value)
    if number is None:
        raise CommandError(f"{action} requires a numeric value")
    if not params[1] <= number <= params[2]:
        raise CommandError(f"{action} value must be between {params[1]:g} and {params[2]:g}")
    return number


def derive_status(device: Dict[str, Any]) -> str:
    if not device["online"]:
        return "offline"
    if device["locked"]:
        return "locked"
    if device["mode"] == "manual":
        return "manual"
    if device["mode"] == "safety":
        return "safety"
    return "auto"


def rejection_reason(device: Dict[str, Any], user: Dict[str, Any]) -> Optional[str]:
    if not device["online"]:
        return "Device is offline"
    if device["locked"]:
        return "Device is locked"
    if device["mode"] == "safety" and not auth.is_admin(user):
        return "Device is in safety mode; admin access required"
    return None


DEVICE_SELECT = (
    "SELECT d.*, f.name AS farm_name, p.name AS polyhouse_name, z.name AS zone_name FROM devices d "
    "JOIN farms f ON f.id = d.farm_id LEFT JOIN polyhouses p ON p.id = d.polyhouse_id "
    "LEFT JOIN zones z ON z.id = d.zone_id"
)


def public_device(row: Dict[str, Any]) -> Dict[str, Any]:
    names = [row.get("farm_name"), row.get("polyhouse_name"), row.get("zone_name")]
    path = " > ".join(name for name in names if name)
    if row.get("zone_id"):
        scope_type = "zone"
    elif row.get("polyhouse_id"):
        scope_type = "polyhouse"
    else:
        scope_type = "farm"
    return {
        "id": row["id"],
        "name": row["name"],
        "type": row["type"],
        "supported_actions": [describe_action(a) for a in json.loads(row["supported_actions"] or "[]")],
        "state": {
            "value": row.get("value"),
            "on": bool(row["is_on"]),
            "mode": row["mode"],
            "source": row.get("source"),
            "lock": bool(row["locked"]),
            "manual_override_until": store.iso(row.get("manual_override_until")),
        },
        "scope": {
            "type": scope_type,
            "farm_id": row["farm_id"],
            "polyhouse_id": row.get("polyhouse_id"),
            "zone_id": row.get("zone_id"),
            "name": [name for name in names if name][-1] if path else "",
            "path": path,
        },
        "online": bool(row["online"]),
        "last_seen": store.iso(row.get("last_seen")),
        "status": derive_status(row),
        "updated_at": store.iso(row.get("updated_at")),
    }


def get_device_row(device_id: str) -> Optional[Dict[str, Any]]:
    return store.fetch_one(DEVICE_SELECT + " WHERE d.id = ?", (device_id,))


def get_device(device_id: str) -> Optional[Dict[str, Any]]:
    row = get_device_row(device_id)
    return public_device(row) if row else None


def list_devices(farm_ids: List[str], polyhouse_id: Optional[str] = None,
                 zone_id: Optional[str] = None) -> List[Dict[str, Any]]:
    if not farm_ids:
        return []
    clauses = ["d.farm_id IN (%s)" % ",".join("?" for _ in farm_ids)]
    params: List[Any] = list(farm_ids)
    if polyhouse_id:
        clauses.append("d.polyhouse_id = ?")
        params.append(polyhouse_id)
    if zone_id:
        clauses.append("d.zone_id = ?")
        params.append(zone_id)
    rows = store.fetch_all(
        DEVICE_SELECT + " WHERE " + " AND ".join(clauses) + " ORDER BY f.name, p.name, z.name, d.name",
        params,
    )
    return [public_device(row) for row in rows]


def validate_device_payload(data: Dict[str, Any]) -> List[str]:
    errors: List[str] = []
    if not str(data.get("name") or "").strip():
        errors.append("name is required")
    if not data.get("farm_id"):
        errors.append("farm_id is required")
    device_type = str(data.get("type") or "").strip().lower()
    if device_type not in DEVICE_TYPES:
        errors.append(f"type must be one of {', '.join(DEVICE_TYPES)}")
    actions = data.get("supported_actions")
    if actions is not None:
        if not isinstance(actions, list):
            errors.append("supported_actions must be a list")
        else:
            unknown = [str(a) for a in actions if a not in ACTION_PARAMS]
            if unknown:
                errors.append(f"unknown actions: {', '.join(unknown)}")
            if device_type == "sensor" and actions:
                errors.append("sensors do not support actions")
    return errors


def create_device(data: Dict[str, Any], now: Optional[float] = None) -> Dict[str, Any]:
    errors = validate_device_payload(data)
    if errors:
        raise CommandError("; ".join(errors))
    now = time.time() if now is None else now
    farm_id = str(data["farm_id"])
    if not store.fetch_one("SELECT id FROM farms WHERE id = ?", (farm_id,)):
        raise CommandError("Farm not found", 404)
    polyhouse_id = data.get("polyhouse_id") or None
    zone_id = data.get("zone_id") or None
    if zone_id:
        zone = store.fetch_one(
            "SELECT z.polyhouse_id, p.farm_id FROM zones z JOIN polyhouses p ON p.id = z.polyhouse_id WHERE z.id = ?",
            (zone_id,),
        )
        if not zone or zone["farm_id"] != farm_id or (polyhouse_id and zone["polyhouse_id"] != polyhouse_id):
            raise CommandError("zone_id does not belong to this farm or polyhouse")
        polyhouse_id = zone["polyhouse_id"]
    elif polyhouse_id:
        if not store.fetch_one("SELECT id FROM polyhouses WHERE id = ? AND farm_id = ?", (polyhouse_id, farm_id)):
            raise CommandError("polyhouse_id does not belong to this farm")
    device_type = str(data["type"]).strip().lower()
    actions = data.get("supported_actions")
    if actions is None:
        actions = DEFAULT_ACTIONS[device_type]
    device_id = str(data.get("id") or "").strip() or store.new_id()
    try:
        store.execute(
            "INSERT INTO devices (id, farm_id, polyhouse_id, zone_id, name, type, supported_actions, value, is_on, mode, "
            "source, locked, online, last_seen, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0, 'auto', 'system', 0, 1, ?, ?, ?)",
            (device_id, farm_id, polyhouse_id, zone_id, str(data["name"]).strip(), device_type,
             json.dumps(list(actions)), now, now, now),
        )
    except sqlite3.IntegrityError:
        raise CommandError("Device id already exists", 409)
    store.log_event("device", "info", "Device registered", {"device_id": device_id, "farm_id": farm_id})
    device = get_device(device_id)
    assert device is not None
    return device


def resolve_target_farm(target_type: str, target_id: str) -> Optional[str]:
    if target_type == "farm":
        row = store.fetch_one("SELECT id AS farm_id FROM farms WHERE id = ?", (target_id,))
    elif target_type == "polyhouse":
        row = store.fetch_one("SELECT farm_id FROM polyhouses WHERE id = ?", (target_id,))
    elif target_type == "zone":
        row = store.fetch_one(
            "SELECT p.farm_id FROM zones z JOIN polyhouses p ON p.id = z.polyhouse_id WHERE z.id = ?", (target_id,)
        )
    elif target_type == "device":
        row = store.fetch_one("SELECT farm_id FROM devices WHERE id = ?", (target_id,))
    else:
        return None
    return row["farm_id"] if row else None


def public_command(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "farm_id": row["farm_id"],
        "target_type": row["target_type"],
        "target_id": row["target_id"],
        "cmd_type": row["cmd_type"],
        "action": row["action"],
        "parameters": json.loads(row["parameters"]) if row.get("parameters") else {},
        "status": row["status"],
        "requested_by": row.get("requested_by"),
        "reason": row.get("reason"),
        "executed_at": store.iso(row.get("executed_at")),
        "result": json.loads(row["result"]) if row.get("result") else None,
        "error": row.get("error"),
        "created_at": store.iso(row["created_at"]),
    }


def list_commands(farm_ids: List[str], status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    if not farm_ids:
        return []
    clauses = ["farm_id IN (%s)" % ",".join("?" for _ in farm_ids)]
    params: List[Any] = list(farm_ids)
    if status:
        clauses.append("status = ?")
        params.append(status.upper())
    rows = store.fetch_all(
        f"SELECT * FROM commands WHERE {' AND '.join(clauses)} ORDER BY created_at DESC, rowid DESC LIMIT ?",
        params + [limit],
    )
    return [public_command(row) for row in rows]


def _parse_action(payload: Dict[str, Any]) -> Tuple[Optional[str], Any]:
    action = payload.get("action")
    if isinstance(action, dict):
        return (str(action.get("action") or "").strip().lower() or None), action.get("value")
    if isinstance(action, str):
        return (action.strip().lower() or None), payload.get("value")
    return None, payload.get("value")


def target_state(device: Dict[str, Any], action: str, value: Optional[float]) -> Tuple[bool, Optional[float]]:
    if action == "on":
        return True, (100.0 if device["type"] in FULL_ON_TYPES else device.get("value"))
    if action == "off":
        return False, 0.0
    return bool(value and value > 0), value


def _parse_duration(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise CommandError("duration_sec must be a positive integer")
    try:
        duration = int(raw)
    except (TypeError, ValueError):
        raise CommandError("duration_sec must be a positive integer")
    if duration <= 0:
        raise CommandError("duration_sec must be a positive integer")
    return duration


class DeviceController:
    """Applies manual commands to persisted device state and owns pulse timers."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.timers: Dict[str, threading.Timer] = {}

    def _cancel_timer(self, device_id: str) -> None:
        timer = self.timers.pop(device_id, None)
        if timer is not None:
            timer.cancel()

    def _arm_pulse_timer(self, device_id: str, seconds: float) -> None:
        self._cancel_timer(device_id)
        timer = threading.Timer(seconds, lambda: self._end_pulse(device_id, timer))
        timer.daemon = True
        timer.start()
        self.timers[device_id] = timer

    def _end_pulse(self, device_id: str, timer: Optional[threading.Timer] = None) -> None:
        with self.lock:
            if timer is not None and self.timers.get(device_id) is not timer:
                # superseded by a newer pulse, or already ended by release/expiry
                return
            self.timers.pop(device_id, None)
            ended = store.execute(
                "UPDATE devices SET is_on = 0, mode = 'auto', source = 'system', manual_override_until = NULL, "
                "pulse_until = NULL, updated_at = ? WHERE id = ? AND pulse_until IS NOT NULL",
                (time.time(), device_id),
            )
        if ended:
            row = store.fetch_one("SELECT farm_id FROM devices WHERE id = ?", (device_id,))
            store.log_event("device", "info", "Pulse finished",
                            {"device_id": device_id, "farm_id": row["farm_id"] if row else None})

    def shutdown(self) -> None:
        with self.lock:
            for timer in self.timers.values():
                timer.cancel()
            self.timers.clear()

    def _plan(self, device: Dict[str, Any], user: Dict[str, Any], cmd_type: str, action: Optional[str],
              value: Any, duration: Optional[int]) -> Dict[str, Any]:
        supported = json.loads(device["supported_actions"] or "[]")
        if cmd_type == "release":
            return {"cmd_type": "release", "action": "release"}
        if cmd_type == "pulse":
            if "pulse" not in supported and "on" not in supported:
                raise CommandError(f"{device['name']} does not support pulse")
            seconds = _coerce_float(value) if value is not None else (float(duration) if duration else None)
            if seconds is None:
                raise CommandError("pulse requires a duration in seconds")
            low, high = ACTION_PARAMS["pulse"][1:]  # type: ignore[index]
            if not low <= seconds <= high:
                raise CommandError(f"pulse value must be between {low:g} and {high:g}")
            return {"cmd_type": "pulse", "action": "pulse", "seconds": seconds}
        if not action:
            raise CommandError("action is required")
        if action == "pulse":
            raise CommandError("use cmd_type pulse for pulse actions")
        if action not in supported:
            raise CommandError(f"{device['name']} does not support {action}")
        number = validate_action_value(action, value)
        duration = duration or CONTROL_LIMITS["default_override_seconds"]
        if duration > CONTROL_LIMITS["max_override_seconds"] and not auth.is_admin(user):
            minutes = CONTROL_LIMITS["max_override_seconds"] // 60
            raise CommandError(f"Overrides longer than {minutes} minutes require admin access")
        return {"cmd_type": "override", "action": action, "value": number, "duration": duration}

    def _apply(self, conn: sqlite3.Connection, device: Dict[str, Any], user: Dict[str, Any],
               plan: Dict[str, Any], now: float) -> str:
        device_id = device["id"]
        if plan["cmd_type"] == "release":
            self._cancel_timer(device_id)
            conn.execute(
                "UPDATE devices SET is_on = CASE WHEN pulse_until IS NOT NULL THEN 0 ELSE is_on END, mode = 'auto', "
                "source = 'system', manual_override_until = NULL, pulse_until = NULL, updated_at = ? WHERE id = ?",
                (now, device_id),
            )
            return f"{device['name']} returned to automatic control"
        if plan["cmd_type"] == "pulse":
            seconds = plan["seconds"]
            conn.execute(
                "UPDATE devices SET is_on = 1, mode = 'manual', source = ?, manual_override_until = ?, "
                "pulse_until = ?, updated_at = ? WHERE id = ?",
                (user["id"], now + seconds, now + seconds, now, device_id),
            )
            self._arm_pulse_timer(device_id, seconds)
            return f"{device['name']} pulsed for {seconds:g}s"
        self._cancel_timer(device_id)
        action = plan["action"]
        is_on, value = target_state(device, action, plan["value"])
        conn.execute(
            "UPDATE devices SET is_on = ?, value = ?, mode = 'manual', source = ?, manual_override_until = ?, "
            "pulse_until = NULL, updated_at = ? WHERE id = ?",
            (1 if is_on else 0, value, user["id"], now + plan["duration"], now, device_id),
        )
        minutes = plan["duration"] / 60.0
        return f"{device['name']} {action.replace('_', ' ')} applied for {minutes:g} min"

    def _record(self, conn: sqlite3.Connection, device: Dict[str, Any], user: Dict[str, Any], cmd_type: str,
                action: str, parameters: Dict[str, Any], status: str, reason: Optional[str], now: float,
                result: Optional[str] = None, error: Optional[str] = None) -> str:
        command_id = store.new_id()
        conn.execute(
            "INSERT INTO commands (id, farm_id, target_type, target_id, cmd_type, action, parameters, status, "
            "requested_by, reason, executed_at, result, error, created_at) "
            "VALUES (?, ?, 'device', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (command_id, device["farm_id"], device["id"], cmd_type, action, json.dumps(parameters), status,
             user["id"], reason, now if status == "EXECUTED" else None,
             json.dumps({"message": result}) if result else None, error, now),
        )
        return command_id

    def execute(self, device_id: str, user: Dict[str, Any], payload: Dict[str, Any],
                now: Optional[float] = None) -> Dict[str, Any]:
        cmd_type = str(payload.get("cmd_type") or "override").strip().lower()
        if cmd_type not in CMD_TYPES:
            raise CommandError(f"cmd_type must be one of {', '.join(CMD_TYPES)}")
        action, value = _parse_action(payload)
        duration = _parse_duration(payload.get("duration_sec"))
        reason = str(payload.get("reason") or "").strip() or None
        now = time.time() if now is None else now
        with self.lock:
            device = get_device_row(device_id)
            if not device:
                raise CommandError("Device not found", 404)
            plan = self._plan(device, user, cmd_type, action, value, duration)
            parameters = {k: v for k, v in plan.items() if k not in ("cmd_type", "action") and v is not None}
            conn = store.connect()
            try:
                problem = rejection_reason(device, user)
                if problem:
                    command_id = self._record(conn, device, user, cmd_type, plan["action"], parameters, "FAILED",
                                              reason, now, error=problem)
                    conn.commit()
                    store.log_event("device", "warning", f"Command rejected: {problem}",
                                    {"device_id": device_id, "farm_id": device["farm_id"], "command_id": command_id,
                                     "user_id": user["id"]})
                    raise CommandRejected(problem, command_id)
                message = self._apply(conn, device, user, plan, now)
                command_id = self._record(conn, device, user, cmd_type, plan["action"], parameters, "EXECUTED",
                                          reason, now, result=message)
                conn.commit()
            finally:
                conn.close()
        store.log_event("device", "info", message, {
            "device_id": device_id,
            "farm_id": device["farm_id"],
            "command_id": command_id,
            "cmd_type": cmd_type,
            "action": plan["action"],
            "user_id": user["id"],
            "reason": reason,
        })
        return {"status": "ack", "message": message, "command_id": command_id, "device": get_device(device_id)}

    def set_lock(self, device_id: str, user: Dict[str, Any], locked: bool,
                 now: Optional[float] = None) -> Dict[str, Any]:
        now = time.time() if now is None else now
        with self.lock:
            device = get_device_row(device_id)
            if not device:
                raise CommandError("Device not found", 404)
            self._cancel_timer(device_id)
            if locked:
                store.execute(
                    "UPDATE devices SET is_on = CASE WHEN pulse_until IS NOT NULL THEN 0 ELSE is_on END, locked = 1, "
                    "mode = 'safety', source = 'safety-system', manual_override_until = NULL, pulse_until = NULL, "
                    "updated_at = ? WHERE id = ?",
                    (now, device_id),
                )
            else:
                store.execute(
                    "UPDATE devices SET locked = 0, mode = 'auto', source = 'system', manual_override_until = NULL, "
                    "updated_at = ? WHERE id = ?",
                    (now, device_id),
                )
        store.log_event("device", "warning" if locked else "info",
                        f"{device['name']} {'locked' if locked else 'unlocked'}",
                        {"device_id": device_id, "farm_id": device["farm_id"], "user_id": user["id"]})
        updated = get_device(device_id)
        assert updated is not None
        return updated

    def emergency_stop(self, farm_id: str, user: Dict[str, Any], now: Optional[float] = None) -> Dict[str, Any]:
        now = time.time() if now is None else now
        with self.lock:
            rows = store.fetch_all("SELECT id FROM devices WHERE farm_id = ? AND type != 'sensor'", (farm_id,))
            for row in rows:
                self._cancel_timer(row["id"])
            conn = store.connect()
            try:
                conn.execute(
                    "UPDATE devices SET is_on = 0, value = 0, manual_override_until = NULL, pulse_until = NULL, "
                    "updated_at = ? WHERE farm_id = ? AND type != 'sensor'",
                    (now, farm_id),
                )
                # already-locked devices keep their lock source
                conn.execute(
                    "UPDATE devices SET locked = 1, mode = 'safety', source = 'emergency-stop' "
                    "WHERE farm_id = ? AND type != 'sensor' AND locked = 0",
                    (farm_id,),
                )
                command_id = store.new_id()
                conn.execute(
                    "INSERT INTO commands (id, farm_id, target_type, target_id, cmd_type, action, parameters, status, "
                    "requested_by, executed_at, result, created_at) "
                    "VALUES (?, ?, 'farm', ?, 'emergency_stop', 'off', '{}', 'EXECUTED', ?, ?, ?, ?)",
                    (command_id, farm_id, farm_id, user["id"], now, json.dumps({"devices": len(rows)}), now),
                )
                conn.commit()
            finally:
                conn.close()
        store.log_event("automation", "critical", "Emergency stop engaged",
                        {"farm_id": farm_id, "user_id": user["id"], "devices": len(rows)})
        return {"stopped": len(rows), "command_id": command_id}

    def clear_emergency_stop(self, farm_id: str, user: Dict[str, Any], now: Optional[float] = None) -> Dict[str, Any]:
        now = time.time() if now is None else now
        with self.lock:
            cleared = store.execute(
                "UPDATE devices SET locked = 0, mode = 'auto', source = 'system', updated_at = ? "
                "WHERE farm_id = ? AND locked = 1 AND source = 'emergency-stop'",
                (now, farm_id),
            )
        store.log_event("automation", "warning", "Emergency stop cleared",
                        {"farm_id": farm_id, "user_id": user["id"], "devices": cleared})
        return {"released": cleared}

    def expire_overrides(self, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        with self.lock:
            rows = store.fetch_all(
                "SELECT id, farm_id, pulse_until FROM devices WHERE locked = 0 AND ("
                "(mode = 'manual' AND manual_override_until IS NOT NULL AND manual_override_until <= ?) "
                "OR (pulse_until IS NOT NULL AND pulse_until <= ?))",
                (now, now),
            )
            for row in rows:
                self._cancel_timer(row["id"])
                # a pulse that outlived its timer (restart, missed callback) must not stay on
                store.execute(
                    "UPDATE devices SET is_on = CASE WHEN pulse_until IS NOT NULL THEN 0 ELSE is_on END, "
                    "mode = 'auto', source = 'system', manual_override_until = NULL, pulse_until = NULL, "
                    "updated_at = ? WHERE id = ?",
                    (now, row["id"]),
                )
        for row in rows:
            message = "Pulse finished" if row["pulse_until"] is not None else "Manual override expired"
            store.log_event("automation", "info", message, {"device_id": row["id"], "farm_id": row["farm_id"]})
        return [row["id"] for row in rows]

    def mark_stale_offline(self, stale_seconds: float, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        rows = store.fetch_all(
            "SELECT id, farm_id FROM devices WHERE online = 1 AND (last_seen IS NULL OR last_seen < ?)",
            (now - stale_seconds,),
        )
        for row in rows:
            store.execute("UPDATE devices SET online = 0, updated_at = ? WHERE id = ?", (now, row["id"]))
            store.log_event("device", "warning", "Device went offline",
                            {"device_id": row["id"], "farm_id": row["farm_id"]})
        return [row["id"] for row in rows]

    def heartbeat(self, device_ids: List[Any], now: Optional[float] = None) -> Tuple[int, List[str]]:
        now = time.time() if now is None else now
        seen = 0
        unknown: List[str] = []
        for raw in device_ids:
            device_id = str(raw)
            row = store.fetch_one("SELECT online, farm_id FROM devices WHERE id = ?", (device_id,))
            if not row:
                unknown.append(device_id)
                continue
            store.execute("UPDATE devices SET online = 1, last_seen = ? WHERE id = ?", (now, device_id))
            if not row["online"]:
                store.log_event("device", "info", "Device back online",
                                {"device_id": device_id, "farm_id": row["farm_id"]})
            seen += 1
        return seen, unknown

    def apply_automation(self, device_id: str, action: str, value: Optional[float], rule: Dict[str, Any],
                         now: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Drive a device from an automation rule.

        Only online, unlocked devices in auto mode are touched; a device already in
        the target state is left alone. Returns the executed command or None.
        """
        now = time.time() if now is None else now
        with self.lock:
            device = get_device_row(device_id)
            if not device or not device["online"] or device["locked"] or device["mode"] != "auto":
                return None
            if action not in json.loads(device["supported_actions"] or "[]"):
                return None
            is_on, new_value = target_state(device, action, value)
            if bool(device["is_on"]) == is_on and device.get("value") == new_value:
                return None
            message = f"{device['name']} {action.replace('_', ' ')} by rule {rule['name']}"
            command_id = store.new_id()
            conn = store.connect()
            try:
                conn.execute(
                    "UPDATE devices SET is_on = ?, value = ?, source = ?, updated_at = ? WHERE id = ?",
                    (1 if is_on else 0, new_value, f"rule:{rule['id']}", now, device_id),
                )
                conn.execute(
                    "INSERT INTO commands (id, farm_id, target_type, target_id, cmd_type, action, parameters, status, "
                    "reason, executed_at, result, created_at) "
                    "VALUES (?, ?, 'device', ?, 'automation', ?, ?, 'EXECUTED', ?, ?, ?, ?)",
                    (command_id, device["farm_id"], device_id, action,
                     json.dumps({"value": value} if value is not None else {}), rule["name"], now,
                     json.dumps({"message": message, "rule_id": rule["id"]}), now),
                )
                conn.commit()
            finally:
                conn.close()
        return {"command_id": command_id, "device_id": device_id, "action": action, "value": new_value,
                "message": message}

    def create_command(self, user: Dict[str, Any], data: Dict[str, Any],
                       now: Optional[float] = None) -> Dict[str, Any]:
        target_type = str(data.get("target_type") or "").strip().lower()
        if target_type not in TARGET_TYPES:
            raise CommandError(f"target_type must be one of {', '.join(TARGET_TYPES)}")
        target_id = str(data.get("target_id") or "").strip()
        if not target_id:
            raise CommandError("target_id is required")
        cmd_type = str(data.get("cmd_type") or "override").strip().lower()
        if cmd_type not in ("override", "release"):
            raise CommandError("cmd_type must be override or release")
        action, value = _parse_action(data)
        parameters: Dict[str, Any] = {}
        if cmd_type == "override":
            if not action or action == "pulse":
                raise CommandError("a non-pulse action is required")
            number = validate_action_value(action, value)
            if number is not None:
                parameters["value"] = number
        else:
            action = "release"
        duration = _parse_duration(data.get("duration_sec"))
        if duration:
            parameters["duration"] = duration
        farm_id = resolve_target_farm(target_type, target_id)
        if not farm_id:
            raise CommandError(f"{target_type} not found", 404)
        now = time.time() if now is None else now
        command_id = store.new_id()
        store.execute(
            "INSERT INTO commands (id, farm_id, target_type, target_id, cmd_type, action, parameters, status, "
            "requested_by, reason, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, 'PENDING', ?, ?, ?)",
            (command_id, farm_id, target_type, target_id, cmd_type, action, json.dumps(parameters), user["id"],
             str(data.get("reason") or "").strip() or None, now),
        )
        store.log_event("automation", "info", "Scoped command queued",
                        {"command_id": command_id, "farm_id": farm_id, "target_type": target_type,
                         "target_id": target_id})
        row = store.fetch_one("SELECT * FROM commands WHERE id = ?", (command_id,))
        assert row is not None
        return public_command(row)

    def _devices_in_scope(self, command: Dict[str, Any]) -> List[Dict[str, Any]]:
        column = {"farm": "farm_id", "polyhouse": "polyhouse_id", "zone": "zone_id", "device": "id"}[
            command["target_type"]
        ]
        return store.fetch_all(
            DEVICE_SELECT + f" WHERE d.{column} = ? AND d.type != 'sensor' ORDER BY d.name",
            (command["target_id"],),
        )

    def process_pending_commands(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        pending = store.fetch_all("SELECT * FROM commands WHERE status = 'PENDING' ORDER BY created_at, rowid")
        for command in pending:
            user = auth.get_user(command["requested_by"] or "")
            parameters = json.loads(command["parameters"] or "{}")
            applied: List[str] = []
            skipped: List[str] = []
            errors: List[Dict[str, str]] = []
            if not user:
                errors.append({"device_id": "", "error": "requesting user not found"})
            else:
                for device in self._devices_in_scope(command):
                    supported = json.loads(device["supported_actions"] or "[]")
                    if command["cmd_type"] == "override" and command["action"] not in supported:
                        skipped.append(device["id"])
                        continue
                    payload = {
                        "cmd_type": command["cmd_type"],
                        "action": {"action": command["action"], "value": parameters.get("value")},
                        "duration_sec": parameters.get("duration"),
                        "reason": command.get("reason") or f"scoped command {command['id']}",
                    }
                    try:
                        self.execute(device["id"], user, payload, now)
                        applied.append(device["id"])
                    except (CommandError, CommandRejected) as exc:
                        errors.append({"device_id": device["id"], "error": str(exc)})
            status = "EXECUTED" if applied else "FAILED"
            result = {"applied": applied, "skipped": skipped, "errors": errors}
            error = None
            if status == "FAILED":
                error = "; ".join(e["error"] for e in errors) or "no device in scope supports this action"
            store.execute(
                "UPDATE commands SET status = ?, executed_at = ?, result = ?, error = ? WHERE id = ?",
                (status, now, json.dumps(result), error, command["id"]),
            )
            store.log_event("automation", "info" if status == "EXECUTED" else "warning",
                            f"Scoped command {status.lower()}",
                            {"command_id": command["id"], "farm_id": command["farm_id"], **result})
        return len(pending)


controller = DeviceController()
