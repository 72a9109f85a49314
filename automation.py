import json
import math
import time
from typing import Any, Dict, List, Optional, Set

import alerts
import devices
import store
import telemetry


class AutomationRuleError(Exception):
    def __init__(self, message: str, status: int = 400, details: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.status = status
        self.details = details or []


def _is_number(value: Any) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float)) and math.isfinite(value)


def _check_action(device: Dict[str, Any], action: Any, value: Any, field: str) -> List[str]:
    action = str(action or "").strip().lower()
    if action == "pulse":
        return [f"{field} cannot be pulse"]
    if action not in json.loads(device["supported_actions"] or "[]"):
        return [f"{field} is not supported by {device['name']}"]
    try:
        devices.validate_action_value(action, value)
    except devices.CommandError as exc:
        return [f"{field}: {exc}"]
    return []


def validate_rule_payload(farm_id: str, data: Dict[str, Any],
                          current: Optional[Dict[str, Any]] = None) -> List[str]:
    """Collect every problem with a rule payload; `current` marks a partial update."""
    partial = current is not None
    errors: List[str] = []
    if not partial or "name" in data:
        if not str(data.get("name") or "").strip():
            errors.append("name is required")
    if not partial or "sensor" in data:
        if data.get("sensor") not in telemetry.SENSOR_TYPES:
            errors.append("sensor is not a known sensor type")
    if not partial or "operator" in data:
        if not alerts.normalize_operator(data.get("operator")):
            errors.append("operator is not supported")
    if not partial or "threshold" in data:
        if not _is_number(data.get("threshold")):
            errors.append("threshold must be a number")
    if "priority" in data and (isinstance(data["priority"], bool) or not isinstance(data["priority"], int)):
        errors.append("priority must be an integer")
    if "is_active" in data and not isinstance(data["is_active"], bool):
        errors.append("is_active must be a boolean")
    if "zone_id" in data and data["zone_id"]:
        zone = store.fetch_one(
            "SELECT p.farm_id FROM zones z JOIN polyhouses p ON p.id = z.polyhouse_id WHERE z.id = ?",
            (data["zone_id"],),
        )
        if not zone or zone["farm_id"] != farm_id:
            errors.append("zone_id does not belong to this farm")

    device_id = data.get("device_id") if "device_id" in data else (current or {}).get("device_id")
    if not device_id:
        errors.append("device_id is required")
        return errors
    device = store.fetch_one("SELECT * FROM devices WHERE id = ?", (device_id,))
    if not device or device["farm_id"] != farm_id:
        errors.append("device_id does not belong to this farm")
        return errors
    if device["type"] == "sensor":
        errors.append("device_id must be an actuator")
        return errors
    if not partial or {"device_id", "action", "value"} & set(data):
        action = data.get("action", (current or {}).get("action"))
        value = data.get("value", (current or {}).get("value"))
        errors.extend(_check_action(device, action, value, "action"))
    if {"device_id", "else_action", "else_value"} & set(data):
        else_action = data.get("else_action", (current or {}).get("else_action"))
        if else_action:
            else_value = data.get("else_value", (current or {}).get("else_value"))
            errors.extend(_check_action(device, else_action, else_value, "else_action"))
    return errors


def public_rule(row: Dict[str, Any]) -> Dict[str, Any]:
    otherwise = None
    if row.get("else_action"):
        otherwise = {"action": row["else_action"], "value": row.get("else_value")}
    return {
        "id": row["id"],
        "farm_id": row["farm_id"],
        "zone_id": row.get("zone_id"),
        "name": row["name"],
        "is_active": bool(row["is_active"]),
        "priority": row["priority"],
        "condition": {"sensor": row["sensor_type"], "operator": row["operator"], "threshold": row["threshold"]},
        "device_id": row["device_id"],
        "action": {"action": row["action"], "value": row.get("value")},
        "else_action": otherwise,
        "last_triggered": store.iso(row.get("last_triggered")),
        "created_at": store.iso(row["created_at"]),
    }


def get_rule(rule_id: str) -> Optional[Dict[str, Any]]:
    return store.fetch_one("SELECT * FROM automation_rules WHERE id = ?", (rule_id,))


def list_rules(farm_id: str) -> List[Dict[str, Any]]:
    rows = store.fetch_all(
        "SELECT * FROM automation_rules WHERE farm_id = ? ORDER BY priority DESC, created_at, rowid", (farm_id,)
    )
    return [public_rule(row) for row in rows]


def _action_value(action: Any, value: Any) -> Optional[float]:
    params = devices.ACTION_PARAMS.get(str(action or "").strip().lower())
    if params is None or value is None:
        return None
    return float(value)


def create_rule(farm_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    errors = validate_rule_payload(farm_id, data)
    if errors:
        raise AutomationRuleError("invalid automation rule", details=errors)
    now = time.time()
    rule_id = store.new_id()
    action = str(data["action"]).strip().lower()
    else_action = str(data.get("else_action") or "").strip().lower() or None
    store.execute(
        "INSERT INTO automation_rules (id, farm_id, zone_id, name, is_active, priority, sensor_type, operator, "
        "threshold, device_id, action, value, else_action, else_value, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            rule_id,
            farm_id,
            data.get("zone_id") or None,
            str(data["name"]).strip(),
            0 if data.get("is_active") is False else 1,
            int(data.get("priority") or 0),
            data["sensor"],
            alerts.normalize_operator(data["operator"]),
            float(data["threshold"]),
            data["device_id"],
            action,
            _action_value(action, data.get("value")),
            else_action,
            _action_value(else_action, data.get("else_value")),
            now,
            now,
        ),
    )
    store.log_event("automation", "info", "Automation rule created",
                    {"rule_id": rule_id, "farm_id": farm_id, "device_id": data["device_id"]})
    row = get_rule(rule_id)
    assert row is not None
    return public_rule(row)


def update_rule(rule_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    row = get_rule(rule_id)
    if not row:
        raise AutomationRuleError("Automation rule not found", 404)
    errors = validate_rule_payload(row["farm_id"], data, current=row)
    if errors:
        raise AutomationRuleError("invalid automation rule", details=errors)
    fields: Dict[str, Any] = {}
    if "name" in data:
        fields["name"] = str(data["name"]).strip()
    if "is_active" in data:
        fields["is_active"] = 1 if data["is_active"] else 0
    if "priority" in data:
        fields["priority"] = int(data["priority"])
    if "zone_id" in data:
        fields["zone_id"] = data["zone_id"] or None
    if "sensor" in data:
        fields["sensor_type"] = data["sensor"]
    if "operator" in data:
        fields["operator"] = alerts.normalize_operator(data["operator"])
    if "threshold" in data:
        fields["threshold"] = float(data["threshold"])
    if "device_id" in data:
        fields["device_id"] = data["device_id"]
    if "action" in data or "value" in data:
        action = str(data.get("action", row["action"])).strip().lower()
        fields["action"] = action
        fields["value"] = _action_value(action, data.get("value", row.get("value")))
    if "else_action" in data or "else_value" in data:
        else_action = str(data.get("else_action", row.get("else_action")) or "").strip().lower() or None
        fields["else_action"] = else_action
        fields["else_value"] = _action_value(else_action, data.get("else_value", row.get("else_value")))
    if not fields:
        raise AutomationRuleError("Nothing to update")
    assignments = ", ".join(f"{key} = ?" for key in fields)
    store.execute(
        f"UPDATE automation_rules SET {assignments}, updated_at = ? WHERE id = ?",
        list(fields.values()) + [time.time(), rule_id],
    )
    updated = get_rule(rule_id)
    assert updated is not None
    return public_rule(updated)


def delete_rule(rule_id: str) -> None:
    row = get_rule(rule_id)
    if not row:
        raise AutomationRuleError("Automation rule not found", 404)
    store.execute("DELETE FROM automation_rules WHERE id = ?", (rule_id,))
    store.log_event("automation", "info", "Automation rule deleted", {"rule_id": rule_id, "farm_id": row["farm_id"]})


def evaluate_farm(farm_id: str, now: Optional[float] = None) -> List[Dict[str, Any]]:
    """Run active rules by priority; the first rule to decide a device wins for this pass."""
    now = time.time() if now is None else now
    rules = store.fetch_all(
        "SELECT * FROM automation_rules WHERE farm_id = ? AND is_active = 1 ORDER BY priority DESC, created_at, rowid",
        (farm_id,),
    )
    readings: Dict[Optional[str], Dict[str, Dict[str, Any]]] = {}
    claimed: Set[str] = set()
    applied: List[Dict[str, Any]] = []
    for rule in rules:
        if rule["device_id"] in claimed:
            continue
        zone_id = rule.get("zone_id")
        if zone_id not in readings:
            readings[zone_id] = telemetry.latest_telemetry(farm_id, zone_id)
        reading = readings[zone_id].get(rule["sensor_type"])
        if reading is None or reading.get("value") is None:
            continue
        op = alerts.OPERATORS.get(rule["operator"])
        if op is None:
            continue
        if op(float(reading["value"]), float(rule["threshold"])):
            action, value = rule["action"], rule.get("value")
        elif rule.get("else_action"):
            action, value = rule["else_action"], rule.get("else_value")
        else:
            continue
        claimed.add(rule["device_id"])
        result = devices.controller.apply_automation(rule["device_id"], action, value, rule, now)
        if result is None:
            continue
        store.execute("UPDATE automation_rules SET last_triggered = ? WHERE id = ?", (now, rule["id"]))
        store.log_event("automation", "info", result["message"], {
            "rule_id": rule["id"],
            "farm_id": farm_id,
            "device_id": rule["device_id"],
            "command_id": result["command_id"],
            "reading": reading["value"],
        })
        applied.append({**result, "rule_id": rule["id"]})
    return applied


def evaluate_all(now: Optional[float] = None) -> int:
    applied = 0
    for row in store.fetch_all("SELECT DISTINCT farm_id FROM automation_rules WHERE is_active = 1"):
        applied += len(evaluate_farm(row["farm_id"], now))
    return applied
