import json
import smtplib
import time
from typing import Any, Dict, List, Optional

import auth
import farm
import mailer
import sms
import store
import telemetry

SEVERITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
REPEAT_UNITS = {"minutes": 60, "hours": 3600, "days": 86400}
CHANNELS = ("EMAIL", "SMS", "WHATSAPP")
OPERATORS = {
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    "=": lambda a, b: a == b,
}
OPERATOR_ALIASES = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<=", "eq": "=", "==": "="}


class AlertConfigError(Exception):
    def __init__(self, message: str, status: int = 400, details: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.status = status
        self.details = details or []


def normalize_operator(raw: Any) -> Optional[str]:
    op = str(raw or "").strip().lower()
    op = OPERATOR_ALIASES.get(op, op)
    return op if op in OPERATORS else None


def validate_alert_config_payload(cfg: Dict[str, Any], partial: bool = False) -> List[str]:
    errors: List[str] = []
    if not partial or "name" in cfg:
        if not str(cfg.get("name") or "").strip():
            errors.append("name is required")
    if "severity" in cfg and str(cfg.get("severity") or "").upper() not in SEVERITIES:
        errors.append(f"severity must be one of {', '.join(SEVERITIES)}")
    if not partial or "repeats_in" in cfg:
        repeats_in = cfg.get("repeats_in")
        if isinstance(repeats_in, bool) or not isinstance(repeats_in, int) or repeats_in < 1:
            errors.append("repeats_in must be a positive integer")
    if not partial or "repeat_unit" in cfg:
        if str(cfg.get("repeat_unit") or "").lower() not in REPEAT_UNITS:
            errors.append("repeat_unit must be minutes, hours or days")
    if not partial or "conditions" in cfg:
        conditions = cfg.get("conditions")
        if not isinstance(conditions, list) or not conditions:
            errors.append("conditions must be a non-empty list")
        else:
            for idx, cond in enumerate(conditions):
                if not isinstance(cond, dict):
                    errors.append(f"conditions[{idx}] must be an object")
                    continue
                if cond.get("sensor") not in telemetry.SENSOR_TYPES:
                    errors.append(f"conditions[{idx}].sensor is not a known sensor type")
                if not normalize_operator(cond.get("operator")):
                    errors.append(f"conditions[{idx}].operator is not supported")
                value = cond.get("value")
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    errors.append(f"conditions[{idx}].value must be a number")
    if "channels" in cfg:
        channels = cfg.get("channels")
        if not isinstance(channels, list) or any(str(c).upper() not in CHANNELS for c in channels):
            errors.append(f"channels must be a list of {', '.join(CHANNELS)}")
    if "subscribers" in cfg and not isinstance(cfg.get("subscribers"), list):
        errors.append("subscribers must be a list of user ids")
    return errors


def _normalized_conditions(conditions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {"sensor": c["sensor"], "operator": normalize_operator(c["operator"]), "value": float(c["value"])}
        for c in conditions
    ]


def _check_subscribers(farm_id: str, user_ids: List[Any]) -> List[str]:
    cleaned: List[str] = []
    for user_id in user_ids:
        user = auth.get_user(str(user_id))
        if not user or not farm.has_access(user, farm_id):
            raise AlertConfigError(f"subscriber {user_id} has no access to this farm")
        if user["id"] not in cleaned:
            cleaned.append(user["id"])
    return cleaned


def public_config(row: Dict[str, Any]) -> Dict[str, Any]:
    subscribers = store.fetch_all(
        "SELECT user_id FROM alert_subscriptions WHERE alert_config_id = ? ORDER BY created_at", (row["id"],)
    )
    return {
        "id": row["id"],
        "farm_id": row["farm_id"],
        "name": row["name"],
        "severity": row["severity"],
        "repeats_in": row["repeats_in"],
        "repeat_unit": row["repeat_unit"],
        "is_active": bool(row["is_active"]),
        "conditions": json.loads(row["conditions"]),
        "channels": json.loads(row["channels"] or "[]"),
        "subscribers": [s["user_id"] for s in subscribers],
        "last_triggered": store.iso(row["last_triggered"]),
        "created_at": store.iso(row["created_at"]),
    }


def get_config(config_id: str) -> Optional[Dict[str, Any]]:
    return store.fetch_one("SELECT * FROM alert_configs WHERE id = ?", (config_id,))


def list_configs(farm_id: str) -> List[Dict[str, Any]]:
    rows = store.fetch_all("SELECT * FROM alert_configs WHERE farm_id = ? ORDER BY created_at, rowid", (farm_id,))
    return [public_config(row) for row in rows]


def _replace_subscribers(conn: Any, config_id: str, user_ids: List[str], now: float) -> None:
    conn.execute("DELETE FROM alert_subscriptions WHERE alert_config_id = ?", (config_id,))
    for user_id in user_ids:
        conn.execute(
            "INSERT INTO alert_subscriptions (id, alert_config_id, user_id, created_at) VALUES (?, ?, ?, ?)",
            (store.new_id(), config_id, user_id, now),
        )


def create_config(farm_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    errors = validate_alert_config_payload(data)
    if errors:
        raise AlertConfigError("invalid alert config", details=errors)
    subscribers = _check_subscribers(farm_id, data.get("subscribers") or [])
    now = time.time()
    config_id = store.new_id()
    conn = store.connect()
    try:
        conn.execute(
            "INSERT INTO alert_configs (id, name, farm_id, severity, repeats_in, repeat_unit, is_active, conditions, "
            "channels, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                config_id,
                str(data["name"]).strip(),
                farm_id,
                str(data.get("severity") or "MEDIUM").upper(),
                int(data["repeats_in"]),
                str(data["repeat_unit"]).lower(),
                0 if data.get("is_active") is False else 1,
                json.dumps(_normalized_conditions(data["conditions"])),
                json.dumps([str(c).upper() for c in data.get("channels") or ["EMAIL"]]),
                now,
                now,
            ),
        )
        _replace_subscribers(conn, config_id, subscribers, now)
        conn.commit()
    finally:
        conn.close()
    store.log_event("alert", "info", "Alert config created", {"config_id": config_id, "farm_id": farm_id})
    row = get_config(config_id)
    assert row is not None
    return public_config(row)


def update_config(config_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    row = get_config(config_id)
    if not row:
        raise AlertConfigError("Alert config not found", 404)
    errors = validate_alert_config_payload(data, partial=True)
    if errors:
        raise AlertConfigError("invalid alert config", details=errors)
    fields: Dict[str, Any] = {}
    if "name" in data:
        fields["name"] = str(data["name"]).strip()
    if "severity" in data:
        fields["severity"] = str(data["severity"]).upper()
    if "repeats_in" in data:
        fields["repeats_in"] = int(data["repeats_in"])
    if "repeat_unit" in data:
        fields["repeat_unit"] = str(data["repeat_unit"]).lower()
    if "is_active" in data:
        fields["is_active"] = 1 if data["is_active"] else 0
    if "conditions" in data:
        fields["conditions"] = json.dumps(_normalized_conditions(data["conditions"]))
    if "channels" in data:
        fields["channels"] = json.dumps([str(c).upper() for c in data["channels"]])
    subscribers = None
    if "subscribers" in data:
        subscribers = _check_subscribers(row["farm_id"], data["subscribers"])
    now = time.time()
    conn = store.connect()
    try:
        if fields:
            assignments = ", ".join(f"{key} = ?" for key in fields)
            conn.execute(
                f"UPDATE alert_configs SET {assignments}, updated_at = ? WHERE id = ?",
                list(fields.values()) + [now, config_id],
            )
        if subscribers is not None:
            _replace_subscribers(conn, config_id, subscribers, now)
        conn.commit()
    finally:
        conn.close()
    updated = get_config(config_id)
    assert updated is not None
    return public_config(updated)


def delete_config(config_id: str) -> None:
    if store.execute("DELETE FROM alert_configs WHERE id = ?", (config_id,)) == 0:
        raise AlertConfigError("Alert config not found", 404)


def conditions_met(conditions: List[Dict[str, Any]], readings: Dict[str, Dict[str, Any]]) -> bool:
    if not conditions:
        return False
    for cond in conditions:
        reading = readings.get(cond.get("sensor"))
        op = normalize_operator(cond.get("operator"))
        if reading is None or reading.get("value") is None or op is None:
            return False
        if not OPERATORS[op](float(reading["value"]), float(cond["value"])):
            return False
    return True


def _describe(conditions: List[Dict[str, Any]], readings: Dict[str, Dict[str, Any]]) -> str:
    parts = []
    for cond in conditions:
        reading = readings.get(cond["sensor"]) or {}
        unit = reading.get("unit") or ""
        parts.append(f"{cond['sensor']} {reading.get('value')}{unit} {cond['operator']} {cond['value']}{unit}")
    return "; ".join(parts)


def notify_subscribers(config: Dict[str, Any], title: str, message: str) -> Dict[str, int]:
    """Deliver an alert to every subscriber; failures are logged and counted."""
    counts = {"sent": 0, "failed": 0, "skipped": 0}
    channels = json.loads(config.get("channels") or "[]")
    subscribers = store.fetch_all(
        "SELECT u.* FROM users u JOIN alert_subscriptions s ON s.user_id = u.id "
        "WHERE s.alert_config_id = ? AND u.is_active = 1",
        (config["id"],),
    )
    for user in subscribers:
        for channel in channels:
            if channel == "EMAIL" and user.get("email"):
                try:
                    mailer.send_alert_email(user["email"], title, message)
                    counts["sent"] += 1
                except (mailer.MailerConfigError, smtplib.SMTPException, OSError) as exc:
                    counts["failed"] += 1
                    store.log_event("alert", "error", "Alert email failed",
                                    {"config_id": config["id"], "user_id": user["id"], "error": type(exc).__name__})
            elif channel == "SMS" and user.get("mobile"):
                ok, error = sms.send_sms(user["mobile"], f"[HydroBloom] {title}: {message}")
                if ok:
                    counts["sent"] += 1
                else:
                    counts["failed"] += 1
                    store.log_event("alert", "error", "Alert SMS failed",
                                    {"config_id": config["id"], "user_id": user["id"], "error": error})
            elif channel == "WHATSAPP":
                counts["skipped"] += 1
                store.log_event("alert", "warning", "WhatsApp delivery is not supported",
                                {"config_id": config["id"], "user_id": user["id"]})
            else:
                counts["skipped"] += 1
    return counts


def evaluate_farm(farm_id: str, now: Optional[float] = None) -> List[Dict[str, Any]]:
    now = time.time() if now is None else now
    readings = telemetry.latest_telemetry(farm_id)
    configs = store.fetch_all("SELECT * FROM alert_configs WHERE farm_id = ? AND is_active = 1", (farm_id,))
    fired: List[Dict[str, Any]] = []
    for config in configs:
        interval = int(config["repeats_in"]) * REPEAT_UNITS.get(config["repeat_unit"], 60)
        if config["last_triggered"] is not None and now - float(config["last_triggered"]) < interval:
            continue
        conditions = json.loads(config["conditions"])
        if not conditions_met(conditions, readings):
            continue
        alert_id = store.new_id()
        message = _describe(conditions, readings)
        conn = store.connect()
        try:
            conn.execute(
                "INSERT INTO alerts (id, config_id, farm_id, severity, title, message, source, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, 'alert-config', ?)",
                (alert_id, config["id"], farm_id, config["severity"], config["name"], message, now),
            )
            conn.execute("UPDATE alert_configs SET last_triggered = ? WHERE id = ?", (now, config["id"]))
            conn.commit()
        finally:
            conn.close()
        store.log_event("alert", "warning", f"Alert fired: {config['name']}",
                        {"alert_id": alert_id, "config_id": config["id"], "farm_id": farm_id})
        counts = notify_subscribers(config, config["name"], message)
        alert = get_alert(alert_id)
        assert alert is not None
        alert["notifications"] = counts
        fired.append(alert)
    return fired


def evaluate_all(now: Optional[float] = None) -> int:
    fired = 0
    for row in store.fetch_all("SELECT id FROM farms WHERE is_active = 1"):
        fired += len(evaluate_farm(row["id"], now))
    return fired


def public_alert(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "config_id": row.get("config_id"),
        "farm_id": row["farm_id"],
        "severity": row["severity"],
        "title": row["title"],
        "message": row["message"],
        "source": row.get("source"),
        "is_acknowledged": bool(row["is_acknowledged"]),
        "acknowledged_by": row.get("acknowledged_by"),
        "acknowledged_at": store.iso(row.get("acknowledged_at")),
        "is_resolved": bool(row["is_resolved"]),
        "resolved_at": store.iso(row.get("resolved_at")),
        "created_at": store.iso(row["created_at"]),
    }


def get_alert(alert_id: str) -> Optional[Dict[str, Any]]:
    row = store.fetch_one("SELECT * FROM alerts WHERE id = ?", (alert_id,))
    return public_alert(row) if row else None


def get_alert_farm_id(alert_id: str) -> Optional[str]:
    row = store.fetch_one("SELECT farm_id FROM alerts WHERE id = ?", (alert_id,))
    return row["farm_id"] if row else None


def list_alerts(farm_id: str, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    clauses = ["farm_id = ?"]
    if status == "active":
        clauses.append("is_acknowledged = 0 AND is_resolved = 0")
    elif status == "acknowledged":
        clauses.append("is_acknowledged = 1 AND is_resolved = 0")
    elif status == "resolved":
        clauses.append("is_resolved = 1")
    rows = store.fetch_all(
        f"SELECT * FROM alerts WHERE {' AND '.join(clauses)} ORDER BY created_at DESC LIMIT ?",
        (farm_id, limit),
    )
    return [public_alert(row) for row in rows]


def acknowledge(alert_id: str, user_id: str) -> Dict[str, Any]:
    updated = store.execute(
        "UPDATE alerts SET is_acknowledged = 1, acknowledged_by = ?, acknowledged_at = ? "
        "WHERE id = ? AND is_acknowledged = 0",
        (user_id, time.time(), alert_id),
    )
    alert = get_alert(alert_id)
    if not alert:
        raise AlertConfigError("Alert not found", 404)
    if updated:
        store.log_event("alert", "info", "Alert acknowledged", {"alert_id": alert_id, "user_id": user_id})
    return alert


def resolve(alert_id: str, user_id: str) -> Dict[str, Any]:
    updated = store.execute(
        "UPDATE alerts SET is_resolved = 1, resolved_at = ? WHERE id = ? AND is_resolved = 0",
        (time.time(), alert_id),
    )
    alert = get_alert(alert_id)
    if not alert:
        raise AlertConfigError("Alert not found", 404)
    if updated:
        store.log_event("alert", "info", "Alert resolved", {"alert_id": alert_id, "user_id": user_id})
    return alert


def count_active(farm_id: str) -> int:
    row = store.fetch_one(
        "SELECT COUNT(*) AS n FROM alerts WHERE farm_id = ? AND is_acknowledged = 0 AND is_resolved = 0",
        (farm_id,),
    )
    return int(row["n"]) if row else 0


def alerts_summary(farm_id: str) -> Dict[str, Any]:
    by_severity = {severity: 0 for severity in SEVERITIES}
    for row in store.fetch_all(
        "SELECT severity, COUNT(*) AS n FROM alerts WHERE farm_id = ? AND is_acknowledged = 0 AND is_resolved = 0 "
        "GROUP BY severity",
        (farm_id,),
    ):
        by_severity[row["severity"]] = int(row["n"])
    totals = store.fetch_one(
        "SELECT COUNT(*) AS total, COALESCE(SUM(is_acknowledged), 0) AS acknowledged, "
        "COALESCE(SUM(is_resolved), 0) AS resolved FROM alerts WHERE farm_id = ?",
        (farm_id,),
    ) or {"total": 0, "acknowledged": 0, "resolved": 0}
    return {
        "active": sum(by_severity.values()),
        "by_severity": by_severity,
        "total": int(totals["total"]),
        "acknowledged": int(totals["acknowledged"]),
        "resolved": int(totals["resolved"]),
        "recent": list_alerts(farm_id, "active", limit=5),
    }
