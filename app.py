import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

import alerts
import auth
import automation
import devices
import farm
import onboarding
import settings
import store
import tasks
import telemetry
import users

BASE_DIR = Path(__file__).resolve().parent
CONFIG_DIR = BASE_DIR / "config"
PANEL_CONFIG_PATH = CONFIG_DIR / "panel.json"

DEFAULT_CONTROL = {
    "default_override_seconds": 1800,
    "max_override_seconds": 3600,
    "device_stale_seconds": settings.DEVICE_STALE_SECONDS,
}
DEFAULT_OTP = {
    "ttl_seconds": 600,
    "max_per_hour": 3,
    "max_attempts": 5,
}
DEFAULT_ALERTING = {
    "enabled": True,
    "evaluate_interval_seconds": settings.ALERT_LOOP_SECONDS,
}

SIMULATION_MODE = settings.SIMULATION_MODE
DISABLE_BACKGROUND_LOOPS = settings.DISABLE_BACKGROUND_LOOPS
NODE_TOKENS = settings.NODE_TOKENS
NODE_RATE_LIMIT_SECONDS = settings.NODE_RATE_LIMIT_SECONDS
NODE_LOCK = threading.Lock()
NODE_RATE_LIMIT: Dict[str, float] = {}
TREND_MAX_POINTS_DEFAULT = telemetry.TREND_MAX_POINTS_DEFAULT

app = Flask(__name__)


def _deep_merge_dict(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(base)
    for key, value in (updates or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge_dict(merged[key], value)
        else:
            merged[key] = value
    return merged


def _write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp_path, path)


def _load_json_or_none(path: Path) -> Optional[Any]:
    try:
        with path.open(encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return None


def load_panel_config() -> Dict[str, Any]:
    defaults: Dict[str, Any] = {
        "control": dict(DEFAULT_CONTROL),
        "otp": dict(DEFAULT_OTP),
        "alerting": dict(DEFAULT_ALERTING),
    }
    if PANEL_CONFIG_PATH.exists():
        data = _load_json_or_none(PANEL_CONFIG_PATH)
        if isinstance(data, dict):
            merged = dict(defaults)
            merged["control"] = _deep_merge_dict(defaults["control"], data.get("control") or {})
            merged["otp"] = _deep_merge_dict(defaults["otp"], data.get("otp") or {})
            merged["alerting"] = _deep_merge_dict(defaults["alerting"], data.get("alerting") or {})
            return merged
        return defaults
    _write_json_atomic(PANEL_CONFIG_PATH, defaults)
    return defaults


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def validate_control_payload(cfg: Dict[str, Any]) -> List[str]:
    errors: List[str] = []
    if not isinstance(cfg, dict):
        return ["control must be an object"]
    for key in ("default_override_seconds", "max_override_seconds", "device_stale_seconds"):
        if key in cfg and not _is_positive_int(cfg[key]):
            errors.append(f"{key} must be a positive integer")
    default = cfg.get("default_override_seconds", panel_config["control"]["default_override_seconds"])
    maximum = cfg.get("max_override_seconds", panel_config["control"]["max_override_seconds"])
    if _is_positive_int(default) and _is_positive_int(maximum) and default > maximum:
        errors.append("default_override_seconds cannot exceed max_override_seconds")
    return errors


def validate_otp_payload(cfg: Dict[str, Any]) -> List[str]:
    errors: List[str] = []
    if not isinstance(cfg, dict):
        return ["otp must be an object"]
    for key in ("ttl_seconds", "max_per_hour", "max_attempts"):
        if key in cfg and not _is_positive_int(cfg[key]):
            errors.append(f"{key} must be a positive integer")
    if _is_positive_int(cfg.get("ttl_seconds")) and cfg["ttl_seconds"] > 3600:
        errors.append("ttl_seconds must be at most 3600")
    return errors


def validate_alerting_payload(cfg: Dict[str, Any]) -> List[str]:
    errors: List[str] = []
    if not isinstance(cfg, dict):
        return ["alerting must be an object"]
    if "enabled" in cfg and not isinstance(cfg["enabled"], bool):
        errors.append("enabled must be a boolean")
    if "evaluate_interval_seconds" in cfg:
        value = cfg["evaluate_interval_seconds"]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 5:
            errors.append("evaluate_interval_seconds must be a number >= 5")
    return errors


def apply_panel_config(cfg: Dict[str, Any]) -> None:
    devices.configure_limits(cfg.get("control") or {})
    auth.configure_limits(cfg.get("otp") or {})


def save_panel_config_updates(control: Optional[Dict[str, Any]] = None, otp: Optional[Dict[str, Any]] = None,
                              alerting: Optional[Dict[str, Any]] = None) -> None:
    global panel_config
    current = dict(panel_config or load_panel_config())
    if control:
        current["control"] = _deep_merge_dict(current.get("control") or {}, control)
    if otp:
        current["otp"] = _deep_merge_dict(current.get("otp") or {}, otp)
    if alerting:
        current["alerting"] = _deep_merge_dict(current.get("alerting") or {}, alerting)
    _write_json_atomic(PANEL_CONFIG_PATH, current)
    panel_config = current
    apply_panel_config(current)


store.init_db()
panel_config = load_panel_config()
apply_panel_config(panel_config)


def _error(message: str, status: int, **extra: Any) -> Tuple[Response, int]:
    body: Dict[str, Any] = {"error": message}
    body.update(extra)
    return jsonify(body), status


@app.errorhandler(auth.AuthError)
@app.errorhandler(onboarding.OnboardingError)
@app.errorhandler(farm.FarmError)
@app.errorhandler(tasks.TaskError)
@app.errorhandler(alerts.AlertConfigError)
@app.errorhandler(automation.AutomationRuleError)
@app.errorhandler(devices.CommandError)
def handle_domain_error(exc: Exception) -> Any:
    status = int(getattr(exc, "status", 400))
    details = getattr(exc, "details", None)
    if details:
        return _error(str(exc), status, details=details)
    return _error(str(exc), status)


@app.errorhandler(HTTPException)
def handle_http_error(exc: HTTPException) -> Any:
    return _error(exc.description or exc.name, exc.code or 500)


@app.errorhandler(Exception)
def handle_unexpected_error(exc: Exception) -> Any:  # pragma: no cover - unexpected errors
    store.log_event("system", "error", f"Unhandled error: {exc}", {"path": request.path})
    return _error("Internal server error", 500)


def _payload() -> Dict[str, Any]:
    payload = request.get_json(force=True, silent=True)
    return payload if isinstance(payload, dict) else {}


def require_user(*roles: str) -> Tuple[Optional[Dict[str, Any]], Optional[Any]]:
    try:
        user = auth.authenticate(request.headers.get("Authorization"))
    except auth.AuthError as exc:
        return None, _error(str(exc), exc.status)
    if roles and user["role"] not in roles:
        return None, _error("Insufficient permissions", 403)
    return user, None


def _accessible_farm_ids(user: Dict[str, Any]) -> List[str]:
    return [f["id"] for f in farm.list_farms(user)]


def _parse_int_arg(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, min(value, maximum))


def _node_token_from_request() -> Optional[str]:
    token = request.headers.get("X-Node-Token") or request.headers.get("Authorization") or ""
    token = token.strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    return token or None


def _require_node_auth(node_id: str) -> Optional[Tuple[Response, int]]:
    if not NODE_TOKENS and SIMULATION_MODE:
        return None
    if not NODE_TOKENS:
        return jsonify({"error": "node_auth_not_configured"}), 403
    token = _node_token_from_request()
    if not token or NODE_TOKENS.get(node_id) != token:
        return jsonify({"error": "auth_failed"}), 403
    return None


def _rate_limit_node(node_id: str) -> bool:
    if NODE_RATE_LIMIT_SECONDS <= 0:
        return False
    now = time.time()
    with NODE_LOCK:
        last_ts = NODE_RATE_LIMIT.get(node_id, 0.0)
        if now - last_ts < NODE_RATE_LIMIT_SECONDS:
            return True
        NODE_RATE_LIMIT[node_id] = now
    return False


# Auth
@app.route("/api/auth/send-otp", methods=["POST"])
def api_send_otp() -> Any:
    payload = _payload()
    contact = str(payload.get("contact") or "").strip()
    if not contact:
        return _error("contact is required", 400)
    masked = auth.send_otp(contact)
    return jsonify({"ok": True, "message": "OTP sent", "masked_contact": masked})


@app.route("/api/auth/verify-otp", methods=["POST"])
def api_verify_otp() -> Any:
    payload = _payload()
    contact = str(payload.get("contact") or "").strip()
    otp = str(payload.get("otp") or "").strip()
    if not contact or not otp:
        return _error("contact and otp are required", 400)
    return jsonify(auth.login_with_otp(contact, otp))


@app.route("/api/auth/login", methods=["POST"])
def api_login() -> Any:
    payload = _payload()
    contact = str(payload.get("contact") or "").strip()
    password = str(payload.get("password") or "")
    if not contact or not password:
        return _error("contact and password are required", 400)
    return jsonify(auth.login_with_password(contact, password))


@app.route("/api/auth/register", methods=["POST"])
def api_register() -> Any:
    return jsonify(auth.register(_payload())), 201


@app.route("/api/auth/request-email-otp", methods=["POST"])
def api_request_email_otp() -> Any:
    auth.request_email_otp(str(_payload().get("email") or ""))
    return jsonify({"ok": True})


@app.route("/api/auth/verify-email-otp", methods=["POST"])
def api_verify_email_otp() -> Any:
    payload = _payload()
    return jsonify(auth.verify_email_otp(str(payload.get("email") or ""), str(payload.get("otp") or "")))


@app.route("/api/auth/me")
def api_me() -> Any:
    user, error = require_user()
    if error:
        return error
    return jsonify({"user": auth.public_user(user)})


@app.route("/api/auth/complete-onboarding", methods=["POST"])
def api_complete_onboarding() -> Any:
    user, error = require_user()
    if error:
        return error
    return jsonify({"ok": True, "user": auth.complete_onboarding(user["id"])})


# Onboarding
@app.route("/api/onboarding/invite/<token>")
def api_get_invite(token: str) -> Any:
    return jsonify({"invite": onboarding.get_invite(token)})


@app.route("/api/onboarding/invite/<token>/accept", methods=["POST"])
def api_accept_invite(token: str) -> Any:
    payload = _payload()
    result = onboarding.accept_invite(token, str(payload.get("name") or ""), str(payload.get("password") or ""))
    return jsonify(result), 201


@app.route("/api/onboarding/assets", methods=["GET", "POST"])
def api_assets() -> Any:
    user, error = require_user()
    if error:
        return error
    if request.method == "GET":
        return jsonify({"assets": onboarding.list_assets(user["id"])})
    created = onboarding.save_assets(user["id"], _payload().get("assets"))
    return jsonify({"assets": created}), 201


@app.route("/api/onboarding/invite-user", methods=["POST"])
def api_invite_user() -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    return jsonify({"invite": onboarding.invite_user(user, _payload())}), 201


@app.route("/api/onboarding/invites")
def api_list_invites() -> Any:
    user, error = require_user()
    if error:
        return error
    return jsonify({"invites": onboarding.list_invites(user["id"])})


# Farms
@app.route("/api/farms", methods=["GET", "POST"])
def api_farms() -> Any:
    if request.method == "GET":
        user, error = require_user()
        if error:
            return error
        return jsonify({"farms": farm.list_farms(user)})
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    return jsonify({"farm": farm.create_farm(user, _payload())}), 201


@app.route("/api/farms/<farm_id>/summary")
def api_farm_summary(farm_id: str) -> Any:
    user, error = require_user()
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    summary = farm.farm_summary(farm_id, tasks.count_overdue(farm_id), alerts.count_active(farm_id))
    return jsonify({"summary": summary})


@app.route("/api/farms/<farm_id>/latest-telemetry")
def api_latest_telemetry(farm_id: str) -> Any:
    user, error = require_user()
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    return jsonify({"telemetry": telemetry.latest_telemetry(farm_id)})


@app.route("/api/farms/<farm_id>/weather")
def api_weather(farm_id: str) -> Any:
    user, error = require_user()
    if error:
        return error
    record = farm.require_farm_access(user, farm_id)
    return jsonify({"weather": farm.get_weather(record)})


@app.route("/api/farms/<farm_id>/inventory/summary")
def api_inventory_summary(farm_id: str) -> Any:
    user, error = require_user()
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    return jsonify({"inventory": farm.inventory_summary(farm_id)})


@app.route("/api/farms/<farm_id>/tasks/summary")
def api_tasks_summary(farm_id: str) -> Any:
    user, error = require_user()
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    return jsonify({"tasks": tasks.tasks_summary(farm_id)})


@app.route("/api/farms/<farm_id>/alerts/summary")
def api_alerts_summary(farm_id: str) -> Any:
    user, error = require_user()
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    return jsonify({"alerts": alerts.alerts_summary(farm_id)})


@app.route("/api/farms/<farm_id>/polyhouses", methods=["GET", "POST"])
def api_polyhouses(farm_id: str) -> Any:
    roles = () if request.method == "GET" else auth.OPERATOR_ROLES
    user, error = require_user(*roles)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    if request.method == "GET":
        return jsonify({"polyhouses": farm.list_polyhouses(farm_id)})
    return jsonify({"polyhouse": farm.create_polyhouse(farm_id, _payload())}), 201


@app.route("/api/polyhouses/<polyhouse_id>/zones", methods=["POST"])
def api_create_zone(polyhouse_id: str) -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    polyhouse = farm.get_polyhouse(polyhouse_id)
    if not polyhouse:
        return _error("Polyhouse not found", 404)
    farm.require_farm_access(user, polyhouse["farm_id"])
    return jsonify({"zone": farm.create_zone(polyhouse_id, _payload())}), 201


@app.route("/api/farms/<farm_id>/zones")
def api_zones(farm_id: str) -> Any:
    user, error = require_user()
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    return jsonify({"zones": farm.list_zones(farm_id)})


@app.route("/api/farms/<farm_id>/zones/<zone_id>")
def api_zone_detail(farm_id: str, zone_id: str) -> Any:
    user, error = require_user()
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    return jsonify({"zone": farm.get_zone(farm_id, zone_id)})


@app.route("/api/farms/<farm_id>/reservoirs", methods=["GET", "POST"])
def api_reservoirs(farm_id: str) -> Any:
    roles = () if request.method == "GET" else auth.OPERATOR_ROLES
    user, error = require_user(*roles)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    if request.method == "GET":
        return jsonify({"reservoirs": farm.list_reservoirs(farm_id)})
    return jsonify({"reservoir": farm.create_reservoir(farm_id, _payload())}), 201


@app.route("/api/farms/<farm_id>/inventory", methods=["POST"])
def api_create_inventory_item(farm_id: str) -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    return jsonify({"item": farm.create_inventory_item(farm_id, _payload())}), 201


@app.route("/api/inventory/<item_id>/transactions", methods=["POST"])
def api_inventory_transaction(item_id: str) -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    item = farm.get_inventory_item(item_id)
    if not item:
        return _error("Inventory item not found", 404)
    farm.require_farm_access(user, item["farm_id"])
    return jsonify({"transaction": farm.add_transaction(item_id, _payload())}), 201


# Users
@app.route("/api/farms/<farm_id>/users", methods=["GET", "POST"])
def api_farm_users(farm_id: str) -> Any:
    roles = () if request.method == "GET" else auth.ADMIN_ROLES
    user, error = require_user(*roles)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    if request.method == "GET":
        return jsonify({"users": users.list_farm_users(farm_id)})
    return jsonify({"user": users.add_farm_user(farm_id, str(_payload().get("email") or ""))}), 201


@app.route("/api/farms/<farm_id>/users/<user_id>", methods=["DELETE"])
def api_remove_farm_user(farm_id: str, user_id: str) -> Any:
    user, error = require_user(*auth.ADMIN_ROLES)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    users.remove_farm_user(farm_id, user_id)
    return jsonify({"ok": True})


@app.route("/api/users/<user_id>", methods=["PATCH"])
def api_update_user(user_id: str) -> Any:
    user, error = require_user(*auth.ADMIN_ROLES)
    if error:
        return error
    return jsonify({"user": users.update_user(user, user_id, _payload())})


# Tasks
@app.route("/api/farms/<farm_id>/tasks", methods=["GET", "POST"])
def api_tasks(farm_id: str) -> Any:
    roles = () if request.method == "GET" else auth.OPERATOR_ROLES
    user, error = require_user(*roles)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    if request.method == "GET":
        return jsonify(tasks.board(farm_id))
    return jsonify({"task": tasks.create_task(farm_id, _payload())}), 201


def _task_or_error(user: Dict[str, Any], task_id: str) -> Tuple[Optional[Dict[str, Any]], Optional[Any]]:
    task = tasks.get_task(task_id)
    if not task:
        return None, _error("Task not found", 404)
    farm.require_farm_access(user, task["farm_id"])
    return task, None


@app.route("/api/tasks/<task_id>", methods=["PATCH", "DELETE"])
def api_task(task_id: str) -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    _task, error = _task_or_error(user, task_id)
    if error:
        return error
    if request.method == "DELETE":
        tasks.delete_task(task_id)
        return jsonify({"ok": True})
    return jsonify({"task": tasks.update_task(task_id, _payload())})


@app.route("/api/tasks/<task_id>/move", methods=["POST"])
def api_move_task(task_id: str) -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    _task, error = _task_or_error(user, task_id)
    if error:
        return error
    payload = _payload()
    return jsonify(tasks.move_task(task_id, str(payload.get("status") or ""), payload.get("index")))


# Sensors and telemetry
@app.route("/api/telemetry", methods=["POST"])
def api_telemetry() -> Any:
    payload = _payload()
    node_id = str(payload.get("node_id") or "").strip()
    if not node_id:
        return jsonify({"error": "node_id required"}), 400
    auth_error = _require_node_auth(node_id)
    if auth_error:
        return auth_error
    if _rate_limit_node(node_id):
        return jsonify({"error": "rate_limited"}), 429

    readings = payload.get("readings") or []
    if not isinstance(readings, list):
        return jsonify({"error": "readings must be list"}), 400
    device_ids = payload.get("devices") or []
    if not isinstance(device_ids, list):
        return jsonify({"error": "devices must be list"}), 400

    stored, errors = telemetry.ingest(readings)
    seen, unknown = devices.controller.heartbeat(device_ids)
    for device_id in unknown:
        errors.append({"device_id": device_id, "error": "unknown device"})
    if errors:
        store.log_event("node", "warning", "Telemetry errors", {"node_id": node_id, "errors": errors})

    status_code = 200
    if errors:
        status_code = 207 if stored > 0 or seen > 0 else 400
    return jsonify({"stored": stored, "devices_seen": seen, "errors": errors}), status_code


@app.route("/api/zones/<zone_id>/sensors", methods=["POST"])
def api_create_sensor(zone_id: str) -> Any:
    user, error = require_user(*auth.ADMIN_ROLES)
    if error:
        return error
    farm_id = farm.get_zone_farm_id(zone_id)
    if not farm_id:
        return _error("Zone not found", 404)
    farm.require_farm_access(user, farm_id)
    try:
        sensor = telemetry.create_sensor(zone_id, _payload())
    except ValueError as exc:
        return _error(str(exc), 400)
    return jsonify({"sensor": sensor}), 201


@app.route("/api/sensors/<sensor_id>/readings")
def api_sensor_readings(sensor_id: str) -> Any:
    user, error = require_user()
    if error:
        return error
    sensor = telemetry.get_sensor(sensor_id)
    if not sensor:
        return _error("Sensor not found", 404)
    farm.require_farm_access(user, sensor["farm_id"])
    try:
        hours = float(request.args.get("hours", "24"))
    except ValueError:
        return _error("hours must be a number", 400)
    hours = max(0.1, min(hours, 24 * 31))
    max_points = _parse_int_arg("max_points", TREND_MAX_POINTS_DEFAULT, 1, telemetry.TREND_MAX_POINTS_LIMIT)
    points = telemetry.sensor_readings(sensor_id, hours, max_points)
    return jsonify({
        "sensor_id": sensor_id,
        "type": sensor["type"],
        "unit": sensor["unit"],
        "points": points,
    })


# Alerts
@app.route("/api/farms/<farm_id>/alert-configs", methods=["GET", "POST"])
def api_alert_configs(farm_id: str) -> Any:
    roles = () if request.method == "GET" else auth.OPERATOR_ROLES
    user, error = require_user(*roles)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    if request.method == "GET":
        return jsonify({"configs": alerts.list_configs(farm_id)})
    return jsonify({"config": alerts.create_config(farm_id, _payload())}), 201


@app.route("/api/alert-configs/<config_id>", methods=["PATCH", "DELETE"])
def api_alert_config(config_id: str) -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    config = alerts.get_config(config_id)
    if not config:
        return _error("Alert config not found", 404)
    farm.require_farm_access(user, config["farm_id"])
    if request.method == "DELETE":
        alerts.delete_config(config_id)
        return jsonify({"ok": True})
    return jsonify({"config": alerts.update_config(config_id, _payload())})


@app.route("/api/farms/<farm_id>/alerts")
def api_alerts(farm_id: str) -> Any:
    user, error = require_user()
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    status = request.args.get("status")
    if status and status not in ("active", "acknowledged", "resolved"):
        return _error("status must be active, acknowledged or resolved", 400)
    limit = _parse_int_arg("limit", 100, 1, 500)
    return jsonify({"alerts": alerts.list_alerts(farm_id, status, limit)})


@app.route("/api/farms/<farm_id>/alerts/evaluate", methods=["POST"])
def api_evaluate_alerts(farm_id: str) -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    return jsonify({"fired": alerts.evaluate_farm(farm_id)})


def _alert_action(alert_id: str, resolve: bool) -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    farm_id = alerts.get_alert_farm_id(alert_id)
    if not farm_id:
        return _error("Alert not found", 404)
    farm.require_farm_access(user, farm_id)
    if resolve:
        return jsonify({"alert": alerts.resolve(alert_id, user["id"])})
    return jsonify({"alert": alerts.acknowledge(alert_id, user["id"])})


@app.route("/api/alerts/<alert_id>/acknowledge", methods=["POST"])
def api_acknowledge_alert(alert_id: str) -> Any:
    return _alert_action(alert_id, resolve=False)


@app.route("/api/alerts/<alert_id>/resolve", methods=["POST"])
def api_resolve_alert(alert_id: str) -> Any:
    return _alert_action(alert_id, resolve=True)


# Devices and manual control
@app.route("/api/devices", methods=["GET", "POST"])
def api_devices() -> Any:
    if request.method == "POST":
        user, error = require_user(*auth.ADMIN_ROLES)
        if error:
            return error
        payload = _payload()
        if payload.get("farm_id"):
            farm.require_farm_access(user, str(payload["farm_id"]))
        return jsonify({"device": devices.create_device(payload)}), 201
    user, error = require_user()
    if error:
        return error
    farm_id = request.args.get("farm_id")
    if farm_id:
        farm.require_farm_access(user, farm_id)
        farm_ids = [farm_id]
    else:
        farm_ids = _accessible_farm_ids(user)
    found = devices.list_devices(farm_ids, request.args.get("polyhouse_id"), request.args.get("zone_id"))
    return jsonify({"devices": found})


def _device_or_error(user: Dict[str, Any], device_id: str) -> Tuple[Optional[Dict[str, Any]], Optional[Any]]:
    device = devices.get_device(device_id)
    if not device:
        return None, _error("Device not found", 404)
    farm.require_farm_access(user, device["scope"]["farm_id"])
    return device, None


@app.route("/api/devices/<device_id>")
def api_device(device_id: str) -> Any:
    user, error = require_user()
    if error:
        return error
    device, error = _device_or_error(user, device_id)
    if error:
        return error
    return jsonify({"device": device})


@app.route("/api/devices/<device_id>/command", methods=["POST"])
def api_device_command(device_id: str) -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    _device, error = _device_or_error(user, device_id)
    if error:
        return error
    try:
        return jsonify(devices.controller.execute(device_id, user, _payload()))
    except devices.CommandRejected as exc:
        return jsonify({"status": "failure", "message": str(exc), "command_id": exc.command_id}), 403


@app.route("/api/devices/<device_id>/lock", methods=["POST"])
def api_device_lock(device_id: str) -> Any:
    user, error = require_user(*auth.ADMIN_ROLES)
    if error:
        return error
    _device, error = _device_or_error(user, device_id)
    if error:
        return error
    locked = _payload().get("locked", True)
    if not isinstance(locked, bool):
        return _error("locked must be a boolean", 400)
    return jsonify({"device": devices.controller.set_lock(device_id, user, locked)})


@app.route("/api/farms/<farm_id>/emergency-stop", methods=["POST"])
def api_emergency_stop(farm_id: str) -> Any:
    user, error = require_user(*auth.ADMIN_ROLES)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    return jsonify({"ok": True, **devices.controller.emergency_stop(farm_id, user)})


@app.route("/api/farms/<farm_id>/emergency-stop/clear", methods=["POST"])
def api_clear_emergency_stop(farm_id: str) -> Any:
    user, error = require_user(*auth.ADMIN_ROLES)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    return jsonify({"ok": True, **devices.controller.clear_emergency_stop(farm_id, user)})


@app.route("/api/commands", methods=["GET", "POST"])
def api_commands() -> Any:
    if request.method == "POST":
        user, error = require_user(*auth.OPERATOR_ROLES)
        if error:
            return error
        payload = _payload()
        target_type = str(payload.get("target_type") or "").strip().lower()
        target_farm = devices.resolve_target_farm(target_type, str(payload.get("target_id") or ""))
        if target_farm:
            farm.require_farm_access(user, target_farm)
        return jsonify({"command": devices.controller.create_command(user, payload)}), 201
    user, error = require_user()
    if error:
        return error
    farm_id = request.args.get("farm_id")
    if farm_id:
        farm.require_farm_access(user, farm_id)
        farm_ids = [farm_id]
    else:
        farm_ids = _accessible_farm_ids(user)
    limit = _parse_int_arg("limit", 100, 1, 500)
    return jsonify({"commands": devices.list_commands(farm_ids, request.args.get("status"), limit)})


@app.route("/api/automation/logs")
def api_automation_logs() -> Any:
    user, error = require_user()
    if error:
        return error
    farm_id = request.args.get("farm_id")
    if farm_id:
        farm.require_farm_access(user, farm_id)
        farm_ids = [farm_id]
    else:
        farm_ids = _accessible_farm_ids(user)
    limit = _parse_int_arg("limit", 100, 1, 500)
    offset = _parse_int_arg("offset", 0, 0, 1_000_000)
    level = request.args.get("level")
    result = store.list_events(["device", "automation"], level, request.args.get("device_id"), limit, offset,
                               farm_ids=farm_ids)
    return jsonify(result)


@app.route("/api/farms/<farm_id>/automation-rules", methods=["GET", "POST"])
def api_automation_rules(farm_id: str) -> Any:
    roles = () if request.method == "GET" else auth.OPERATOR_ROLES
    user, error = require_user(*roles)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    if request.method == "GET":
        return jsonify({"rules": automation.list_rules(farm_id)})
    return jsonify({"rule": automation.create_rule(farm_id, _payload())}), 201


@app.route("/api/automation-rules/<rule_id>", methods=["PATCH", "DELETE"])
def api_automation_rule(rule_id: str) -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    rule = automation.get_rule(rule_id)
    if not rule:
        return _error("Automation rule not found", 404)
    farm.require_farm_access(user, rule["farm_id"])
    if request.method == "DELETE":
        automation.delete_rule(rule_id)
        return jsonify({"ok": True})
    return jsonify({"rule": automation.update_rule(rule_id, _payload())})


@app.route("/api/farms/<farm_id>/automation/evaluate", methods=["POST"])
def api_evaluate_automation(farm_id: str) -> Any:
    user, error = require_user(*auth.OPERATOR_ROLES)
    if error:
        return error
    farm.require_farm_access(user, farm_id)
    return jsonify({"applied": automation.evaluate_farm(farm_id)})


# Config
@app.route("/api/config", methods=["GET", "POST"])
def api_config() -> Any:
    _user, error = require_user(*auth.ADMIN_ROLES)
    if error:
        return error
    if request.method == "GET":
        return jsonify({
            "control": dict(panel_config["control"]),
            "otp": dict(panel_config["otp"]),
            "alerting": dict(panel_config["alerting"]),
            "runtime": {
                "env": settings.APP_ENV,
                "simulation": SIMULATION_MODE,
                "node_auth": bool(NODE_TOKENS),
            },
        })
    payload = _payload()
    control = payload.get("control")
    otp = payload.get("otp")
    alerting = payload.get("alerting")
    if control is not None:
        errors = validate_control_payload(control)
        if errors:
            return jsonify({"error": "invalid control", "details": errors}), 400
    if otp is not None:
        errors = validate_otp_payload(otp)
        if errors:
            return jsonify({"error": "invalid otp", "details": errors}), 400
    if alerting is not None:
        errors = validate_alerting_payload(alerting)
        if errors:
            return jsonify({"error": "invalid alerting", "details": errors}), 400
    save_panel_config_updates(control=control, otp=otp, alerting=alerting)
    store.log_event("system", "info", "Panel config updated", {"sections": sorted(k for k in payload if payload[k])})
    return jsonify({"ok": True})


# Background loops
def override_loop() -> None:
    while True:
        try:
            devices.controller.expire_overrides()
        except Exception as exc:
            store.log_event("automation", "error", f"Override loop error: {exc}", None)
        time.sleep(settings.OVERRIDE_LOOP_SECONDS)


def device_health_loop() -> None:
    while True:
        try:
            devices.controller.mark_stale_offline(float(panel_config["control"]["device_stale_seconds"]))
        except Exception as exc:
            store.log_event("device", "error", f"Device health loop error: {exc}", None)
        time.sleep(30)


def command_loop() -> None:
    while True:
        try:
            devices.controller.process_pending_commands()
        except Exception as exc:
            store.log_event("automation", "error", f"Command loop error: {exc}", None)
        time.sleep(settings.COMMAND_LOOP_SECONDS)


def automation_loop() -> None:
    while True:
        try:
            automation.evaluate_all()
        except Exception as exc:
            store.log_event("automation", "error", f"Automation loop error: {exc}", None)
        time.sleep(settings.AUTOMATION_LOOP_SECONDS)


def alert_loop() -> None:
    while True:
        cfg = panel_config["alerting"]
        try:
            if cfg.get("enabled", True):
                alerts.evaluate_all()
        except Exception as exc:
            store.log_event("alert", "error", f"Alert loop error: {exc}", None)
        time.sleep(float(cfg.get("evaluate_interval_seconds") or 60))


if not DISABLE_BACKGROUND_LOOPS:
    threading.Thread(target=override_loop, daemon=True).start()
    threading.Thread(target=device_health_loop, daemon=True).start()
    threading.Thread(target=command_loop, daemon=True).start()
    threading.Thread(target=automation_loop, daemon=True).start()
    threading.Thread(target=alert_loop, daemon=True).start()


@app.route("/health")
def health() -> Any:
    return jsonify({"ok": True, "env": settings.APP_ENV, "simulation": SIMULATION_MODE})


def create_app() -> Flask:
    return app


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=SIMULATION_MODE)
