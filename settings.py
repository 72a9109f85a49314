import os
import secrets
from typing import Dict


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_node_tokens(raw: str) -> Dict[str, str]:
    tokens: Dict[str, str] = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item or ":" not in item:
            continue
        node_id, token = item.split(":", 1)
        node_id = node_id.strip()
        token = token.strip()
        if node_id and token:
            tokens[node_id] = token
    return tokens


APP_ENV = (os.getenv("APP_ENV") or "development").strip().lower()
IS_PRODUCTION = APP_ENV == "production"
SIMULATION_MODE = os.getenv("SIMULATION_MODE", "0") == "1"
DISABLE_BACKGROUND_LOOPS = os.getenv("DISABLE_BACKGROUND_LOOPS", "0") == "1"

JWT_SECRET = os.getenv("JWT_SECRET") or ""
if not JWT_SECRET:
    if IS_PRODUCTION:
        raise RuntimeError("JWT_SECRET must be set in production")
    JWT_SECRET = secrets.token_hex(32)
JWT_TTL_DAYS = _env_int("JWT_TTL_DAYS", 30)

OTP_SALT = os.getenv("OTP_SALT", "")
BYPASS_OTP = _env_bool("BYPASS_OTP") and not IS_PRODUCTION

TWILIO_SID = os.getenv("TWILIO_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")

FRONTEND_URL = (os.getenv("FRONTEND_URL") or "http://localhost:3000").rstrip("/")

NODE_TOKENS_RAW = os.getenv("NODE_TOKENS", "")
NODE_TOKENS = _parse_node_tokens(NODE_TOKENS_RAW)
NODE_RATE_LIMIT_SECONDS = _env_float("NODE_RATE_LIMIT_SECONDS", 0.2)
DEVICE_STALE_SECONDS = _env_int("DEVICE_STALE_SECONDS", 300)
OVERRIDE_LOOP_SECONDS = _env_float("OVERRIDE_LOOP_SECONDS", 5.0)
COMMAND_LOOP_SECONDS = _env_float("COMMAND_LOOP_SECONDS", 2.0)
ALERT_LOOP_SECONDS = _env_float("ALERT_LOOP_SECONDS", 60.0)
AUTOMATION_LOOP_SECONDS = _env_float("AUTOMATION_LOOP_SECONDS", 10.0)
