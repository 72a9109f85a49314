import hashlib
import hmac
import re
import secrets
import smtplib
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt
from werkzeug.security import check_password_hash, generate_password_hash

import mailer
import settings
import sms
import store

ROLES = ("OWNER", "ADMIN", "FARM_MANAGER", "VIEWER")
ADMIN_ROLES = ("OWNER", "ADMIN")
OPERATOR_ROLES = ("OWNER", "ADMIN", "FARM_MANAGER")
LANGUAGES = ("en", "hi")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")
MOBILE_STRIP_RE = re.compile(r"[\s\-\.\(\)]")

OTP_LIMITS: Dict[str, int] = {
    "ttl_seconds": 600,
    "max_per_hour": 3,
    "max_attempts": 5,
}


class AuthError(Exception):
    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


class OtpRateLimited(AuthError):
    def __init__(self, message: str = "Too many OTP requests. Try again later.") -> None:
        super().__init__(message, 429)


def configure_limits(cfg: Dict[str, Any]) -> None:
    for key in OTP_LIMITS:
        if key in (cfg or {}):
            OTP_LIMITS[key] = int(cfg[key])


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_RE.match((value or "").strip()))


def normalize_mobile(raw: str) -> Optional[str]:
    value = MOBILE_STRIP_RE.sub("", (raw or "").strip())
    if value.startswith("00"):
        value = "+" + value[2:]
    if not E164_RE.match(value):
        return None
    return value


def parse_contact(contact: str) -> Tuple[str, str]:
    """Return ("email" | "mobile", normalized contact)."""
    contact = (contact or "").strip()
    if "@" in contact:
        if not is_valid_email(contact):
            raise AuthError("Invalid email or mobile number")
        return "email", contact.lower()
    mobile = normalize_mobile(contact)
    if not mobile:
        raise AuthError("Invalid email or mobile number")
    return "mobile", mobile


def mask_contact(contact: str) -> str:
    if "@" in contact:
        local, domain = contact.split("@", 1)
        if len(local) <= 2:
            return f"{local[:1]}*@{domain}"
        return f"{local[0]}{'*' * (len(local) - 2)}{local[-1]}@{domain}"
    if len(contact) <= 6:
        return "****"
    return f"{contact[:-6]}****{contact[-2:]}"


def _hash_otp(otp: str) -> str:
    return hashlib.sha256((otp + settings.OTP_SALT).encode("utf-8")).hexdigest()


def generate_otp() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def _deliver_otp(kind: str, contact: str, otp: str) -> None:
    if settings.BYPASS_OTP:
        print(f"[auth] OTP for {contact}: {otp}")
        return
    if kind == "email":
        try:
            mailer.send_otp_email(contact, otp)
        except mailer.MailerConfigError:
            if settings.IS_PRODUCTION:
                raise AuthError("Email delivery is not configured", 500)
            print(f"[auth] mail not configured, OTP for {contact}: {otp}")
        except (smtplib.SMTPException, OSError) as exc:
            store.log_event("mail", "error", "OTP email failed", {"error": type(exc).__name__})
            raise AuthError("Failed to send OTP", 500)
        return
    if not sms.is_configured():
        if settings.IS_PRODUCTION:
            raise AuthError("SMS delivery is not configured", 500)
        print(f"[auth] SMS not configured, OTP for {contact}: {otp}")
        return
    ok, error = sms.send_sms(contact, f"Your HydroBloom code is {otp}. It expires in 10 minutes.")
    if not ok:
        store.log_event("auth", "error", "OTP SMS failed", {"error": error})
        raise AuthError("Failed to send OTP", 500)


def send_otp(contact: str) -> str:
    kind, contact = parse_contact(contact)
    now = time.time()
    recent = store.fetch_one(
        "SELECT COUNT(*) AS n FROM otp_logs WHERE contact = ? AND sent_at > ?",
        (contact, now - 3600),
    )
    if recent and recent["n"] >= OTP_LIMITS["max_per_hour"]:
        raise OtpRateLimited()
    otp = generate_otp()
    _deliver_otp(kind, contact, otp)
    conn = store.connect()
    try:
        conn.execute(
            "UPDATE otp_logs SET used_at = ? WHERE contact = ? AND used_at IS NULL AND expires_at > ?",
            (now, contact, now),
        )
        conn.execute(
            "INSERT INTO otp_logs (id, contact, otp_hash, expires_at, attempts, sent_at) VALUES (?, ?, ?, ?, 0, ?)",
            (store.new_id(), contact, _hash_otp(otp), now + OTP_LIMITS["ttl_seconds"], now),
        )
        conn.commit()
    finally:
        conn.close()
    store.log_event("auth", "info", "OTP sent", {"contact": mask_contact(contact), "channel": kind})
    return mask_contact(contact)


def verify_otp(contact: str, otp: str) -> None:
    _kind, contact = parse_contact(contact)
    now = time.time()
    record = store.fetch_one(
        "SELECT * FROM otp_logs WHERE contact = ? AND used_at IS NULL AND expires_at > ? "
        "ORDER BY sent_at DESC LIMIT 1",
        (contact, now),
    )
    if not record:
        raise AuthError("Invalid or expired OTP")
    if record["attempts"] >= OTP_LIMITS["max_attempts"]:
        raise AuthError("Too many failed attempts. Request a new code.")
    if not hmac.compare_digest(record["otp_hash"], _hash_otp(str(otp or "").strip())):
        store.execute("UPDATE otp_logs SET attempts = attempts + 1 WHERE id = ?", (record["id"],))
        raise AuthError("Invalid or expired OTP")
    store.execute("UPDATE otp_logs SET used_at = ? WHERE id = ?", (now, record["id"]))


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def issue_token(user_id: str) -> str:
    payload = {
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(days=settings.JWT_TTL_DAYS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "name": user["name"],
        "email": user.get("email"),
        "mobile": user.get("mobile"),
        "role": user["role"],
        "language_pref": user.get("language_pref") or "en",
        "is_active": bool(user.get("is_active", 1)),
        "onboarding_completed": bool(user.get("onboarding_completed")),
        "email_verified": bool(user.get("email_verified")),
        "mobile_verified": bool(user.get("mobile_verified")),
        "created_at": store.iso(user.get("created_at")),
    }


def _session(user: Dict[str, Any], first_time: bool) -> Dict[str, Any]:
    return {"token": issue_token(user["id"]), "user": public_user(user), "first_time": first_time}


def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    return store.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))


def find_user_by_contact(contact: str) -> Optional[Dict[str, Any]]:
    try:
        kind, contact = parse_contact(contact)
    except AuthError:
        return None
    return store.fetch_one(f"SELECT * FROM users WHERE {kind} = ?", (contact,))


def create_user(
    name: str,
    email: Optional[str] = None,
    mobile: Optional[str] = None,
    role: str = "FARM_MANAGER",
    password: Optional[str] = None,
    **fields: Any,
) -> Dict[str, Any]:
    now = time.time()
    user_id = store.new_id()
    conn = store.connect()
    try:
        conn.execute(
            """
            INSERT INTO users (
                id, email, mobile, name, role, language_pref, password_hash, onboarding_completed,
                location_lat, location_lng, location_place_id, address, email_verified, mobile_verified,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                email,
                mobile,
                name,
                role,
                fields.get("language_pref") or "en",
                hash_password(password) if password else None,
                1 if fields.get("onboarding_completed") else 0,
                fields.get("location_lat"),
                fields.get("location_lng"),
                fields.get("location_place_id"),
                fields.get("address"),
                1 if fields.get("email_verified") else 0,
                1 if fields.get("mobile_verified") else 0,
                now,
                now,
            ),
        )
        conn.commit()
    finally:
        conn.close()
    user = get_user(user_id)
    assert user is not None
    return user


def register(data: Dict[str, Any]) -> Dict[str, Any]:
    name = str(data.get("name") or "").strip()
    email = str(data.get("email") or "").strip().lower()
    if not name:
        raise AuthError("name is required")
    if not is_valid_email(email):
        raise AuthError("A valid email is required")
    mobile = None
    if data.get("mobile"):
        mobile = normalize_mobile(str(data["mobile"]))
        if not mobile:
            raise AuthError("Invalid mobile number")
    existing = store.fetch_one(
        "SELECT id FROM users WHERE email = ? OR (? IS NOT NULL AND mobile = ?)",
        (email, mobile, mobile),
    )
    if existing:
        raise AuthError("User already exists with this email or mobile number", 409)
    password = data.get("password")
    if password is not None and len(str(password)) < 8:
        raise AuthError("Password must be at least 8 characters")
    location = data.get("location") if isinstance(data.get("location"), dict) else {}
    user = create_user(
        name,
        email=email,
        mobile=mobile,
        password=str(password) if password else None,
        location_lat=location.get("lat"),
        location_lng=location.get("lng"),
        location_place_id=location.get("place_id"),
        address=data.get("address"),
    )
    store.log_event("auth", "info", "User registered", {"user_id": user["id"]})
    return _session(user, True)


def login_with_password(contact: str, password: str) -> Dict[str, Any]:
    user = find_user_by_contact(contact)
    if not user or not user.get("password_hash") or not user["is_active"]:
        raise AuthError("Invalid credentials", 401)
    if not check_password_hash(user["password_hash"], password or ""):
        store.log_event("auth", "warning", "Password login failed", {"user_id": user["id"]})
        raise AuthError("Invalid credentials", 401)
    return _session(user, not user["onboarding_completed"])


def login_with_otp(contact: str, otp: str) -> Dict[str, Any]:
    kind, normalized = parse_contact(contact)
    verify_otp(normalized, otp)
    user = find_user_by_contact(normalized)
    if not user:
        raise AuthError("User not found. Please register first.", 404)
    if not user["is_active"]:
        raise AuthError("Account is disabled", 403)
    store.execute(
        f"UPDATE users SET {kind}_verified = 1, updated_at = ? WHERE id = ?",
        (time.time(), user["id"]),
    )
    user = get_user(user["id"]) or user
    return _session(user, not user["onboarding_completed"])


def request_email_otp(email: str) -> None:
    """Send a sign-in code if the address is valid; callers answer uniformly either way."""
    email = (email or "").strip().lower()
    if not is_valid_email(email):
        return
    try:
        send_otp(email)
    except AuthError as exc:
        store.log_event("auth", "warning", "Email OTP request not served", {"reason": str(exc)})


def verify_email_otp(email: str, otp: str) -> Dict[str, Any]:
    email = (email or "").strip().lower()
    if not is_valid_email(email):
        raise AuthError("Invalid email")
    verify_otp(email, otp)
    user = store.fetch_one("SELECT * FROM users WHERE email = ?", (email,))
    first_time = False
    if not user:
        user = create_user(email.split("@", 1)[0], email=email, email_verified=True)
        first_time = True
        store.log_event("auth", "info", "User created by email sign-in", {"user_id": user["id"]})
    else:
        if not user["is_active"]:
            raise AuthError("Account is disabled", 403)
        store.execute("UPDATE users SET email_verified = 1, updated_at = ? WHERE id = ?", (time.time(), user["id"]))
        user = get_user(user["id"]) or user
        first_time = not user["onboarding_completed"]
    return _session(user, first_time)


def authenticate(header: Optional[str]) -> Dict[str, Any]:
    header = (header or "").strip()
    if not header.lower().startswith("bearer "):
        raise AuthError("Access token required", 401)
    token = header[7:].strip()
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise AuthError("Invalid or expired token", 401)
    user = get_user(str(payload.get("user_id") or ""))
    if not user or not user["is_active"]:
        raise AuthError("Invalid or expired token", 401)
    return user


def complete_onboarding(user_id: str) -> Dict[str, Any]:
    store.execute(
        "UPDATE users SET onboarding_completed = 1, updated_at = ? WHERE id = ?",
        (time.time(), user_id),
    )
    user = get_user(user_id)
    if not user:
        raise AuthError("User not found", 404)
    store.log_event("onboarding", "info", "Onboarding completed", {"user_id": user_id})
    return public_user(user)


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") in ADMIN_ROLES
