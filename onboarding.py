import re
import secrets
import smtplib
import time
from typing import Any, Dict, List, Optional

import auth
import farm
import mailer
import settings
import sms
import store

ASSET_TYPES = ("POLYHOUSE", "FERTIGATION")
MAC_RE = re.compile(r"^([0-9A-F]{2}[:-]){5}[0-9A-F]{2}$")
INVITE_TTL_SECONDS = 7 * 24 * 3600


class OnboardingError(Exception):
    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


def _public_asset(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "type": row["type"],
        "name": row["name"],
        "controller_macid": row["controller_macid"],
        "is_active": bool(row["is_active"]),
        "created_at": store.iso(row["created_at"]),
    }


def save_assets(user_id: str, assets: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not isinstance(assets, list) or not assets:
        raise OnboardingError("assets must be a non-empty list")
    cleaned: List[Dict[str, Any]] = []
    errors: List[str] = []
    for idx, item in enumerate(assets):
        if not isinstance(item, dict):
            errors.append(f"assets[{idx}] must be an object")
            continue
        asset_type = str(item.get("type") or "").strip().upper()
        if asset_type not in ASSET_TYPES:
            errors.append(f"assets[{idx}].type must be POLYHOUSE or FERTIGATION")
        macid = str(item.get("controller_macid") or "").strip().upper()
        if not MAC_RE.match(macid):
            errors.append(f"assets[{idx}].controller_macid is not a valid MAC address")
        cleaned.append({"type": asset_type, "name": str(item.get("name") or "").strip(), "macid": macid})
    if errors:
        raise OnboardingError("; ".join(errors))

    macids = [a["macid"] for a in cleaned]
    if len(set(macids)) != len(macids):
        raise OnboardingError("Duplicate MAC IDs are not allowed")
    placeholders = ",".join("?" for _ in macids)
    existing = store.fetch_all(f"SELECT controller_macid FROM assets WHERE controller_macid IN ({placeholders})", macids)
    if existing:
        taken = ", ".join(sorted(row["controller_macid"] for row in existing))
        raise OnboardingError(f"MAC ID(s) already registered: {taken}", 409)

    counts: Dict[str, int] = {}
    for row in store.fetch_all("SELECT type, COUNT(*) AS n FROM assets WHERE owner_id = ? GROUP BY type", (user_id,)):
        counts[row["type"]] = int(row["n"])

    now = time.time()
    created_ids: List[str] = []
    conn = store.connect()
    try:
        for asset in cleaned:
            counts[asset["type"]] = counts.get(asset["type"], 0) + 1
            name = asset["name"] or f"{asset['type'].title()} {counts[asset['type']]}"
            asset_id = store.new_id()
            conn.execute(
                "INSERT INTO assets (id, owner_id, type, name, controller_macid, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (asset_id, user_id, asset["type"], name, asset["macid"], now),
            )
            created_ids.append(asset_id)
        conn.commit()
    finally:
        conn.close()
    store.log_event("onboarding", "info", "Assets saved", {"user_id": user_id, "count": len(created_ids)})
    placeholders = ",".join("?" for _ in created_ids)
    rows = store.fetch_all(f"SELECT * FROM assets WHERE id IN ({placeholders}) ORDER BY rowid", created_ids)
    return [_public_asset(row) for row in rows]


def list_assets(user_id: str) -> List[Dict[str, Any]]:
    rows = store.fetch_all("SELECT * FROM assets WHERE owner_id = ? ORDER BY created_at, rowid", (user_id,))
    return [_public_asset(row) for row in rows]


def _public_invite(row: Dict[str, Any], now: Optional[float] = None) -> Dict[str, Any]:
    now = time.time() if now is None else now
    status = row["status"]
    if status == "PENDING" and row["expires_at"] < now:
        status = "EXPIRED"
    return {
        "id": row["id"],
        "email": row.get("email"),
        "mobile": row.get("mobile"),
        "role": row["role"],
        "status": status,
        "language_pref": row.get("language_pref") or "en",
        "farm_id": row.get("farm_id"),
        "expires_at": store.iso(row["expires_at"]),
        "created_at": store.iso(row["created_at"]),
    }


def invite_link(token: str) -> str:
    return f"{settings.FRONTEND_URL}/invite/{token}"


def _deliver_invite(invite: Dict[str, Any], inviter: Dict[str, Any]) -> None:
    link = invite_link(invite["token"])
    if invite.get("email"):
        try:
            mailer.send_invite_email(invite["email"], link, inviter["name"])
            return
        except mailer.MailerConfigError:
            if settings.IS_PRODUCTION:
                raise OnboardingError("Email delivery is not configured", 500)
        except (smtplib.SMTPException, OSError) as exc:
            store.log_event("mail", "error", "Invite email failed", {"invite_id": invite["id"], "error": type(exc).__name__})
            raise OnboardingError("Failed to send invite", 500)
        print(f"[onboarding] mail not configured, invite link for {invite['email']}: {link}")
        return
    ok, error = sms.send_sms(invite["mobile"], f"{inviter['name']} invited you to HydroBloom: {link}")
    if ok:
        return
    if settings.IS_PRODUCTION:
        store.log_event("onboarding", "error", "Invite SMS failed", {"invite_id": invite["id"], "error": error})
        raise OnboardingError("Failed to send invite", 500)
    print(f"[onboarding] SMS not sent ({error}), invite link for {invite['mobile']}: {link}")


def invite_user(created_by: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    email = str(data.get("email") or "").strip().lower() or None
    raw_mobile = str(data.get("mobile") or "").strip()
    if not email and not raw_mobile:
        raise OnboardingError("Either email or mobile is required")
    if email and not auth.is_valid_email(email):
        raise OnboardingError("Invalid email format")
    mobile = None
    if raw_mobile:
        mobile = auth.normalize_mobile(raw_mobile)
        if not mobile:
            raise OnboardingError("Invalid mobile number format")
    role = str(data.get("role") or "VIEWER").strip().upper()
    if role not in auth.ROLES:
        raise OnboardingError(f"role must be one of {', '.join(auth.ROLES)}")
    if role == "OWNER" and created_by["role"] != "OWNER":
        raise OnboardingError("Only an owner can invite another owner", 403)
    if role in auth.ADMIN_ROLES and not auth.is_admin(created_by):
        raise OnboardingError("Only admins can invite admins", 403)
    language = str(data.get("language_pref") or "en").strip().lower()
    if language not in auth.LANGUAGES:
        raise OnboardingError(f"language_pref must be one of {', '.join(auth.LANGUAGES)}")
    farm_id = data.get("farm_id") or None
    if farm_id:
        farm.require_farm_access(created_by, str(farm_id))

    existing_user = store.fetch_one(
        "SELECT id FROM users WHERE (? IS NOT NULL AND email = ?) OR (? IS NOT NULL AND mobile = ?)",
        (email, email, mobile, mobile),
    )
    if existing_user:
        raise OnboardingError("User already exists with this email or mobile", 409)
    now = time.time()
    pending = store.fetch_one(
        "SELECT id FROM invites WHERE status = 'PENDING' AND expires_at > ? "
        "AND ((? IS NOT NULL AND email = ?) OR (? IS NOT NULL AND mobile = ?))",
        (now, email, email, mobile, mobile),
    )
    if pending:
        raise OnboardingError("Invite already sent to this contact", 409)

    invite = {
        "id": store.new_id(),
        "email": email,
        "mobile": mobile,
        "role": role,
        "language_pref": language,
        "token": secrets.token_hex(32),
        "farm_id": farm_id,
        "expires_at": now + INVITE_TTL_SECONDS,
        "created_by_id": created_by["id"],
        "created_at": now,
    }
    _deliver_invite(invite, created_by)
    store.execute(
        """
        INSERT INTO invites (id, email, mobile, role, status, language_pref, token, farm_id, expires_at, created_by_id, created_at)
        VALUES (?, ?, ?, ?, 'PENDING', ?, ?, ?, ?, ?, ?)
        """,
        (
            invite["id"],
            email,
            mobile,
            role,
            language,
            invite["token"],
            farm_id,
            invite["expires_at"],
            created_by["id"],
            now,
        ),
    )
    store.log_event("onboarding", "info", "Invite created", {"invite_id": invite["id"], "role": role})
    invite["status"] = "PENDING"
    return _public_invite(invite, now)


def get_invite(token: str) -> Dict[str, Any]:
    row = store.fetch_one(
        "SELECT i.*, u.name AS inviter_name, u.email AS inviter_email FROM invites i "
        "JOIN users u ON u.id = i.created_by_id WHERE i.token = ?",
        (token,),
    )
    if not row:
        raise OnboardingError("Invite not found", 404)
    invite = _public_invite(row)
    invite["created_by"] = {"name": row["inviter_name"], "email": row["inviter_email"]}
    return invite


def accept_invite(token: str, name: str, password: str) -> Dict[str, Any]:
    name = (name or "").strip()
    if not name or not password:
        raise OnboardingError("name and password are required")
    if len(password) < 8:
        raise OnboardingError("Password must be at least 8 characters")
    now = time.time()
    invite = store.fetch_one("SELECT * FROM invites WHERE token = ?", (token,))
    if not invite or invite["status"] != "PENDING" or invite["expires_at"] < now:
        raise OnboardingError("Invalid or expired invite")
    if invite.get("email") and auth.find_user_by_contact(invite["email"]):
        raise OnboardingError("User already exists with this email or mobile", 409)
    if invite.get("mobile") and auth.find_user_by_contact(invite["mobile"]):
        raise OnboardingError("User already exists with this email or mobile", 409)
    user = auth.create_user(
        name,
        email=invite.get("email"),
        mobile=invite.get("mobile"),
        role=invite["role"],
        password=password,
        language_pref=invite.get("language_pref"),
        onboarding_completed=True,
        email_verified=bool(invite.get("email")),
        mobile_verified=bool(invite.get("mobile")),
    )
    if invite.get("farm_id"):
        farm.grant_access(user["id"], invite["farm_id"])
    store.execute("UPDATE invites SET status = 'ACCEPTED' WHERE id = ?", (invite["id"],))
    store.log_event("onboarding", "info", "Invite accepted", {"invite_id": invite["id"], "user_id": user["id"]})
    return {"token": auth.issue_token(user["id"]), "user": auth.public_user(user), "first_time": False}


def list_invites(user_id: str) -> List[Dict[str, Any]]:
    rows = store.fetch_all("SELECT * FROM invites WHERE created_by_id = ? ORDER BY created_at DESC", (user_id,))
    now = time.time()
    return [_public_invite(row, now) for row in rows]
