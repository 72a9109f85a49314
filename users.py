import time
from typing import Any, Dict, List

import auth
import farm
import store


def list_farm_users(farm_id: str) -> List[Dict[str, Any]]:
    rows = store.fetch_all(
        "SELECT u.* FROM users u JOIN farm_access a ON a.user_id = u.id WHERE a.farm_id = ? "
        "ORDER BY u.name COLLATE NOCASE",
        (farm_id,),
    )
    return [auth.public_user(row) for row in rows]


def add_farm_user(farm_id: str, email: str) -> Dict[str, Any]:
    email = (email or "").strip().lower()
    if not auth.is_valid_email(email):
        raise farm.FarmError("A valid email is required")
    user = store.fetch_one("SELECT * FROM users WHERE email = ?", (email,))
    if not user:
        raise farm.FarmError("No user with this email; send an invite instead", 404)
    farm.grant_access(user["id"], farm_id)
    store.log_event("system", "info", "Farm access granted", {"farm_id": farm_id, "user_id": user["id"]})
    return auth.public_user(user)


def remove_farm_user(farm_id: str, user_id: str) -> None:
    user = auth.get_user(user_id)
    if not user:
        raise farm.FarmError("User not found", 404)
    if user["role"] == "OWNER":
        raise farm.FarmError("The owner cannot be removed from a farm", 409)
    if not farm.revoke_access(user_id, farm_id):
        raise farm.FarmError("User has no access to this farm", 404)
    store.log_event("system", "info", "Farm access revoked", {"farm_id": farm_id, "user_id": user_id})


def update_user(actor: Dict[str, Any], user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    user = auth.get_user(user_id)
    if not user:
        raise farm.FarmError("User not found", 404)
    updates: Dict[str, Any] = {}
    if "role" in data:
        role = str(data.get("role") or "").strip().upper()
        if role not in auth.ROLES:
            raise farm.FarmError(f"role must be one of {', '.join(auth.ROLES)}")
        if role == "OWNER" and actor["role"] != "OWNER":
            raise farm.FarmError("Only an owner can grant the owner role", 403)
        if user["role"] == "OWNER" and role != "OWNER":
            raise farm.FarmError("The owner cannot be demoted", 409)
        updates["role"] = role
    if "is_active" in data:
        active = bool(data.get("is_active"))
        if user["role"] == "OWNER" and not active:
            raise farm.FarmError("The owner cannot be deactivated", 409)
        updates["is_active"] = 1 if active else 0
    if "language_pref" in data:
        language = str(data.get("language_pref") or "").strip().lower()
        if language not in auth.LANGUAGES:
            raise farm.FarmError(f"language_pref must be one of {', '.join(auth.LANGUAGES)}")
        updates["language_pref"] = language
    if not updates:
        raise farm.FarmError("Nothing to update")
    assignments = ", ".join(f"{key} = ?" for key in updates)
    store.execute(
        f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?",
        list(updates.values()) + [time.time(), user_id],
    )
    store.log_event("system", "info", "User updated", {"user_id": user_id, "by": actor["id"], "fields": sorted(updates)})
    updated = auth.get_user(user_id)
    assert updated is not None
    return auth.public_user(updated)
