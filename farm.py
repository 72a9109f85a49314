import json
import math
import threading
import time
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional, Tuple

import store

HARVEST_REVENUE_PER_LIFECYCLE = 15000
WEATHER_CACHE_SECONDS = 600
TRANSACTION_TYPES = ("INBOUND", "OUTBOUND")

_WEATHER_CACHE: Dict[Tuple[float, float], Tuple[float, Dict[str, Any]]] = {}
_WEATHER_LOCK = threading.Lock()


class FarmError(Exception):
    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


def _coerce_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _optional_float(data: Dict[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if value is None or value == "":
        return None
    number = _coerce_float(value)
    if number is None:
        raise FarmError(f"{key} must be a finite number")
    return number


def _coerce_int(value: Any) -> Optional[int]:
    try:
        if value is None or value == "":
            return None
        return int(value)
    except (TypeError, ValueError):
        return None


def _required_name(data: Dict[str, Any]) -> str:
    name = str(data.get("name") or "").strip()
    if not name:
        raise FarmError("name is required")
    return name


def get_farm(farm_id: str) -> Optional[Dict[str, Any]]:
    return store.fetch_one("SELECT * FROM farms WHERE id = ?", (farm_id,))


def has_access(user: Dict[str, Any], farm_id: str) -> bool:
    if user.get("role") == "OWNER":
        return True
    row = store.fetch_one("SELECT id FROM farm_access WHERE user_id = ? AND farm_id = ?", (user["id"], farm_id))
    return row is not None


def require_farm_access(user: Dict[str, Any], farm_id: str) -> Dict[str, Any]:
    farm = get_farm(farm_id)
    if not farm:
        raise FarmError("Farm not found", 404)
    if not has_access(user, farm_id):
        raise FarmError("Access to this farm is not allowed", 403)
    return farm


def grant_access(user_id: str, farm_id: str) -> None:
    store.execute(
        "INSERT OR IGNORE INTO farm_access (id, user_id, farm_id, created_at) VALUES (?, ?, ?, ?)",
        (store.new_id(), user_id, farm_id, time.time()),
    )


def revoke_access(user_id: str, farm_id: str) -> bool:
    return store.execute("DELETE FROM farm_access WHERE user_id = ? AND farm_id = ?", (user_id, farm_id)) > 0


def public_farm(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "location": row.get("location"),
        "location_lat": row.get("location_lat"),
        "location_lng": row.get("location_lng"),
        "timezone": row.get("timezone") or "UTC",
        "is_active": bool(row["is_active"]),
        "created_at": store.iso(row["created_at"]),
    }


def list_farms(user: Dict[str, Any]) -> List[Dict[str, Any]]:
    if user.get("role") == "OWNER":
        rows = store.fetch_all("SELECT * FROM farms ORDER BY created_at, rowid")
    else:
        rows = store.fetch_all(
            "SELECT f.* FROM farms f JOIN farm_access a ON a.farm_id = f.id WHERE a.user_id = ? "
            "ORDER BY f.created_at, f.rowid",
            (user["id"],),
        )
    return [public_farm(row) for row in rows]


def create_farm(user: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    name = _required_name(data)
    lat = _optional_float(data, "location_lat")
    lng = _optional_float(data, "location_lng")
    if lat is not None and not -90 <= lat <= 90:
        raise FarmError("location_lat must be between -90 and 90")
    if lng is not None and not -180 <= lng <= 180:
        raise FarmError("location_lng must be between -180 and 180")
    now = time.time()
    farm_id = store.new_id()
    store.execute(
        "INSERT INTO farms (id, name, location, location_lat, location_lng, timezone, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (farm_id, name, data.get("location"), lat, lng, data.get("timezone") or "UTC", now, now),
    )
    grant_access(user["id"], farm_id)
    store.log_event("system", "info", "Farm created", {"farm_id": farm_id, "user_id": user["id"]})
    farm = get_farm(farm_id)
    assert farm is not None
    return public_farm(farm)


def create_polyhouse(farm_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    name = _required_name(data)
    now = time.time()
    polyhouse_id = store.new_id()
    store.execute(
        "INSERT INTO polyhouses (id, name, farm_id, capacity, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
        (polyhouse_id, name, farm_id, _coerce_int(data.get("capacity")), now, now),
    )
    return {"id": polyhouse_id, "name": name, "farm_id": farm_id, "capacity": _coerce_int(data.get("capacity")),
            "is_active": True, "zones": []}


def get_polyhouse(polyhouse_id: str) -> Optional[Dict[str, Any]]:
    return store.fetch_one("SELECT * FROM polyhouses WHERE id = ?", (polyhouse_id,))


def list_polyhouses(farm_id: str) -> List[Dict[str, Any]]:
    polyhouses = store.fetch_all(
        "SELECT id, name, farm_id, capacity, is_active FROM polyhouses WHERE farm_id = ? ORDER BY created_at, rowid",
        (farm_id,),
    )
    zones = store.fetch_all(
        "SELECT z.id, z.name, z.polyhouse_id, z.capacity, z.is_active FROM zones z "
        "JOIN polyhouses p ON p.id = z.polyhouse_id WHERE p.farm_id = ? ORDER BY z.created_at, z.rowid",
        (farm_id,),
    )
    by_polyhouse: Dict[str, List[Dict[str, Any]]] = {}
    for zone in zones:
        zone["is_active"] = bool(zone["is_active"])
        by_polyhouse.setdefault(zone["polyhouse_id"], []).append(zone)
    for polyhouse in polyhouses:
        polyhouse["is_active"] = bool(polyhouse["is_active"])
        polyhouse["zones"] = by_polyhouse.get(polyhouse["id"], [])
    return polyhouses


def create_zone(polyhouse_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    name = _required_name(data)
    now = time.time()
    zone_id = store.new_id()
    capacity = _coerce_int(data.get("capacity"))
    store.execute(
        "INSERT INTO zones (id, name, polyhouse_id, capacity, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
        (zone_id, name, polyhouse_id, capacity, now, now),
    )
    return {"id": zone_id, "name": name, "polyhouse_id": polyhouse_id, "capacity": capacity, "is_active": True}


def get_zone_farm_id(zone_id: str) -> Optional[str]:
    row = store.fetch_one(
        "SELECT p.farm_id FROM zones z JOIN polyhouses p ON p.id = z.polyhouse_id WHERE z.id = ?",
        (zone_id,),
    )
    return row["farm_id"] if row else None


def list_zones(farm_id: str) -> List[Dict[str, Any]]:
    rows = store.fetch_all(
        "SELECT z.id, z.name, z.polyhouse_id, p.name AS polyhouse_name, z.capacity, z.is_active, "
        "(SELECT COUNT(*) FROM sensors s WHERE s.zone_id = z.id AND s.is_active = 1) AS sensor_count "
        "FROM zones z JOIN polyhouses p ON p.id = z.polyhouse_id WHERE p.farm_id = ? "
        "ORDER BY p.created_at, z.created_at, z.rowid",
        (farm_id,),
    )
    for row in rows:
        row["is_active"] = bool(row["is_active"])
    return rows


def get_zone(farm_id: str, zone_id: str) -> Dict[str, Any]:
    zone = store.fetch_one(
        "SELECT z.id, z.name, z.polyhouse_id, p.name AS polyhouse_name, z.capacity, z.is_active "
        "FROM zones z JOIN polyhouses p ON p.id = z.polyhouse_id WHERE z.id = ? AND p.farm_id = ?",
        (zone_id, farm_id),
    )
    if not zone:
        raise FarmError("Zone not found", 404)
    zone["is_active"] = bool(zone["is_active"])
    sensors = store.fetch_all(
        "SELECT id, type, name, latest_value, unit, last_seen, is_active FROM sensors WHERE zone_id = ? ORDER BY type, rowid",
        (zone_id,),
    )
    for sensor in sensors:
        sensor["last_seen"] = store.iso(sensor["last_seen"])
        sensor["is_active"] = bool(sensor["is_active"])
    zone["sensors"] = sensors
    zone["nurseries"] = store.fetch_all(
        "SELECT id, name, capacity FROM nurseries WHERE zone_id = ? AND is_active = 1 ORDER BY rowid",
        (zone_id,),
    )
    zone["lifecycles"] = store.fetch_all(
        "SELECT id, crop, status, expected_start, expected_end, total_quantity FROM lifecycles WHERE zone_id = ? "
        "ORDER BY created_at",
        (zone_id,),
    )
    return zone


def create_reservoir(farm_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    name = _required_name(data)
    capacity = _optional_float(data, "capacity")
    level = _optional_float(data, "current_level")
    if capacity is not None and capacity < 0:
        raise FarmError("capacity must be positive")
    if level is not None and capacity is not None and level > capacity:
        raise FarmError("current_level cannot exceed capacity")
    reservoir_id = store.new_id()
    store.execute(
        "INSERT INTO reservoirs (id, name, farm_id, capacity, current_level, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (reservoir_id, name, farm_id, capacity, level, time.time()),
    )
    return {"id": reservoir_id, "name": name, "farm_id": farm_id, "capacity": capacity, "current_level": level,
            "last_refill": None, "is_active": True}


def list_reservoirs(farm_id: str) -> List[Dict[str, Any]]:
    rows = store.fetch_all(
        "SELECT id, name, farm_id, capacity, current_level, last_refill, is_active FROM reservoirs "
        "WHERE farm_id = ? ORDER BY created_at, rowid",
        (farm_id,),
    )
    for row in rows:
        row["last_refill"] = store.iso(row["last_refill"])
        row["is_active"] = bool(row["is_active"])
    return rows


def create_inventory_item(farm_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    name = _required_name(data)
    stock = _optional_float(data, "current_stock") or 0.0
    if stock < 0:
        raise FarmError("current_stock cannot be negative")
    item_id = store.new_id()
    store.execute(
        "INSERT INTO inventory_items (id, name, farm_id, category, current_stock, unit, cost_per_unit, low_stock_alert, "
        "created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            item_id,
            name,
            farm_id,
            data.get("category"),
            stock,
            data.get("unit"),
            _optional_float(data, "cost_per_unit"),
            _optional_float(data, "low_stock_alert"),
            time.time(),
        ),
    )
    item = get_inventory_item(item_id)
    assert item is not None
    return item


def get_inventory_item(item_id: str) -> Optional[Dict[str, Any]]:
    row = store.fetch_one("SELECT * FROM inventory_items WHERE id = ?", (item_id,))
    if row:
        row["is_active"] = bool(row["is_active"])
        row["created_at"] = store.iso(row["created_at"])
    return row


def add_transaction(item_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    tx_type = str(data.get("type") or "").strip().upper()
    if tx_type not in TRANSACTION_TYPES:
        raise FarmError("type must be INBOUND or OUTBOUND")
    quantity = _coerce_float(data.get("quantity"))
    if quantity is None or quantity <= 0:
        raise FarmError("quantity must be a positive number")
    conn = store.connect()
    try:
        item = conn.execute("SELECT * FROM inventory_items WHERE id = ?", (item_id,)).fetchone()
        if not item:
            raise FarmError("Inventory item not found", 404)
        unit_cost = _optional_float(data, "unit_cost")
        if unit_cost is None:
            unit_cost = item["cost_per_unit"]
        total_cost = round(quantity * unit_cost, 2) if unit_cost is not None else None
        delta = quantity if tx_type == "INBOUND" else -quantity
        new_stock = float(item["current_stock"] or 0) + delta
        if new_stock < 0:
            raise FarmError("Insufficient stock for this transaction", 409)
        tx_id = store.new_id()
        now = time.time()
        conn.execute(
            "INSERT INTO inventory_transactions (id, inventory_item_id, type, quantity, unit_cost, total_cost, notes, "
            "created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (tx_id, item_id, tx_type, quantity, unit_cost, total_cost, data.get("notes"), now),
        )
        conn.execute("UPDATE inventory_items SET current_stock = ? WHERE id = ?", (new_stock, item_id))
        conn.commit()
    finally:
        conn.close()
    return {
        "id": tx_id,
        "inventory_item_id": item_id,
        "type": tx_type,
        "quantity": quantity,
        "unit_cost": unit_cost,
        "total_cost": total_cost,
        "current_stock": new_stock,
        "created_at": store.iso(now),
    }


def _in_stock(item: Dict[str, Any]) -> bool:
    stock = float(item.get("current_stock") or 0)
    threshold = item.get("low_stock_alert")
    if threshold is None:
        return stock > 0
    return stock > float(threshold)


def inventory_summary(farm_id: str) -> Dict[str, Any]:
    items = store.fetch_all(
        "SELECT id, name, category, current_stock, unit, cost_per_unit, low_stock_alert FROM inventory_items "
        "WHERE farm_id = ? AND is_active = 1 ORDER BY name",
        (farm_id,),
    )
    in_stock = [item for item in items if _in_stock(item)]
    low_stock = [item for item in items if not _in_stock(item)]
    total_value = sum(float(i["current_stock"] or 0) * float(i["cost_per_unit"] or 0) for i in items)
    available_pct = round(len(in_stock) / len(items) * 100, 1) if items else 0.0
    return {
        "total_items": len(items),
        "in_stock": len(in_stock),
        "low_stock": len(low_stock),
        "available_percent": available_pct,
        "total_value": round(total_value, 2),
        "low_stock_items": low_stock,
    }


def farm_summary(farm_id: str, overdue_tasks: int, active_alerts: int) -> Dict[str, Any]:
    def count(sql: str) -> int:
        row = store.fetch_one(sql, (farm_id,))
        return int(row["n"]) if row else 0

    polyhouses = count("SELECT COUNT(*) AS n FROM polyhouses WHERE farm_id = ? AND is_active = 1")
    reservoirs = count("SELECT COUNT(*) AS n FROM reservoirs WHERE farm_id = ? AND is_active = 1")
    zones = count(
        "SELECT COUNT(*) AS n FROM zones z JOIN polyhouses p ON p.id = z.polyhouse_id "
        "WHERE p.farm_id = ? AND z.is_active = 1"
    )
    nurseries = count(
        "SELECT COUNT(*) AS n FROM nurseries n JOIN zones z ON z.id = n.zone_id "
        "JOIN polyhouses p ON p.id = z.polyhouse_id WHERE p.farm_id = ? AND n.is_active = 1"
    )
    active_lifecycles = count(
        "SELECT COUNT(*) AS n FROM lifecycles l JOIN polyhouses p ON p.id = l.polyhouse_id "
        "WHERE p.farm_id = ? AND l.status = 'ACTIVE'"
    )
    sales = store.fetch_one(
        "SELECT COALESCE(SUM(t.total_cost), 0) AS total FROM inventory_transactions t "
        "JOIN inventory_items i ON i.id = t.inventory_item_id WHERE i.farm_id = ? AND t.type = 'OUTBOUND'",
        (farm_id,),
    )
    inventory = inventory_summary(farm_id)
    utilization = round(active_lifecycles / zones * 100, 1) if zones else 0.0
    return {
        "polyhouses": polyhouses,
        "reservoirs": reservoirs,
        "zones": zones,
        "nurseries": nurseries,
        "inventory": {
            "available_percent": inventory["available_percent"],
            "total_value": inventory["total_value"],
        },
        "active_alerts": active_alerts,
        "overdue_tasks": overdue_tasks,
        "active_lifecycles": active_lifecycles,
        "utilization_percent": utilization,
        "expected_harvest_revenue": active_lifecycles * HARVEST_REVENUE_PER_LIFECYCLE,
        "sales_revenue": round(float(sales["total"] if sales else 0), 2),
    }


def _fetch_open_meteo(lat: float, lng: float) -> Dict[str, Any]:
    params = {
        "latitude": lat,
        "longitude": lng,
        "current": ",".join([
            "temperature_2m",
            "relative_humidity_2m",
            "precipitation",
            "cloud_cover",
            "wind_speed_10m",
            "weather_code",
        ]),
        "timezone": "UTC",
    }
    url = "https://api.open-meteo.com/v1/forecast?" + urllib.parse.urlencode(params)
    with urllib.request.urlopen(url, timeout=10) as resp:  # noqa: S310 (expected outbound call)
        return json.loads(resp.read().decode("utf-8"))


def get_weather(farm: Dict[str, Any], now: Optional[float] = None) -> Dict[str, Any]:
    lat = farm.get("location_lat")
    lng = farm.get("location_lng")
    if lat is None or lng is None:
        raise FarmError("Farm has no coordinates", 404)
    now = time.time() if now is None else now
    key = (round(float(lat), 3), round(float(lng), 3))
    with _WEATHER_LOCK:
        cached = _WEATHER_CACHE.get(key)
    if cached and now - cached[0] < WEATHER_CACHE_SECONDS:
        return cached[1]
    try:
        data = _fetch_open_meteo(float(lat), float(lng))
    except Exception as exc:
        store.log_event("system", "warning", "Weather fetch failed", {"farm_id": farm["id"], "error": type(exc).__name__})
        raise FarmError("Weather service unavailable", 502)
    current = data.get("current") or {}
    weather = {
        "temperature": current.get("temperature_2m"),
        "humidity": current.get("relative_humidity_2m"),
        "precipitation": current.get("precipitation"),
        "cloud_cover": current.get("cloud_cover"),
        "wind_speed": current.get("wind_speed_10m"),
        "weather_code": current.get("weather_code"),
        "observed_at": current.get("time"),
        "fetched_at": store.iso(now),
    }
    with _WEATHER_LOCK:
        _WEATHER_CACHE[key] = (now, weather)
    return weather


def clear_weather_cache() -> None:
    with _WEATHER_LOCK:
        _WEATHER_CACHE.clear()
