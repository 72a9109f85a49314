import time
from typing import Any, Dict, List, Optional, Tuple

import store

SENSOR_TYPES: Dict[str, Dict[str, Any]] = {
    "temperature": {"unit": "°C", "min": -10.0, "max": 50.0},
    "humidity": {"unit": "%", "min": 0.0, "max": 100.0},
    "soil_moisture": {"unit": "%", "min": 0.0, "max": 100.0},
    "ph": {"unit": "pH", "min": 0.0, "max": 14.0},
    "ec": {"unit": "mS/cm", "min": 0.0, "max": 10.0},
    "reservoir_level": {"unit": "%", "min": 0.0, "max": 100.0},
    "light_intensity": {"unit": "lux", "min": 0.0, "max": 100000.0},
    "co2_level": {"unit": "ppm", "min": 0.0, "max": 2000.0},
}
TREND_MAX_POINTS_DEFAULT = 120
TREND_MAX_POINTS_LIMIT = 2000


def _coerce_float(value: Any) -> Optional[float]:
    try:
        if value is None or isinstance(value, bool):
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _downsample_points(points: List[List[float]], max_points: int) -> List[List[float]]:
    if max_points <= 0 or len(points) <= max_points:
        return points
    if max_points == 1:
        return [points[-1]]
    last_index = len(points) - 1
    step = last_index / float(max_points - 1)
    indices: List[int] = []
    for i in range(max_points):
        idx = int(round(i * step))
        if not indices or idx != indices[-1]:
            indices.append(idx)
    return [points[i] for i in indices]


def create_sensor(zone_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    sensor_type = str(data.get("type") or "").strip().lower()
    if sensor_type not in SENSOR_TYPES:
        raise ValueError(f"type must be one of {', '.join(SENSOR_TYPES)}")
    sensor_id = str(data.get("id") or "").strip() or store.new_id()
    if store.fetch_one("SELECT id FROM sensors WHERE id = ?", (sensor_id,)):
        raise ValueError("sensor id already exists")
    name = str(data.get("name") or "").strip() or sensor_type.replace("_", " ").title()
    unit = SENSOR_TYPES[sensor_type]["unit"]
    store.execute(
        "INSERT INTO sensors (id, zone_id, type, name, unit, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (sensor_id, zone_id, sensor_type, name, unit, time.time()),
    )
    return {"id": sensor_id, "zone_id": zone_id, "type": sensor_type, "name": name, "unit": unit,
            "latest_value": None, "last_seen": None, "is_active": True}


def get_sensor(sensor_id: str) -> Optional[Dict[str, Any]]:
    return store.fetch_one(
        "SELECT s.*, p.farm_id FROM sensors s JOIN zones z ON z.id = s.zone_id "
        "JOIN polyhouses p ON p.id = z.polyhouse_id WHERE s.id = ?",
        (sensor_id,),
    )


def validate_reading(sensor: Dict[str, Any], value: Any) -> Tuple[Optional[float], Optional[str]]:
    number = _coerce_float(value)
    if number is None:
        return None, "value must be a number"
    limits = SENSOR_TYPES.get(sensor["type"])
    if limits and not limits["min"] <= number <= limits["max"]:
        return None, f"value out of range for {sensor['type']} ({limits['min']}..{limits['max']})"
    return number, None


def ingest(readings: List[Any], now: Optional[float] = None) -> Tuple[int, List[Dict[str, Any]]]:
    """Store valid readings; return the stored count and per-item errors."""
    now = time.time() if now is None else now
    errors: List[Dict[str, Any]] = []
    stored = 0
    conn = store.connect()
    try:
        for idx, item in enumerate(readings):
            if not isinstance(item, dict):
                errors.append({"index": idx, "error": "reading must be an object"})
                continue
            sensor_id = str(item.get("sensor_id") or "").strip()
            if not sensor_id:
                errors.append({"index": idx, "error": "sensor_id is required"})
                continue
            sensor = conn.execute("SELECT * FROM sensors WHERE id = ?", (sensor_id,)).fetchone()
            if not sensor or not sensor["is_active"]:
                errors.append({"index": idx, "sensor_id": sensor_id, "error": "unknown sensor"})
                continue
            value, error = validate_reading(dict(sensor), item.get("value"))
            if error:
                errors.append({"index": idx, "sensor_id": sensor_id, "error": error})
                continue
            ts = _coerce_float(item.get("ts"))
            if ts is None or ts > now + 60:
                ts = now
            conn.execute("INSERT INTO sensor_readings (sensor_id, value, ts) VALUES (?, ?, ?)", (sensor_id, value, ts))
            if sensor["last_seen"] is None or ts >= sensor["last_seen"]:
                conn.execute("UPDATE sensors SET latest_value = ?, last_seen = ? WHERE id = ?", (value, ts, sensor_id))
            stored += 1
        conn.commit()
    finally:
        conn.close()
    return stored, errors


def latest_telemetry(farm_id: str, zone_id: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    sql = (
        "SELECT s.type, AVG(s.latest_value) AS value, COUNT(*) AS n, MAX(s.last_seen) AS last_seen "
        "FROM sensors s JOIN zones z ON z.id = s.zone_id JOIN polyhouses p ON p.id = z.polyhouse_id "
        "WHERE p.farm_id = ? AND s.is_active = 1 AND s.latest_value IS NOT NULL"
    )
    params: List[Any] = [farm_id]
    if zone_id:
        sql += " AND s.zone_id = ?"
        params.append(zone_id)
    rows = store.fetch_all(sql + " GROUP BY s.type", params)
    result: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        result[row["type"]] = {
            "value": round(float(row["value"]), 2),
            "unit": SENSOR_TYPES.get(row["type"], {}).get("unit"),
            "sensors": int(row["n"]),
            "last_seen": store.iso(row["last_seen"]),
        }
    return result


def sensor_readings(sensor_id: str, hours: float = 24.0, max_points: int = TREND_MAX_POINTS_DEFAULT,
                    now: Optional[float] = None) -> List[List[float]]:
    now = time.time() if now is None else now
    max_points = max(1, min(int(max_points), TREND_MAX_POINTS_LIMIT))
    rows = store.fetch_all(
        "SELECT ts, value FROM sensor_readings WHERE sensor_id = ? AND ts >= ? ORDER BY ts",
        (sensor_id, now - hours * 3600),
    )
    points = [[float(row["ts"]), float(row["value"])] for row in rows]
    return _downsample_points(points, max_points)
