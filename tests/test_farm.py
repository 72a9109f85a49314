import pytest

import farm
import store
import telemetry
import users
from conftest import auth_headers, make_user


def _add_lifecycle(polyhouse_id, zone_id, status="ACTIVE"):
    store.execute(
        "INSERT INTO lifecycles (id, crop, polyhouse_id, zone_id, status, created_at) VALUES (?, ?, ?, ?, ?, 0)",
        (store.new_id(), "Tomato", polyhouse_id, zone_id, status),
    )


def test_access_rules(owner, demo_farm):
    manager = make_user("FARM_MANAGER", "manager@example.com")
    assert farm.has_access(owner, demo_farm["farm"])
    assert not farm.has_access(manager, demo_farm["farm"])
    with pytest.raises(farm.FarmError) as excinfo:
        farm.require_farm_access(manager, demo_farm["farm"])
    assert excinfo.value.status == 403
    with pytest.raises(farm.FarmError) as excinfo:
        farm.require_farm_access(owner, "missing")
    assert excinfo.value.status == 404
    farm.grant_access(manager["id"], demo_farm["farm"])
    farm.grant_access(manager["id"], demo_farm["farm"])
    assert [f["id"] for f in farm.list_farms(manager)] == [demo_farm["farm"]]


def test_create_farm_validates_coordinates(owner):
    with pytest.raises(farm.FarmError, match="location_lat"):
        farm.create_farm(owner, {"name": "North", "location_lat": 95})
    with pytest.raises(farm.FarmError, match="name is required"):
        farm.create_farm(owner, {"name": "  "})


def test_polyhouse_listing_nests_zones(demo_farm):
    polyhouses = farm.list_polyhouses(demo_farm["farm"])
    assert len(polyhouses) == 1
    assert [z["name"] for z in polyhouses[0]["zones"]] == ["Zone A", "Zone B"]


def test_zone_detail_includes_sensors_and_lifecycles(demo_farm):
    telemetry.create_sensor(demo_farm["zone_a"], {"id": "t-1", "type": "temperature"})
    _add_lifecycle(demo_farm["polyhouse"], demo_farm["zone_a"])
    zone = farm.get_zone(demo_farm["farm"], demo_farm["zone_a"])
    assert [s["id"] for s in zone["sensors"]] == ["t-1"]
    assert zone["sensors"][0]["unit"] == "°C"
    assert zone["lifecycles"][0]["crop"] == "Tomato"
    counts = {z["name"]: z["sensor_count"] for z in farm.list_zones(demo_farm["farm"])}
    assert counts == {"Zone A": 1, "Zone B": 0}
    with pytest.raises(farm.FarmError):
        farm.get_zone(demo_farm["farm"], "missing")


def test_inventory_transactions_and_summary(demo_farm):
    fid = demo_farm["farm"]
    seeds = farm.create_inventory_item(fid, {"name": "Seeds", "current_stock": 10, "cost_per_unit": 2.5})
    nutrients = farm.create_inventory_item(fid, {"name": "Nutrients", "current_stock": 5, "cost_per_unit": 10,
                                                 "low_stock_alert": 5})
    farm.create_inventory_item(fid, {"name": "Trays", "current_stock": 0})

    tx = farm.add_transaction(seeds["id"], {"type": "outbound", "quantity": 4})
    assert tx["current_stock"] == 6
    assert tx["total_cost"] == 10.0
    tx = farm.add_transaction(nutrients["id"], {"type": "INBOUND", "quantity": 1, "unit_cost": 12})
    assert tx["total_cost"] == 12.0
    with pytest.raises(farm.FarmError) as excinfo:
        farm.add_transaction(seeds["id"], {"type": "OUTBOUND", "quantity": 7})
    assert excinfo.value.status == 409
    with pytest.raises(farm.FarmError, match="positive"):
        farm.add_transaction(seeds["id"], {"type": "OUTBOUND", "quantity": 0})

    summary = farm.inventory_summary(fid)
    assert summary["total_items"] == 3
    assert summary["in_stock"] == 2
    assert summary["low_stock"] == 1
    assert [i["name"] for i in summary["low_stock_items"]] == ["Trays"]
    assert summary["available_percent"] == 66.7
    assert summary["total_value"] == 6 * 2.5 + 6 * 10


def test_farm_summary(demo_farm):
    fid = demo_farm["farm"]
    _add_lifecycle(demo_farm["polyhouse"], demo_farm["zone_a"])
    _add_lifecycle(demo_farm["polyhouse"], demo_farm["zone_b"], status="HARVESTED")
    farm.create_reservoir(fid, {"name": "Tank", "capacity": 1000, "current_level": 600})
    item = farm.create_inventory_item(fid, {"name": "Tomatoes", "current_stock": 100, "cost_per_unit": 30})
    farm.add_transaction(item["id"], {"type": "OUTBOUND", "quantity": 10})

    summary = farm.farm_summary(fid, overdue_tasks=2, active_alerts=1)
    assert summary["polyhouses"] == 1
    assert summary["zones"] == 2
    assert summary["reservoirs"] == 1
    assert summary["active_lifecycles"] == 1
    assert summary["utilization_percent"] == 50.0
    assert summary["expected_harvest_revenue"] == 15000
    assert summary["sales_revenue"] == 300.0
    assert summary["overdue_tasks"] == 2
    assert summary["active_alerts"] == 1


def test_reservoir_level_cannot_exceed_capacity(demo_farm):
    with pytest.raises(farm.FarmError, match="exceed"):
        farm.create_reservoir(demo_farm["farm"], {"name": "Tank", "capacity": 100, "current_level": 150})


def test_weather_is_cached(monkeypatch, demo_farm):
    calls = []

    def fake_fetch(lat, lng):
        calls.append((lat, lng))
        return {"current": {"temperature_2m": 31.5, "relative_humidity_2m": 60, "time": "2026-05-01T10:00"}}

    monkeypatch.setattr(farm, "_fetch_open_meteo", fake_fetch)
    record = farm.get_farm(demo_farm["farm"])
    first = farm.get_weather(record, now=1000.0)
    second = farm.get_weather(record, now=1000.0 + 599)
    assert first == second
    assert first["temperature"] == 31.5
    assert len(calls) == 1
    farm.get_weather(record, now=1000.0 + 601)
    assert len(calls) == 2


def test_weather_errors(monkeypatch, owner):
    no_coords = farm.create_farm(owner, {"name": "Nowhere"})
    with pytest.raises(farm.FarmError) as excinfo:
        farm.get_weather(farm.get_farm(no_coords["id"]))
    assert excinfo.value.status == 404

    def broken(lat, lng):
        raise OSError("offline")

    monkeypatch.setattr(farm, "_fetch_open_meteo", broken)
    placed = farm.create_farm(owner, {"name": "Pune", "location_lat": 18.5, "location_lng": 73.8})
    with pytest.raises(farm.FarmError) as excinfo:
        farm.get_weather(farm.get_farm(placed["id"]))
    assert excinfo.value.status == 502


def test_farm_user_management(owner, demo_farm):
    fid = demo_farm["farm"]
    viewer = make_user("VIEWER", "viewer@example.com")
    added = users.add_farm_user(fid, "Viewer@Example.com")
    assert added["id"] == viewer["id"]
    assert {u["email"] for u in users.list_farm_users(fid)} == {"owner@example.com", "viewer@example.com"}
    with pytest.raises(farm.FarmError) as excinfo:
        users.add_farm_user(fid, "nobody@example.com")
    assert excinfo.value.status == 404
    with pytest.raises(farm.FarmError) as excinfo:
        users.remove_farm_user(fid, owner["id"])
    assert excinfo.value.status == 409
    users.remove_farm_user(fid, viewer["id"])
    with pytest.raises(farm.FarmError) as excinfo:
        users.remove_farm_user(fid, viewer["id"])
    assert excinfo.value.status == 404


def test_update_user_guards_owner(owner):
    admin = make_user("ADMIN", "admin@example.com")
    viewer = make_user("VIEWER", "viewer@example.com")
    with pytest.raises(farm.FarmError) as excinfo:
        users.update_user(admin, viewer["id"], {"role": "OWNER"})
    assert excinfo.value.status == 403
    with pytest.raises(farm.FarmError) as excinfo:
        users.update_user(owner, owner["id"], {"role": "ADMIN"})
    assert excinfo.value.status == 409
    with pytest.raises(farm.FarmError) as excinfo:
        users.update_user(admin, owner["id"], {"is_active": False})
    assert excinfo.value.status == 409
    updated = users.update_user(admin, viewer["id"], {"role": "farm_manager", "language_pref": "hi"})
    assert (updated["role"], updated["language_pref"]) == ("FARM_MANAGER", "hi")
    with pytest.raises(farm.FarmError, match="Nothing to update"):
        users.update_user(admin, viewer["id"], {})


def test_summary_endpoints(client, owner, demo_farm):
    fid = demo_farm["farm"]
    headers = auth_headers(owner)
    resp = client.get(f"/api/farms/{fid}/summary", headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["summary"]["zones"] == 2
    assert client.get(f"/api/farms/{fid}/inventory/summary", headers=headers).status_code == 200
    assert client.get(f"/api/farms/{fid}/tasks/summary", headers=headers).get_json()["tasks"]["total"] == 0
    assert client.get(f"/api/farms/{fid}/alerts/summary", headers=headers).get_json()["alerts"]["active"] == 0
    assert client.get("/api/farms/missing/summary", headers=headers).status_code == 404


def test_create_polyhouse_and_zone_endpoints(client, owner, demo_farm):
    headers = auth_headers(owner)
    resp = client.post(f"/api/farms/{demo_farm['farm']}/polyhouses", json={"name": "Polyhouse 2", "capacity": "40"},
                       headers=headers)
    assert resp.status_code == 201
    polyhouse = resp.get_json()["polyhouse"]
    assert polyhouse["capacity"] == 40
    resp = client.post(f"/api/polyhouses/{polyhouse['id']}/zones", json={"name": "Zone C"}, headers=headers)
    assert resp.status_code == 201
    resp = client.post("/api/polyhouses/missing/zones", json={"name": "Zone D"}, headers=headers)
    assert resp.status_code == 404


def test_non_finite_numbers_are_rejected(client, owner, demo_farm):
    fid = demo_farm["farm"]
    item = farm.create_inventory_item(fid, {"name": "Seeds", "current_stock": 10})
    with pytest.raises(farm.FarmError, match="positive"):
        farm.add_transaction(item["id"], {"type": "INBOUND", "quantity": float("inf")})
    with pytest.raises(farm.FarmError, match="capacity must be a finite number"):
        farm.create_reservoir(fid, {"name": "Tank", "capacity": "inf"})
    with pytest.raises(farm.FarmError, match="location_lat"):
        farm.create_farm(owner, {"name": "Farm B", "location_lat": "nan"})

    headers = auth_headers(owner)
    resp = client.post(f"/api/inventory/{item['id']}/transactions", json={"type": "INBOUND", "quantity": "nan"},
                       headers=headers)
    assert resp.status_code == 400
    resp = client.post(f"/api/farms/{fid}/inventory", json={"name": "Trays", "cost_per_unit": "-inf"},
                       headers=headers)
    assert resp.status_code == 400
    assert farm.get_inventory_item(item["id"])["current_stock"] == 10
