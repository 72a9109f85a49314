import copy
import os

import pytest

os.environ.setdefault("SIMULATION_MODE", "1")
os.environ.setdefault("DISABLE_BACKGROUND_LOOPS", "1")
os.environ.setdefault("APP_ENV", "development")

import app  # noqa: E402  pylint: disable=wrong-import-position
import auth  # noqa: E402
import devices  # noqa: E402
import farm  # noqa: E402
import mailer  # noqa: E402
import settings  # noqa: E402
import store  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    monkeypatch.setattr(store, "DB_PATH", tmp_path / "hydrobloom.db")
    monkeypatch.setattr(app, "PANEL_CONFIG_PATH", tmp_path / "panel.json")
    monkeypatch.setattr(app, "panel_config", copy.deepcopy(app.panel_config))
    monkeypatch.setattr(devices, "CONTROL_LIMITS", dict(devices.CONTROL_LIMITS))
    monkeypatch.setattr(auth, "OTP_LIMITS", dict(auth.OTP_LIMITS))
    monkeypatch.setattr(settings, "BYPASS_OTP", True)
    monkeypatch.setattr(settings, "IS_PRODUCTION", False)
    monkeypatch.setattr(settings, "TWILIO_SID", "")
    store.init_db()
    app.NODE_RATE_LIMIT.clear()
    farm.clear_weather_cache()
    mailer.reset_transport()
    yield tmp_path
    devices.controller.shutdown()
    app.NODE_RATE_LIMIT.clear()
    mailer.reset_transport()


@pytest.fixture
def client():
    return app.app.test_client()


def make_user(role="OWNER", email=None, password=None, **fields):
    email = email or f"{role.lower()}@example.com"
    return auth.create_user(role.title(), email=email, role=role, password=password,
                            onboarding_completed=True, **fields)


def auth_headers(user):
    return {"Authorization": f"Bearer {auth.issue_token(user['id'])}"}


@pytest.fixture
def owner():
    return make_user("OWNER", "owner@example.com", password="supersecret")


@pytest.fixture
def demo_farm(owner):
    """One farm with a polyhouse, two zones and a fan, pump, vent and dosing pump."""
    created = farm.create_farm(owner, {"name": "Farm A", "location_lat": 18.52, "location_lng": 73.85})
    polyhouse = farm.create_polyhouse(created["id"], {"name": "Polyhouse 1"})
    zone_a = farm.create_zone(polyhouse["id"], {"name": "Zone A"})
    zone_b = farm.create_zone(polyhouse["id"], {"name": "Zone B"})
    ids = {"farm": created["id"], "polyhouse": polyhouse["id"], "zone_a": zone_a["id"], "zone_b": zone_b["id"]}
    specs = [
        ("fan-1", "Fan 1", "fan", zone_a["id"]),
        ("pump-1", "Pump 1", "pump", zone_a["id"]),
        ("vent-1", "Vent 1", "vent", zone_a["id"]),
        ("doser-1", "Doser 1", "dosing_pump", zone_b["id"]),
    ]
    for device_id, name, device_type, zone_id in specs:
        devices.create_device({"id": device_id, "name": name, "type": device_type, "farm_id": created["id"],
                               "zone_id": zone_id})
    return ids
