import pytest

import alerts
import mailer
import sms
import store
import telemetry
from conftest import auth_headers, make_user

NOW = 1_800_000_000.0


@pytest.fixture
def sensors(demo_farm):
    telemetry.create_sensor(demo_farm["zone_a"], {"id": "temp-a", "type": "temperature"})
    telemetry.create_sensor(demo_farm["zone_b"], {"id": "temp-b", "type": "temperature"})
    telemetry.create_sensor(demo_farm["zone_a"], {"id": "hum-a", "type": "humidity"})
    return demo_farm


def _config(**overrides):
    data = {
        "name": "Hot and dry",
        "severity": "HIGH",
        "repeats_in": 30,
        "repeat_unit": "minutes",
        "conditions": [
            {"sensor": "temperature", "operator": "gt", "value": 35},
            {"sensor": "humidity", "operator": "<", "value": 40},
        ],
    }
    data.update(overrides)
    return data


def test_validate_payload_reports_every_problem():
    errors = alerts.validate_alert_config_payload({
        "name": "",
        "severity": "SEVERE",
        "repeats_in": 0,
        "repeat_unit": "weeks",
        "conditions": [{"sensor": "wind", "operator": "~", "value": "hot"}],
        "channels": ["PIGEON"],
    })
    assert "name is required" in errors
    assert any(e.startswith("severity") for e in errors)
    assert "repeats_in must be a positive integer" in errors
    assert "repeat_unit must be minutes, hours or days" in errors
    assert "conditions[0].sensor is not a known sensor type" in errors
    assert "conditions[0].operator is not supported" in errors
    assert "conditions[0].value must be a number" in errors
    assert any(e.startswith("channels") for e in errors)
    assert alerts.validate_alert_config_payload({"repeats_in": 2}, partial=True) == []


def test_operator_aliases():
    assert alerts.normalize_operator("GTE") == ">="
    assert alerts.normalize_operator("==") == "="
    assert alerts.normalize_operator("between") is None


def test_conditions_are_anded():
    conditions = [
        {"sensor": "temperature", "operator": ">", "value": 35},
        {"sensor": "humidity", "operator": "<", "value": 40},
    ]
    assert alerts.conditions_met(conditions, {"temperature": {"value": 36}, "humidity": {"value": 30}})
    assert not alerts.conditions_met(conditions, {"temperature": {"value": 36}, "humidity": {"value": 50}})
    assert not alerts.conditions_met(conditions, {"temperature": {"value": 36}})
    assert not alerts.conditions_met([], {})


def test_create_config_normalizes(sensors):
    config = alerts.create_config(sensors["farm"], _config())
    assert config["conditions"][0] == {"sensor": "temperature", "operator": ">", "value": 35.0}
    assert config["channels"] == ["EMAIL"]
    assert config["severity"] == "HIGH"
    with pytest.raises(alerts.AlertConfigError) as excinfo:
        alerts.create_config(sensors["farm"], _config(repeats_in="soon"))
    assert excinfo.value.details == ["repeats_in must be a positive integer"]


def test_subscribers_need_farm_access(sensors):
    outsider = make_user("VIEWER", "outsider@example.com")
    with pytest.raises(alerts.AlertConfigError, match="no access"):
        alerts.create_config(sensors["farm"], _config(subscribers=[outsider["id"]]))


def test_evaluate_fires_and_respects_repeat_interval(sensors):
    config = alerts.create_config(sensors["farm"], _config())
    telemetry.ingest([
        {"sensor_id": "temp-a", "value": 37, "ts": NOW},
        {"sensor_id": "temp-b", "value": 35, "ts": NOW},
        {"sensor_id": "hum-a", "value": 30, "ts": NOW},
    ], now=NOW)

    fired = alerts.evaluate_farm(sensors["farm"], NOW)
    assert len(fired) == 1
    alert = fired[0]
    assert alert["config_id"] == config["id"]
    assert alert["severity"] == "HIGH"
    assert alert["source"] == "alert-config"
    assert "temperature 36.0°C > 35.0°C" in alert["message"]

    assert alerts.evaluate_farm(sensors["farm"], NOW + 29 * 60) == []
    assert len(alerts.evaluate_farm(sensors["farm"], NOW + 30 * 60)) == 1
    assert alerts.count_active(sensors["farm"]) == 2


def test_evaluate_skips_when_condition_not_met(sensors):
    alerts.create_config(sensors["farm"], _config())
    telemetry.ingest([{"sensor_id": "temp-a", "value": 40}, {"sensor_id": "hum-a", "value": 55}], now=NOW)
    assert alerts.evaluate_farm(sensors["farm"], NOW) == []


def test_notifications_by_channel(monkeypatch, sensors, owner):
    manager = make_user("FARM_MANAGER", "manager@example.com", mobile="+919876543210")
    store.execute("INSERT INTO farm_access (id, user_id, farm_id, created_at) VALUES ('fa', ?, ?, 0)",
                  (manager["id"], sensors["farm"]))
    emails = []
    texts = []

    def send_alert_email(to, title, message):
        if to == "owner@example.com":
            raise OSError("smtp down")
        emails.append((to, title))

    monkeypatch.setattr(mailer, "send_alert_email", send_alert_email)
    monkeypatch.setattr(sms, "send_sms", lambda to, body: texts.append(to) or (True, None))
    alerts.create_config(sensors["farm"], _config(
        channels=["EMAIL", "SMS", "WHATSAPP"],
        subscribers=[owner["id"], manager["id"]],
    ))
    telemetry.ingest([{"sensor_id": "temp-a", "value": 40}, {"sensor_id": "hum-a", "value": 20}], now=NOW)

    (alert,) = alerts.evaluate_farm(sensors["farm"], NOW)
    assert emails == [("manager@example.com", "Hot and dry")]
    assert texts == ["+919876543210"]
    assert alert["notifications"] == {"sent": 2, "failed": 1, "skipped": 3}
    logged = store.fetch_all("SELECT message FROM event_log WHERE category = 'alert' AND level = 'error'")
    assert [row["message"] for row in logged] == ["Alert email failed"]


def test_acknowledge_and_resolve(sensors, owner):
    alerts.create_config(sensors["farm"], _config())
    telemetry.ingest([{"sensor_id": "temp-a", "value": 40}, {"sensor_id": "hum-a", "value": 20}], now=NOW)
    (alert,) = alerts.evaluate_farm(sensors["farm"], NOW)

    acked = alerts.acknowledge(alert["id"], owner["id"])
    assert acked["is_acknowledged"] is True
    assert acked["acknowledged_by"] == owner["id"]
    assert alerts.list_alerts(sensors["farm"], "active") == []
    assert len(alerts.list_alerts(sensors["farm"], "acknowledged")) == 1

    resolved = alerts.resolve(alert["id"], owner["id"])
    assert resolved["is_resolved"] is True
    summary = alerts.alerts_summary(sensors["farm"])
    assert (summary["total"], summary["acknowledged"], summary["resolved"], summary["active"]) == (1, 1, 1, 0)
    with pytest.raises(alerts.AlertConfigError):
        alerts.acknowledge("missing", owner["id"])


def test_alert_config_endpoints(client, owner, sensors):
    headers = auth_headers(owner)
    fid = sensors["farm"]
    resp = client.post(f"/api/farms/{fid}/alert-configs", json=_config(repeat_unit="fortnights"), headers=headers)
    assert resp.status_code == 400
    assert "repeat_unit must be minutes, hours or days" in resp.get_json()["details"]

    resp = client.post(f"/api/farms/{fid}/alert-configs", json=_config(), headers=headers)
    assert resp.status_code == 201
    config_id = resp.get_json()["config"]["id"]

    resp = client.patch(f"/api/alert-configs/{config_id}", json={"is_active": False}, headers=headers)
    assert resp.get_json()["config"]["is_active"] is False
    telemetry.ingest([{"sensor_id": "temp-a", "value": 40}, {"sensor_id": "hum-a", "value": 20}])
    resp = client.post(f"/api/farms/{fid}/alerts/evaluate", headers=headers)
    assert resp.get_json()["fired"] == []

    resp = client.delete(f"/api/alert-configs/{config_id}", headers=headers)
    assert resp.status_code == 200
    assert client.get(f"/api/farms/{fid}/alert-configs", headers=headers).get_json()["configs"] == []
    resp = client.get(f"/api/farms/{fid}/alerts?status=open", headers=headers)
    assert resp.status_code == 400
