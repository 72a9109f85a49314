import importlib.util
import json
import sys
from pathlib import Path

import pytest

import store

ROOT = Path(__file__).resolve().parents[1]


def _load_script(name):
    spec = importlib.util.spec_from_file_location(f"script_{name}", ROOT / "scripts" / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    return module


@pytest.fixture(scope="module")
def doctor():
    return _load_script("doctor")


@pytest.fixture(scope="module")
def seed_demo():
    return _load_script("seed_demo")


def test_doctor_accepts_shipped_config(doctor):
    env = {"APP_ENV": "development", "MH_HOST": "localhost", "SIMULATION_MODE": "1"}
    issues = doctor.run(ROOT / "config", env)
    assert [i.format() for i in issues if i.level == "ERROR"] == []


def test_doctor_flags_production_gaps(doctor):
    issues = doctor.run(ROOT / "config", {"APP_ENV": "production"})
    errors = " ".join(i.message for i in issues if i.level == "ERROR")
    assert "SENDGRID_API_KEY" in errors
    assert "JWT_SECRET" in errors
    assert "NODE_TOKENS" in errors


def test_doctor_detects_bad_panel_config(doctor, tmp_path):
    config_dir = tmp_path / "config"
    (config_dir / "schema").mkdir(parents=True)
    for name in ("panel.schema.json", "demo_farm.schema.json"):
        (config_dir / "schema" / name).write_text((ROOT / "config" / "schema" / name).read_text(encoding="utf-8"),
                                                  encoding="utf-8")
    panel = json.loads((ROOT / "config" / "panel.json").read_text(encoding="utf-8"))
    panel["control"]["default_override_seconds"] = 7200
    (config_dir / "panel.json").write_text(json.dumps(panel), encoding="utf-8")
    demo = json.loads((ROOT / "config" / "demo_farm.json").read_text(encoding="utf-8"))
    demo["devices"].append({"name": "Lost Fan", "type": "fan", "polyhouse": "Polyhouse 9"})
    (config_dir / "demo_farm.json").write_text(json.dumps(demo), encoding="utf-8")

    issues = doctor.run(config_dir, {"MH_HOST": "localhost", "SIMULATION_MODE": "1"})
    messages = [i.message for i in issues if i.level == "ERROR"]
    assert "default_override_seconds exceeds max_override_seconds." in messages
    assert "unknown polyhouse: 'Polyhouse 9'" in messages


def test_doctor_missing_file(doctor, tmp_path):
    issues = doctor.run(tmp_path, {"MH_HOST": "localhost", "SIMULATION_MODE": "1"})
    assert sum(1 for i in issues if i.message == "File not found.") == 2


def test_seed_plan_ids_are_stable(seed_demo):
    cfg = json.loads((ROOT / "config" / "demo_farm.json").read_text(encoding="utf-8"))
    plan = seed_demo.build_plan(cfg)
    assert plan["farms"][0]["id"] == "farm-a"
    assert plan["polyhouses"][0]["id"] == "farm-a-polyhouse-1"
    assert plan["zones"][0]["id"] == "farm-a-polyhouse-1-zone-a"
    assert "farm-a-polyhouse-1-zone-a-temperature" in [s["id"] for s in plan["sensors"]]
    assert len(plan["devices"]) == 7
    assert len(plan["lifecycles"]) == 2


def test_seed_is_idempotent(seed_demo, tmp_path, capsys):
    db = tmp_path / "demo.db"
    assert seed_demo.main(["--db", str(db), "--password", "demo-pass-123"]) == 0
    assert store.fetch_one("SELECT COUNT(*) AS n FROM devices")["n"] == 7
    assert store.fetch_one("SELECT COUNT(*) AS n FROM sensors")["n"] == 10
    owner = store.fetch_one("SELECT * FROM users WHERE email = 'owner@hydrobloom.app'")
    assert owner["role"] == "OWNER"
    capsys.readouterr()

    assert seed_demo.main(["--db", str(db)]) == 0
    out = capsys.readouterr().out
    assert "owner: owner@hydrobloom.app (existing)" in out
    assert "devices=0" in out
    assert store.fetch_one("SELECT COUNT(*) AS n FROM devices")["n"] == 7


def test_seed_dry_run_writes_nothing(seed_demo, tmp_path):
    db = tmp_path / "dry.db"
    assert seed_demo.main(["--db", str(db), "--dry-run"]) == 0
    assert not db.exists()


def test_seed_rejects_short_password(seed_demo, tmp_path):
    with pytest.raises(SystemExit):
        seed_demo.main(["--db", str(tmp_path / "x.db"), "--password", "short"])
