#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

import jsonschema


@dataclass
class Issue:
    level: str
    message: str
    path: str | None = None

    def format(self) -> str:
        prefix = f"[{self.level}]"
        if self.path:
            return f"{prefix} {self.path}: {self.message}"
        return f"{prefix} {self.message}"


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


sys.path.insert(0, str(_repo_root()))

import mailer  # noqa: E402


def _load_json(path: Path, issues: list[Issue]) -> Any | None:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        issues.append(Issue("ERROR", "File not found.", str(path)))
    except json.JSONDecodeError as exc:
        issues.append(Issue("ERROR", f"JSON parse error: {exc}", str(path)))
    except OSError as exc:
        issues.append(Issue("ERROR", f"Read error: {exc}", str(path)))
    return None


def _schema_validate(instance: Any, schema_path: Path, issues: list[Issue]) -> None:
    schema = _load_json(schema_path, issues)
    if schema is None:
        return
    validator_cls = jsonschema.validators.validator_for(schema)
    try:
        validator_cls.check_schema(schema)
    except jsonschema.SchemaError as exc:
        issues.append(Issue("ERROR", f"Invalid schema: {exc.message}", str(schema_path)))
        return
    validator = validator_cls(schema)
    for err in sorted(validator.iter_errors(instance), key=str):
        loc = ".".join(str(p) for p in err.path) if err.path else ""
        issues.append(Issue("ERROR", f"Schema error{f' ({loc})' if loc else ''}: {err.message}", str(schema_path)))


def _validate_panel(cfg: Any, issues: list[Issue]) -> None:
    if not isinstance(cfg, dict):
        issues.append(Issue("ERROR", "panel.json must be an object."))
        return
    control = cfg.get("control") or {}
    default = control.get("default_override_seconds")
    maximum = control.get("max_override_seconds")
    if isinstance(default, int) and isinstance(maximum, int) and default > maximum:
        issues.append(Issue("ERROR", "default_override_seconds exceeds max_override_seconds.", "panel.control"))
    stale = control.get("device_stale_seconds")
    if isinstance(stale, int) and stale < 30:
        issues.append(Issue("WARN", f"device_stale_seconds is very low: {stale}", "panel.control"))
    alerting = cfg.get("alerting") or {}
    if alerting.get("enabled") is False:
        issues.append(Issue("WARN", "alert evaluation is disabled.", "panel.alerting"))


def _validate_demo_farm(cfg: Any, issues: list[Issue]) -> None:
    if not isinstance(cfg, dict):
        issues.append(Issue("ERROR", "demo_farm.json must be an object."))
        return
    polyhouses: dict[str, set[str]] = {}
    for i, ph in enumerate(cfg.get("polyhouses") or []):
        name = ph.get("name") if isinstance(ph, dict) else None
        if not isinstance(name, str):
            continue
        if name in polyhouses:
            issues.append(Issue("ERROR", f"duplicate polyhouse name: {name}", f"polyhouses[{i}]"))
        polyhouses[name] = {z.get("name") for z in ph.get("zones") or [] if isinstance(z, dict)}
    for i, device in enumerate(cfg.get("devices") or []):
        if not isinstance(device, dict):
            continue
        where = f"devices[{i}]"
        ph_name = device.get("polyhouse")
        zone_name = device.get("zone")
        if ph_name is not None and ph_name not in polyhouses:
            issues.append(Issue("ERROR", f"unknown polyhouse: {ph_name!r}", where))
        elif zone_name is not None and (ph_name is None or zone_name not in polyhouses.get(ph_name, set())):
            issues.append(Issue("ERROR", f"unknown zone: {zone_name!r}", where))


def check_environment(env: Mapping[str, str], issues: list[Issue]) -> None:
    app_env = (env.get("APP_ENV") or "development").strip().lower()
    if app_env not in ("development", "production"):
        issues.append(Issue("WARN", f"APP_ENV is neither development nor production: {app_env!r}", "env"))
    try:
        transport = mailer.resolve_transport(env)
        print(f"[INFO] mail transport: {transport.provider} ({transport.host}:{transport.port})")
    except mailer.MailerConfigError as exc:
        level = "ERROR" if app_env == "production" else "WARN"
        issues.append(Issue(level, f"mail transport: {exc}", "env"))
    if app_env == "production":
        if not env.get("JWT_SECRET"):
            issues.append(Issue("ERROR", "JWT_SECRET must be set in production.", "env"))
        elif len(env["JWT_SECRET"]) < 32:
            issues.append(Issue("WARN", "JWT_SECRET is shorter than 32 characters.", "env"))
        if env.get("BYPASS_OTP"):
            issues.append(Issue("WARN", "BYPASS_OTP is ignored in production.", "env"))
        if not env.get("NODE_TOKENS"):
            issues.append(Issue("ERROR", "NODE_TOKENS is empty; telemetry would be rejected.", "env"))
        if not (env.get("TWILIO_SID") and env.get("TWILIO_AUTH_TOKEN") and env.get("TWILIO_FROM_NUMBER")):
            issues.append(Issue("WARN", "Twilio is not configured; SMS OTP and alerts will fail.", "env"))
    elif not env.get("NODE_TOKENS") and env.get("SIMULATION_MODE") != "1":
        issues.append(Issue("WARN", "NODE_TOKENS is empty and SIMULATION_MODE is off; telemetry is rejected.", "env"))


def run(config_dir: Path, env: Mapping[str, str]) -> list[Issue]:
    schema_dir = config_dir / "schema"
    config_files: dict[str, tuple[str, Callable[[Any, list[Issue]], None]]] = {
        "panel.json": ("panel.schema.json", _validate_panel),
        "demo_farm.json": ("demo_farm.schema.json", _validate_demo_farm),
    }
    issues: list[Issue] = []
    for filename, (schema_name, custom_validator) in config_files.items():
        path = config_dir / filename
        cfg = _load_json(path, issues)
        if cfg is None:
            continue
        schema_path = schema_dir / schema_name
        if schema_path.exists():
            _schema_validate(cfg, schema_path, issues)
        else:
            issues.append(Issue("WARN", "Schema file missing (schema validation skipped).", str(schema_path)))
        custom_validator(cfg, issues)
    check_environment(env, issues)
    return issues


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="HydroBloom quick check (config, schema and environment).")
    parser.add_argument("--strict", action="store_true", help="Treat warnings as errors.")
    parser.add_argument("--config-dir", type=Path, default=_repo_root() / "config")
    args = parser.parse_args(argv)

    issues = run(args.config_dir, os.environ)
    errors = [i for i in issues if i.level == "ERROR"]
    warns = [i for i in issues if i.level == "WARN"]

    for issue in issues:
        print(issue.format())

    if not issues:
        print("[OK] All clean.")

    if errors:
        print(f"[FAIL] {len(errors)} errors, {len(warns)} warnings.")
        return 1

    if args.strict and warns:
        print(f"[FAIL] strict mode: {len(warns)} warnings counted as errors.")
        return 1

    print(f"[OK] {len(warns)} warnings.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
