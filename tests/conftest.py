"""Shared test fixtures for taskstream."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest
import yaml
from fastapi.testclient import TestClient

from core.errors import OperationError
from services.operations import Operation, OperationCatalog, OperationContext

ADMIN_PASSWORD = "test-admin-password"


def write_config(path: Path, **overrides: dict) -> Path:
    data = {
        "security": {"admin_user": "admin", "admin_password": ADMIN_PASSWORD, "token_ttl": 3600},
        "tasks": {"grace_period": 300, "sweep_interval": 60, "watchdog_interval": 60},
        "terminal": {"shell": ["/bin/sh"], "banner": False, "cwd": str(path.parent)},
        "logging": {"level": "DEBUG", "console": {"enabled": False}, "file": {"enabled": False}},
    }
    for section, values in overrides.items():
        data.setdefault(section, {}).update(values)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    return write_config(tmp_path / "config.yaml")


# ── demo operations used across runner / hub / gateway tests ──

async def _emit_success(ctx: OperationContext, target: str, options: dict) -> None:
    ctx.log(f"Installing PHP {target}...")
    ctx.log("Done")


async def _emit_failure(ctx: OperationContext, target: str, options: dict) -> None:
    ctx.log("Installing...")
    ctx.log("Error: package not found")
    raise OperationError("package not found")


async def _sleep(ctx: OperationContext, target: str, options: dict) -> None:
    ctx.log("waiting")
    await asyncio.sleep(float(options.get("seconds", 30)))
    ctx.log("woke up")


async def _gated(ctx: OperationContext, target: str, options: dict) -> None:
    gate: asyncio.Event = options["gate"]
    ctx.log("before gate")
    await gate.wait()
    ctx.log("after gate")


async def _python(ctx: OperationContext, target: str, options: dict) -> None:
    await ctx.run([sys.executable, "-c", options["code"]])


def register_demo_operations(catalog: OperationCatalog) -> OperationCatalog:
    catalog.register(Operation("demo", "install", _emit_success))
    catalog.register(Operation("demo", "broken", _emit_failure))
    catalog.register(Operation("demo", "sleep", _sleep))
    catalog.register(Operation("demo", "gated", _gated))
    catalog.register(Operation("demo", "python", _python))
    return catalog


@pytest.fixture()
def demo_catalog() -> OperationCatalog:
    return register_demo_operations(OperationCatalog())


@pytest.fixture()
def app(config_file: Path):
    from main import create_app

    application = create_app(str(config_file))
    register_demo_operations(application.state.task_runner.catalog)
    return application


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def admin_token(app) -> str:
    return app.state.auth_service.issue_token("admin")


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll a condition from the test thread while the app loop runs in the portal."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
