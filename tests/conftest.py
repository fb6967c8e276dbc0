from __future__ import annotations

import os

os.environ.setdefault("ORBIT_DATABASE_URL", "sqlite://")

from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from starlette.testclient import TestClient
from typer.testing import CliRunner

from orbit.config import ConfigManager
from orbit.db import init_db
from orbit.provision.context import ProvisionContext
from orbit.provision.log import ProvisionLogger
from orbit.provision.status import StatusStore


@pytest.fixture(autouse=True)
def orbit_dirs(tmp_path, monkeypatch):
    monkeypatch.setenv("ORBIT_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("ORBIT_LOG_DIR", str(tmp_path / "logs"))
    return tmp_path


@pytest.fixture
def log_dir(tmp_path) -> Path:
    return tmp_path / "logs"


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture
def store(db_engine) -> StatusStore:
    return StatusStore(db_engine)


@pytest.fixture
def config(tmp_path) -> ConfigManager:
    manager = ConfigManager(tmp_path / "config" / "config.json")
    manager.set("paths", [str(tmp_path / "projects")])
    manager.set("github_username", "owner")
    return manager


@pytest.fixture
def project(tmp_path) -> Path:
    """A checked-out Laravel-ish project skeleton."""
    path = tmp_path / "projects" / "demo-app"
    (path / "bootstrap").mkdir(parents=True)
    (path / "database").mkdir()
    (path / "artisan").write_text("#!/usr/bin/env php\n")
    (path / ".env.example").write_text(
        "APP_NAME=Laravel\nAPP_KEY=\nAPP_URL=http://localhost\nDB_CONNECTION=mysql\nDB_DATABASE=laravel\nMAIL_MAILER=log\n"
    )
    (path / "bootstrap" / "app.php").write_text(
        "<?php\n\n"
        "use Illuminate\\Foundation\\Application;\n"
        "use Illuminate\\Foundation\\Configuration\\Middleware;\n\n"
        "return Application::configure(basePath: dirname(__DIR__))\n"
        "    ->withMiddleware(function (Middleware $middleware): void {\n"
        "        //\n"
        "    })\n"
        "    ->create();\n"
    )
    return path


@pytest.fixture
def context(project) -> ProvisionContext:
    return ProvisionContext(slug="demo-app", project_path=project)


@pytest.fixture
def plog(log_dir) -> ProvisionLogger:
    return ProvisionLogger("demo-app", directory=log_dir)


@pytest.fixture()
def cli_runner(monkeypatch):
    import orbit.cli as cli

    # the provision command reconfigures the root logger with a file handler
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)
    return CliRunner(), cli.app


@pytest.fixture
def client():
    from orbit.main import app

    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
