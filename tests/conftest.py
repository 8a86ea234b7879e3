"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from nightshift.config import Settings
from nightshift.orchestrator.models import Project
from nightshift.orchestrator.repository import TaskRepository

ECHO_AGENT_COMMAND = f"{sys.executable} -m nightshift.orchestrator.agents.echo_agent"
SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture(autouse=True)
def _echo_agent_importable(monkeypatch) -> None:
    """Agent subprocesses must import nightshift even from a plain checkout."""

    existing = os.environ.get("PYTHONPATH")
    paths = [str(SRC_DIR), existing] if existing else [str(SRC_DIR)]
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(paths))


@pytest.fixture()
def echo_agent(monkeypatch, tmp_path: Path) -> Path:
    """Point the claude-code adapter at the scripted echo agent; return the db path."""

    db_path = tmp_path / "nightshift.db"
    monkeypatch.setenv("NIGHTSHIFT_DB_PATH", str(db_path))
    monkeypatch.setenv("NIGHTSHIFT_LOGS_ROOT", str(tmp_path / "logs"))
    monkeypatch.setenv("NIGHTSHIFT_PLANS_DIR", str(tmp_path / "plans"))
    monkeypatch.setenv("NIGHTSHIFT_CLAUDE_COMMAND", ECHO_AGENT_COMMAND)
    monkeypatch.setenv("NIGHTSHIFT_DEFAULT_AGENT", "claude-code")
    monkeypatch.setenv("NIGHTSHIFT_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("NIGHTSHIFT_KILL_GRACE_SECONDS", "1")
    monkeypatch.setenv("NIGHTSHIFT_PROBE_TIMEOUT_SECONDS", "20")
    monkeypatch.setenv("NIGHTSHIFT_ECHO_PROBE", "ok")
    monkeypatch.delenv("NIGHTSHIFT_DEFAULT_MODEL", raising=False)
    monkeypatch.delenv("NIGHTSHIFT_MAX_CONCURRENT_TASKS", raising=False)
    return db_path


@pytest.fixture()
def echo_settings(echo_agent: Path) -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


@pytest.fixture()
def repository(tmp_path: Path):
    repo = TaskRepository(tmp_path / "tasks.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def project(tmp_path: Path, repository: TaskRepository) -> Project:
    workdir = tmp_path / "workspace"
    workdir.mkdir()
    return repository.upsert_project(Project(project_id="demo", name="Demo", path=str(workdir)))
