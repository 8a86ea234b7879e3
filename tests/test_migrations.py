from pathlib import Path

import allure
from sqlalchemy import text

from nightshift.orchestrator.repository import TaskRepository

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = TaskRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name NOT LIKE 'alembic%'
                ORDER BY name
                """,
            ),
        ).fetchall()
        indexes = connection.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'index' AND name LIKE 'uq_%'"),
        ).fetchall()

    assert version == "20261018_0001"
    assert [row[0] for row in tables] == [
        "projects",
        "task_events",
        "task_iterations",
        "tasks",
        "usage_limits",
    ]
    assert "uq_tasks_queued_position" in {row[0] for row in indexes}
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = TaskRepository(db_path)
    first.init_schema()
    first.close()

    second = TaskRepository(db_path)
    second.init_schema()
    assert second.list_projects() == []
    second.close()
