from pathlib import Path

import allure
from sqlalchemy import text

from renewal_hub.storage.alembic_runner import head_revision
from renewal_hub.storage.database import Database

pytestmark = [
    allure.epic("Renewal Scheduling"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    database = Database(tmp_path / "migrations.db")
    database.init_schema()

    with database.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        assert version == "20261019_0001"
        assert version == head_revision(database.db_path)

        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars().all()
        assert tables == [
            "automation_config",
            "automation_log",
            "generated_credentials",
            "points",
            "systems",
            "task_events",
            "tasks",
        ]

        config = connection.execute(
            text("SELECT enabled, batch_size, total_generated FROM automation_config WHERE id = 1"),
        ).one()
        assert tuple(config) == (0, 10, 0)

        live_index = connection.execute(
            text("SELECT sql FROM sqlite_master WHERE name = 'uq_tasks_live_dedup_key'"),
        ).scalar_one()
        assert "WHERE status IN ('pending', 'leased')" in live_index
    database.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    database = Database(tmp_path / "twice.db")
    assert database.schema_revision() is None
    database.init_schema()
    database.init_schema()

    assert database.schema_is_current() is True
    with database.engine.connect() as connection:
        rows = connection.execute(text("SELECT COUNT(*) FROM automation_config")).scalar_one()
    assert rows == 1
    database.close()
