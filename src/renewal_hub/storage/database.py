"""Shared engine handle for all renewal-hub repositories."""

from __future__ import annotations

from pathlib import Path

from renewal_hub.storage.alembic_runner import current_revision, head_revision, upgrade_head
from renewal_hub.storage.common import build_sqlite_engine


class Database:
    """One SQLite file, one engine; repositories borrow sessions from it."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def schema_revision(self) -> str | None:
        return current_revision(self.engine)

    def schema_is_current(self) -> bool:
        return self.schema_revision() == head_revision(self.db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()
