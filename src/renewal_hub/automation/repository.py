"""Persistence for automation config, log entries and generated credentials."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from renewal_hub.automation.models import (
    AutomationConfigUpdate,
    AutomationConfigView,
    AutomationLogView,
    GeneratedCredentialView,
    LogStatus,
)
from renewal_hub.registry.models import Credentials
from renewal_hub.storage.common import (
    optional_aware,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from renewal_hub.storage.database import Database
from renewal_hub.storage.sqlmodel_models import (
    AutomationConfigRecord,
    AutomationLogRecord,
    GeneratedCredentialRecord,
)

logger = logging.getLogger(__name__)

CONFIG_ROW_ID = 1


class AutomationRepository:
    """Automation switchboard backed by the singleton config row."""

    def __init__(self, database: Database) -> None:
        self.database = database
        self.engine = database.engine

    def get_config(self) -> AutomationConfigView:
        with Session(self.engine) as session:
            row = _config_row(session)
            return _to_config_view(row)

    def update_config(self, update: AutomationConfigUpdate) -> AutomationConfigView:
        update.validate()
        changes = update.changes()
        with Session(self.engine) as session:
            row = _config_row(session)
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_config_view(row)
        if changes:
            logger.info("Automation config updated: %s", sorted(changes))
        return view

    def mark_batch_enqueued(self, *, now: datetime | None = None) -> None:
        now = now or utc_now()
        with Session(self.engine) as session:
            _config_row(session)
            session.exec(
                sa_update(AutomationConfigRecord)
                .where(col(AutomationConfigRecord.id) == CONFIG_ROW_ID)
                .values(last_batch_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            session.commit()

    def append_log(
        self,
        *,
        task_kind: str,
        status: LogStatus,
        username: str | None = None,
        message: str | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                AutomationLogRecord(
                    task_kind=task_kind,
                    status=status.value,
                    username=username,
                    message=message,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def list_logs(self, *, limit: int = 50) -> list[AutomationLogView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AutomationLogRecord)
                .order_by(
                    col(AutomationLogRecord.created_at).desc(),
                    col(AutomationLogRecord.id).desc(),
                )
                .limit(limit),
            ).all()
        return [
            AutomationLogView(
                id=row.id or 0,
                task_kind=row.task_kind,
                status=LogStatus(row.status),
                username=row.username,
                message=row.message,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def list_generated_credentials(self, *, limit: int = 50) -> list[GeneratedCredentialView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GeneratedCredentialRecord)
                .order_by(col(GeneratedCredentialRecord.id).desc())
                .limit(limit),
            ).all()
        return [
            GeneratedCredentialView(
                id=row.id or 0,
                task_id=row.task_id,
                username=row.username,
                secret=row.secret,
                source=row.source,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]


def record_generated_credentials(
    session: Session,
    *,
    task_id: str,
    source: str,
    credentials: Sequence[Credentials],
    now: datetime,
) -> int:
    """Store credentials produced by a generation task and bump the counter."""

    for item in credentials:
        session.add(
            GeneratedCredentialRecord(
                task_id=task_id,
                username=item.username,
                secret=item.secret,
                source=source,
                created_at=to_db_datetime(now),
            ),
        )
    if credentials:
        _config_row(session)
        session.exec(
            sa_update(AutomationConfigRecord)
            .where(col(AutomationConfigRecord.id) == CONFIG_ROW_ID)
            .values(
                total_generated=AutomationConfigRecord.total_generated + len(credentials),
                updated_at=to_db_datetime(now),
            ),
        )
    return len(credentials)


def _config_row(session: Session) -> AutomationConfigRecord:
    row = session.get(AutomationConfigRecord, CONFIG_ROW_ID)
    if row is None:
        row = AutomationConfigRecord(id=CONFIG_ROW_ID, updated_at=to_db_datetime(utc_now()))
        session.add(row)
        session.flush()
    return row


def _to_config_view(row: AutomationConfigRecord) -> AutomationConfigView:
    return AutomationConfigView(
        enabled=row.enabled,
        batch_size=row.batch_size,
        interval_minutes=row.interval_minutes,
        advance_minutes=row.advance_minutes,
        last_batch_at=optional_aware(row.last_batch_at),
        total_generated=row.total_generated,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
