"""Idempotent persistence for pipeline side effects: assets and CRM sync log."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from creation_jobs.storage.alembic_runner import upgrade_head
from creation_jobs.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from creation_jobs.storage.sqlmodel_models import Asset, SyncLogEntry

logger = logging.getLogger(__name__)

SYNC_SUCCESS = "success"
SYNC_FAILED = "failed"
SYNC_UNHANDLED = "unhandled"


@dataclass(slots=True)
class AssetView:
    subject_id: str
    asset_type: str
    slot: int
    url: str | None
    source_job_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class SyncLogView:
    event_id: str
    owner_id: str | None
    event_type: str
    status: str
    request: Any
    response: Any
    error: str | None


class ArtifactRepository:
    """Natural-key upserts so redelivered jobs leave identical state."""

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def upsert_asset(  # noqa: PLR0913
        self,
        *,
        subject_id: str,
        asset_type: str,
        slot: int,
        url: str | None,
        source_job_id: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> AssetView:
        """Insert or update the asset at ``(subject_id, asset_type, slot)``.

        Writing the same values again is a no-op, timestamps included.
        """

        metadata_json = _dump(metadata or {})
        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            row = self._find_asset(session, subject_id=subject_id, asset_type=asset_type, slot=slot)
            if row is None:
                row = Asset(
                    subject_id=subject_id,
                    asset_type=asset_type,
                    slot=slot,
                    url=url,
                    source_job_id=source_job_id,
                    metadata_json=metadata_json,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    row = self._find_asset(
                        session,
                        subject_id=subject_id,
                        asset_type=asset_type,
                        slot=slot,
                    )
                    if row is None:
                        raise
                else:
                    session.refresh(row)
                    return _to_asset_view(row)

            if (row.url, row.source_job_id, row.metadata_json) != (url, source_job_id, metadata_json):
                row.url = url
                row.source_job_id = source_job_id
                row.metadata_json = metadata_json
                row.updated_at = now
                session.add(row)
                session.commit()
                session.refresh(row)
            return _to_asset_view(row)

    def get_asset(self, *, subject_id: str, asset_type: str, slot: int = 0) -> AssetView | None:
        with Session(self.engine) as session:
            row = self._find_asset(session, subject_id=subject_id, asset_type=asset_type, slot=slot)
            return _to_asset_view(row) if row is not None else None

    def list_assets(self, *, subject_id: str, asset_type: str | None = None) -> list[AssetView]:
        with Session(self.engine) as session:
            statement = select(Asset).where(Asset.subject_id == subject_id)
            if asset_type is not None:
                statement = statement.where(Asset.asset_type == asset_type)
            rows = session.exec(
                statement.order_by(col(Asset.asset_type).asc(), col(Asset.slot).asc()),
            ).all()
            return [_to_asset_view(row) for row in rows]

    def record_sync(  # noqa: PLR0913
        self,
        *,
        event_id: str,
        owner_id: str | None,
        event_type: str,
        status: str,
        request: Any,
        response: Any = None,
        error: str | None = None,
    ) -> SyncLogView:
        """Write the sync-log row for ``event_id``, replacing an earlier attempt's row."""

        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            row = session.exec(
                select(SyncLogEntry).where(SyncLogEntry.event_id == event_id),
            ).one_or_none()
            if row is None:
                row = SyncLogEntry(
                    event_id=event_id,
                    event_type=event_type,
                    status=status,
                    created_at=now,
                    updated_at=now,
                )
            row.owner_id = owner_id
            row.event_type = event_type
            row.status = status
            row.request_json = _dump(request)
            row.response_json = _dump(response) if response is not None else None
            row.error = error
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_sync_view(row)

    def get_sync(self, event_id: str) -> SyncLogView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SyncLogEntry).where(SyncLogEntry.event_id == event_id),
            ).one_or_none()
            return _to_sync_view(row) if row is not None else None

    def _find_asset(
        self,
        session: Session,
        *,
        subject_id: str,
        asset_type: str,
        slot: int,
    ) -> Asset | None:
        return session.exec(
            select(Asset).where(
                Asset.subject_id == subject_id,
                Asset.asset_type == asset_type,
                Asset.slot == slot,
            ),
        ).one_or_none()


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def _to_asset_view(row: Asset) -> AssetView:
    metadata = _load(row.metadata_json)
    return AssetView(
        subject_id=row.subject_id,
        asset_type=row.asset_type,
        slot=row.slot,
        url=row.url,
        source_job_id=row.source_job_id,
        metadata=metadata if isinstance(metadata, dict) else {},
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_sync_view(row: SyncLogEntry) -> SyncLogView:
    return SyncLogView(
        event_id=row.event_id,
        owner_id=row.owner_id,
        event_type=row.event_type,
        status=row.status,
        request=_load(row.request_json),
        response=_load(row.response_json),
        error=row.error,
    )
