"""Resource ledger: per-owner credit pools with race-free deduct and refund.

Every mutation is a single guarded ``UPDATE`` evaluated by the database under
its write lock, never a read-modify-write through application memory. On
SQLite the statement takes the database write lock; on a server database the
pool row is selected ``FOR UPDATE`` inside the same statement.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import case
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
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
from creation_jobs.storage.sqlmodel_models import ResourcePool

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_DAYS = 30

LOGO_CREDITS = "logo"
MOCKUP_CREDITS = "mockup"

TIER_ALLOCATIONS: dict[str, dict[str, int]] = {
    "free": {LOGO_CREDITS: 4, MOCKUP_CREDITS: 4},
    "starter": {LOGO_CREDITS: 20, MOCKUP_CREDITS: 30},
    "pro": {LOGO_CREDITS: 50, MOCKUP_CREDITS: 100},
    "agency": {LOGO_CREDITS: 200, MOCKUP_CREDITS: 500},
}


@dataclass(slots=True)
class ResourcePoolView:
    """Readable snapshot of one credit pool."""

    owner_id: str
    resource_type: str
    remaining: int
    used: int
    period_start: datetime
    period_end: datetime
    last_refill_at: datetime

    @property
    def total(self) -> int:
        return self.remaining + self.used


class ResourceLedger:
    """Credit pool persistence facade backed by SQLModel + SQLite."""

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

    def deduct(self, owner_id: str, resource_type: str, amount: int = 1) -> bool:
        """Take ``amount`` from the owner's active pool; false when it cannot cover it."""

        _check_amount(amount)
        now = to_db_datetime(self.clock())
        target = (
            select(ResourcePool.pool_id)
            .where(
                ResourcePool.owner_id == owner_id,
                ResourcePool.resource_type == resource_type,
                col(ResourcePool.remaining) >= amount,
                col(ResourcePool.period_end) > now,
            )
            .order_by(col(ResourcePool.period_end).asc())
            .limit(1)
            .with_for_update()
            .scalar_subquery()
        )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResourcePool)
                .where(
                    col(ResourcePool.pool_id) == target,
                    col(ResourcePool.remaining) >= amount,
                )
                .values(
                    remaining=col(ResourcePool.remaining) - amount,
                    used=col(ResourcePool.used) + amount,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.info(
                    "Insufficient %s credits for owner %s (need %d)",
                    resource_type,
                    owner_id,
                    amount,
                )
                return False
            session.commit()
        logger.debug("Deducted %d %s credits from owner %s", amount, resource_type, owner_id)
        return True

    def refund(self, owner_id: str, resource_type: str, amount: int = 1) -> int | None:
        """Return ``amount`` to the owner's active pool and report the new remaining.

        ``used`` never drops below zero. Returns ``None`` when the owner has no
        active pool to refund into.
        """

        _check_amount(amount)
        now = to_db_datetime(self.clock())
        target = (
            select(ResourcePool.pool_id)
            .where(
                ResourcePool.owner_id == owner_id,
                ResourcePool.resource_type == resource_type,
                col(ResourcePool.period_end) > now,
            )
            .order_by(col(ResourcePool.period_end).asc())
            .limit(1)
            .with_for_update()
            .scalar_subquery()
        )
        used = col(ResourcePool.used)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ResourcePool)
                .where(col(ResourcePool.pool_id) == target)
                .values(
                    remaining=col(ResourcePool.remaining) + amount,
                    used=case((used > amount, used - amount), else_=0),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "No active %s pool to refund %d credits into for owner %s",
                    resource_type,
                    amount,
                    owner_id,
                )
                return None
            row = self._active_pool(session=session, owner_id=owner_id, resource_type=resource_type)
            remaining = row.remaining if row is not None else 0
            session.commit()
        logger.info(
            "Refunded %d %s credits to owner %s (remaining=%d)",
            amount,
            resource_type,
            owner_id,
            remaining,
        )
        return remaining

    def refill(
        self,
        owner_id: str,
        resource_type: str,
        amount: int,
        *,
        period_days: int = DEFAULT_PERIOD_DAYS,
        period_start: datetime | None = None,
    ) -> ResourcePoolView:
        """Start (or reset) the pool for a billing period; unused credits do not roll over."""

        if amount < 0:
            raise ValueError(f"Refill amount must be >= 0, got {amount}")
        if period_days <= 0:
            raise ValueError(f"Refill period must be > 0 days, got {period_days}")
        now = self.clock()
        start = period_start or now
        end = start + timedelta(days=period_days)
        with Session(self.engine) as session:
            session.add(
                ResourcePool(
                    owner_id=owner_id,
                    resource_type=resource_type,
                    remaining=amount,
                    used=0,
                    period_start=to_db_datetime(start),
                    period_end=to_db_datetime(end),
                    last_refill_at=to_db_datetime(now),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                session.exec(
                    sa_update(ResourcePool)
                    .where(
                        col(ResourcePool.owner_id) == owner_id,
                        col(ResourcePool.resource_type) == resource_type,
                        col(ResourcePool.period_start) == to_db_datetime(start),
                    )
                    .values(
                        remaining=amount,
                        used=0,
                        last_refill_at=to_db_datetime(now),
                    ),
                )
                session.commit()

            row = session.exec(
                select(ResourcePool).where(
                    ResourcePool.owner_id == owner_id,
                    ResourcePool.resource_type == resource_type,
                    ResourcePool.period_start == to_db_datetime(start),
                ),
            ).one()
            view = _to_pool_view(row)
        logger.info(
            "Refilled %s pool for owner %s with %d credits until %s",
            resource_type,
            owner_id,
            amount,
            view.period_end.isoformat(),
        )
        return view

    def refill_tier(self, owner_id: str, tier: str) -> list[ResourcePoolView]:
        """Refill every credit type with the allocation of a subscription tier."""

        allocation = TIER_ALLOCATIONS.get(tier)
        if allocation is None:
            raise ValueError(
                f"Unknown subscription tier: {tier!r}. "
                f"Valid tiers: {', '.join(TIER_ALLOCATIONS)}.",
            )
        start = self.clock()
        return [
            self.refill(owner_id, resource_type, amount, period_start=start)
            for resource_type, amount in allocation.items()
        ]

    def balance(self, owner_id: str, resource_type: str) -> ResourcePoolView | None:
        """Active pool for the owner, or ``None`` when none is in its period."""

        with Session(self.engine) as session:
            row = self._active_pool(session=session, owner_id=owner_id, resource_type=resource_type)
            return _to_pool_view(row) if row is not None else None

    def list_pools(self, owner_id: str) -> list[ResourcePoolView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ResourcePool)
                .where(ResourcePool.owner_id == owner_id)
                .order_by(
                    col(ResourcePool.resource_type).asc(),
                    col(ResourcePool.period_end).desc(),
                ),
            ).all()
            return [_to_pool_view(row) for row in rows]

    def purge_expired(self, *, expired_before: datetime) -> int:
        """Delete pools whose period ended before the cutoff."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ResourcePool).where(
                    col(ResourcePool.period_end) < to_db_datetime(expired_before),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def _active_pool(
        self,
        *,
        session: Session,
        owner_id: str,
        resource_type: str,
    ) -> ResourcePool | None:
        return session.exec(
            select(ResourcePool)
            .where(
                ResourcePool.owner_id == owner_id,
                ResourcePool.resource_type == resource_type,
                col(ResourcePool.period_end) > to_db_datetime(self.clock()),
            )
            .order_by(col(ResourcePool.period_end).asc())
            .limit(1)
            .execution_options(populate_existing=True),
        ).first()


def _check_amount(amount: int) -> None:
    if amount <= 0:
        raise ValueError(f"Credit amount must be > 0, got {amount}")


def _to_pool_view(row: ResourcePool) -> ResourcePoolView:
    return ResourcePoolView(
        owner_id=row.owner_id,
        resource_type=row.resource_type,
        remaining=row.remaining,
        used=row.used,
        period_start=to_utc_aware_datetime(row.period_start),
        period_end=to_utc_aware_datetime(row.period_end),
        last_refill_at=to_utc_aware_datetime(row.last_refill_at),
    )
