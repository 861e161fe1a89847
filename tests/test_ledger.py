from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from creation_jobs.ledger import LOGO_CREDITS, MOCKUP_CREDITS, ResourceLedger

pytestmark = [
    allure.epic("Credits"),
    allure.feature("Resource Ledger"),
]


@pytest.fixture()
def ledger(db_path: Path, clock) -> Iterator[ResourceLedger]:
    instance = ResourceLedger(db_path, clock=clock)
    instance.init_schema()
    yield instance
    instance.close()


def test_deduct_until_exhausted(ledger: ResourceLedger) -> None:
    ledger.refill("owner-1", LOGO_CREDITS, 2)

    assert ledger.deduct("owner-1", LOGO_CREDITS) is True
    assert ledger.deduct("owner-1", LOGO_CREDITS) is True
    assert ledger.deduct("owner-1", LOGO_CREDITS) is False

    pool = ledger.balance("owner-1", LOGO_CREDITS)
    assert pool is not None
    assert (pool.remaining, pool.used, pool.total) == (0, 2, 2)


def test_deduct_without_pool_or_after_period_end(ledger: ResourceLedger, clock) -> None:
    assert ledger.deduct("nobody", LOGO_CREDITS) is False

    ledger.refill("owner-2", LOGO_CREDITS, 5, period_days=1)
    clock.advance(timedelta(days=1, seconds=1).total_seconds())
    assert ledger.deduct("owner-2", LOGO_CREDITS) is False
    assert ledger.balance("owner-2", LOGO_CREDITS) is None


def test_deduct_more_than_remaining_leaves_pool_untouched(ledger: ResourceLedger) -> None:
    ledger.refill("owner-3", MOCKUP_CREDITS, 3)

    assert ledger.deduct("owner-3", MOCKUP_CREDITS, 4) is False
    pool = ledger.balance("owner-3", MOCKUP_CREDITS)
    assert pool is not None
    assert (pool.remaining, pool.used) == (3, 0)


def test_refund_restores_credits_and_clamps_used(ledger: ResourceLedger) -> None:
    ledger.refill("owner-4", LOGO_CREDITS, 3)
    ledger.deduct("owner-4", LOGO_CREDITS)

    assert ledger.refund("owner-4", LOGO_CREDITS) == 3
    assert ledger.refund("owner-4", LOGO_CREDITS, 2) == 5
    pool = ledger.balance("owner-4", LOGO_CREDITS)
    assert pool is not None
    assert (pool.remaining, pool.used) == (5, 0)


def test_refund_without_active_pool_returns_none(ledger: ResourceLedger) -> None:
    assert ledger.refund("ghost", LOGO_CREDITS) is None


def test_amounts_must_be_positive(ledger: ResourceLedger) -> None:
    with pytest.raises(ValueError, match="must be > 0"):
        ledger.deduct("owner", LOGO_CREDITS, 0)
    with pytest.raises(ValueError, match="must be > 0"):
        ledger.refund("owner", LOGO_CREDITS, -1)
    with pytest.raises(ValueError, match="must be >= 0"):
        ledger.refill("owner", LOGO_CREDITS, -5)


def test_refill_same_period_resets_without_rollover(ledger: ResourceLedger, clock) -> None:
    start = clock()
    ledger.refill("owner-5", LOGO_CREDITS, 10, period_start=start)
    ledger.deduct("owner-5", LOGO_CREDITS, 4)

    pool = ledger.refill("owner-5", LOGO_CREDITS, 20, period_start=start)
    assert (pool.remaining, pool.used) == (20, 0)
    assert len(ledger.list_pools("owner-5")) == 1


def test_refill_tier_grants_every_credit_type(ledger: ResourceLedger) -> None:
    pools = ledger.refill_tier("owner-6", "starter")

    assert {pool.resource_type: pool.remaining for pool in pools} == {
        LOGO_CREDITS: 20,
        MOCKUP_CREDITS: 30,
    }
    with pytest.raises(ValueError, match="Unknown subscription tier"):
        ledger.refill_tier("owner-6", "platinum")


def test_purge_expired_removes_only_old_pools(ledger: ResourceLedger, clock) -> None:
    ledger.refill("owner-7", LOGO_CREDITS, 1, period_days=1)
    clock.advance(timedelta(days=2).total_seconds())
    ledger.refill("owner-7", MOCKUP_CREDITS, 1, period_days=30)

    assert ledger.purge_expired(expired_before=clock()) == 1
    assert [pool.resource_type for pool in ledger.list_pools("owner-7")] == [MOCKUP_CREDITS]


def test_concurrent_deducts_never_oversell(db_path: Path) -> None:
    setup = ResourceLedger(db_path)
    setup.init_schema()
    setup.refill("contended", LOGO_CREDITS, 5)

    results: list[bool] = []
    lock = threading.Lock()
    barrier = threading.Barrier(20)

    def attempt() -> None:
        ledger = ResourceLedger(db_path, busy_timeout_ms=30_000)
        barrier.wait()
        outcome = ledger.deduct("contended", LOGO_CREDITS)
        with lock:
            results.append(outcome)
        ledger.close()

    threads = [threading.Thread(target=attempt) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert len(results) == 20
    assert results.count(True) == 5
    pool = setup.balance("contended", LOGO_CREDITS)
    assert pool is not None
    assert (pool.remaining, pool.used) == (0, 5)
    setup.close()
