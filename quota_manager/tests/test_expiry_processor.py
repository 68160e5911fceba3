"""
Expiry pass tests.

Scenarios mirror the production accounting cases: a single expiring lot,
an expiring lot larger than usage next to a surviving lot, and one smaller
than usage.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from quota_manager.core.database import get_db_session, quota_lots
from quota_manager.core.metrics import quota_expiry_failures_total, quota_lots_expired_total
from quota_manager.features.audit.service import get_user_audit
from quota_manager.features.quota.expiry import find_expired_lots, run_expiry_pass
from quota_manager.features.quota.jobs import get_job_runs
from quota_manager.features.quota.ledger import count_expired_lots, count_valid_lots, get_lot
from quota_manager.models.quota import AuditOperation, LotStatus
from quota_manager.tests.mocks import FlakyQuotaStore


def expire_deltas(user_id):
    with get_db_session() as session:
        return [e.amount for e in get_user_audit(session, user_id, AuditOperation.EXPIRE)]


def test_single_lot_scenario(store, grant_lot, past):
    lot = grant_lot("user-a", 100, past)
    store.set_used("user-a", 30)

    report = run_expiry_pass(store=store)

    assert report.ok
    assert report.expired == [lot.id]
    with get_db_session() as session:
        assert get_lot(session, lot.id).status == LotStatus.EXPIRED
        assert count_valid_lots(session, "user-a") == 0
    assert store.get_total("user-a") == 0
    assert store.get_used("user-a") == 0
    assert expire_deltas("user-a") == [-100]


def test_used_below_expiring_amount_scenario(store, grant_lot, past, future):
    grant_lot("user-b", 110, past)
    grant_lot("user-b", 80, future)
    store.set_used("user-b", 30)

    report = run_expiry_pass(store=store)

    assert report.ok
    assert len(report.expired) == 1
    assert store.get_total("user-b") == 80
    assert store.get_used("user-b") == 0
    assert expire_deltas("user-b") == [-110]
    with get_db_session() as session:
        assert count_valid_lots(session, "user-b") == 1
        assert count_expired_lots(session, "user-b") == 1


def test_used_above_expiring_amount_scenario(store, grant_lot, past, future):
    grant_lot("user-c", 10, past)
    grant_lot("user-c", 100, future)
    store.set_used("user-c", 40)

    report = run_expiry_pass(store=store)

    assert report.ok
    assert store.get_total("user-c") == 100
    assert store.get_used("user-c") == 30
    assert expire_deltas("user-c") == [-10]


def test_all_three_scenarios_in_one_pass(store, grant_lot, past, future):
    grant_lot("user-a", 100, past)
    grant_lot("user-b", 110, past)
    grant_lot("user-b", 80, future)
    grant_lot("user-c", 10, past)
    grant_lot("user-c", 100, future)
    store.set_used("user-a", 30)
    store.set_used("user-b", 30)
    store.set_used("user-c", 40)

    report = run_expiry_pass(store=store, max_workers=3)

    assert report.ok
    assert report.scanned == 3
    assert len(report.expired) == 3
    assert (store.get_total("user-a"), store.get_used("user-a")) == (0, 0)
    assert (store.get_total("user-b"), store.get_used("user-b")) == (80, 0)
    assert (store.get_total("user-c"), store.get_used("user-c")) == (100, 30)
    assert quota_lots_expired_total.value() == 3


def test_lot_expiring_exactly_now_is_included(store, grant_lot):
    now = datetime(2030, 1, 31, 15, 59, 59, tzinfo=timezone.utc)
    lot = grant_lot("user-a", 5, now)

    report = run_expiry_pass(now, store=store)

    assert report.expired == [lot.id]


def test_future_lots_are_untouched(store, grant_lot, future):
    grant_lot("user-a", 100, future)

    report = run_expiry_pass(store=store)

    assert report.scanned == 0
    assert report.expired == []
    assert store.get_total("user-a") == 100


def test_one_user_failure_does_not_block_others(grant_lot, past):
    flaky = FlakyQuotaStore()
    good = grant_lot("user-good", 100, past, lot_store=flaky)
    bad = grant_lot("user-bad", 50, past, lot_store=flaky)
    flaky.fail_users = {"user-bad"}

    report = run_expiry_pass(store=flaky)

    assert not report.ok
    assert report.expired == [good.id]
    assert [(f.lot_id, f.user_id, f.code) for f in report.failures] == [(bad.id, "user-bad", "sync_failed")]
    with get_db_session() as session:
        assert get_lot(session, bad.id).status == LotStatus.VALID
    assert flaky.get_total("user-bad") == 50
    assert expire_deltas("user-bad") == []
    assert quota_expiry_failures_total.value({"code": "sync_failed"}) == 1


def test_failed_lot_expires_on_retry(grant_lot, past):
    flaky = FlakyQuotaStore(failures=2)
    lot = grant_lot("user-a", 50, past, lot_store=flaky)
    flaky.fail_users = {"user-a"}

    first = run_expiry_pass(store=flaky)
    second = run_expiry_pass(store=flaky)

    assert [f.lot_id for f in first.failures] == [lot.id]
    assert second.ok
    assert second.expired == [lot.id]
    assert flaky.get_total("user-a") == 0


def test_user_lots_are_processed_oldest_expiry_first(store, grant_lot):
    base = datetime.now(timezone.utc) - timedelta(days=10)
    newer = grant_lot("user-a", 20, base + timedelta(days=2))
    oldest = grant_lot("user-a", 10, base)
    tie_a = grant_lot("user-a", 30, base + timedelta(days=5))
    tie_b = grant_lot("user-a", 40, base + timedelta(days=5))
    store.set_used("user-a", 25)

    report = run_expiry_pass(store=store)

    assert report.expired == [oldest.id, newer.id, tie_a.id, tie_b.id]
    with get_db_session() as session:
        entries = get_user_audit(session, "user-a", AuditOperation.EXPIRE)
    assert [e.lot_id for e in entries] == [oldest.id, newer.id, tie_a.id, tie_b.id]
    # 25 -> 15 -> 0 -> 0 -> 0
    assert [e.details["used_after"] for e in entries] == [15.0, 0.0, 0.0, 0.0]
    assert store.get_total("user-a") == 0


def test_already_expired_lot_reports_state_error(store, grant_lot, past, monkeypatch):
    lot = grant_lot("user-a", 10, past)
    with get_db_session() as session:
        due = find_expired_lots(session, datetime.now(timezone.utc))
    assert [d.id for d in due] == [lot.id]

    from quota_manager.features.quota import expiry as expiry_module

    # A concurrent pass wins the race right after the scan
    def stale_scan(session, now, limit=None):
        rows = find_expired_lots(session, now, limit)
        session.execute(update(quota_lots).values(status="expired"))
        return rows

    monkeypatch.setattr(expiry_module, "find_expired_lots", stale_scan)
    report = run_expiry_pass(store=store)

    assert report.expired == []
    assert [f.code for f in report.failures] == ["invalid_state"]


def test_batch_limit_caps_scan(store, grant_lot, past):
    for _ in range(3):
        grant_lot("user-a", 1, past)

    report = run_expiry_pass(store=store, limit=2)

    assert report.scanned == 2
    assert store.get_total("user-a") == 1


def test_pass_records_job_run(store, grant_lot, past):
    grant_lot("user-a", 10, past)

    report = run_expiry_pass(store=store)

    runs = get_job_runs("quota.expire")
    assert len(runs) == 1
    assert runs[0]["run_id"] == report.run_id
    assert runs[0]["status"] == "success"
    assert runs[0]["stats"] == {"scanned": 1, "expired": 1, "failed": 0}


@pytest.mark.parametrize("workers", [1, 4])
def test_many_users_in_parallel(store, grant_lot, past, workers):
    ids = [grant_lot(f"user-{i}", 10, past).id for i in range(8)]

    report = run_expiry_pass(store=store, max_workers=workers)

    assert sorted(report.expired) == sorted(ids)
    assert all(store.get_total(f"user-{i}") == 0 for i in range(8))
