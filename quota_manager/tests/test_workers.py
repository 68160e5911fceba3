"""Worker entry points."""

import json

from quota_manager.workers import expire_quotas, reconcile_quota, run_strategies
from quota_manager.tests.mocks import FlakyQuotaStore
from quota_manager.features.quota.store import set_quota_store


def test_expire_quotas_worker_reports_and_exits_zero(store, grant_lot, past, capsys):
    lot = grant_lot("alice", 10, past)

    code = expire_quotas.main(["--workers", "2"])

    out = json.loads(capsys.readouterr().out)
    assert code == 0
    assert out["expired"] == [lot.id]
    assert store.get_total("alice") == 0


def test_expire_quotas_worker_exits_one_on_failure(grant_lot, past, capsys):
    flaky = FlakyQuotaStore()
    grant_lot("alice", 10, past, lot_store=flaky)
    flaky.fail_users = {"alice"}
    set_quota_store(flaky)

    code = expire_quotas.main([])

    out = json.loads(capsys.readouterr().out)
    assert code == 1
    assert out["failures"][0]["code"] == "sync_failed"


def test_expire_quotas_worker_accepts_now(store, grant_lot, future, capsys):
    grant_lot("alice", 10, future)

    code = expire_quotas.main(["--now", "2000-01-01T00:00:00Z"])

    assert code == 0
    assert json.loads(capsys.readouterr().out)["scanned"] == 0


def test_run_strategies_worker(store, make_strategy, make_user, capsys):
    make_strategy("welcome", amount=15)
    make_user("alice")

    code = run_strategies.main(["--strategy", "welcome"])

    out = json.loads(capsys.readouterr().out)
    assert code == 0
    assert out[0]["counts"] == {"completed": 1}
    assert store.get_total("alice") == 15


def test_reconcile_worker_fix(store, grant_lot, future, capsys):
    grant_lot("alice", 10, future)
    store.set_total("alice", 3)

    assert reconcile_quota.main([]) == 1
    capsys.readouterr()
    # audit has no recharge for a bare lot, so a mismatch remains even after the store fix
    assert reconcile_quota.main(["--fix"]) == 1
    assert store.get_total("alice") == 10
