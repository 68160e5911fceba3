"""
Quota expiry processor.

One pass finds every valid lot whose expiry date has passed and expires it.
Users are processed concurrently on a bounded thread pool; one user's lots
run sequentially, oldest expiry first (ties by lot id), each in its own
quota unit. A lot that fails stays valid, is reported, and the pass moves on.
"""
from __future__ import annotations

import contextvars
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from quota_manager.core.config import settings
from quota_manager.core.database import get_db_session, quota_lots
from quota_manager.core.errors import AppError, error_code
from quota_manager.core.logging import bind_run_id, log_event
from quota_manager.core.metrics import (
    quota_expiry_failures_total,
    quota_expiry_last_run_lots,
    quota_lots_expired_total,
)
from quota_manager.features.quota.jobs import record_job_run
from quota_manager.features.quota.ledger import _row_to_lot, expire_lot
from quota_manager.features.quota.store import QuotaStore, get_quota_store
from quota_manager.features.quota.unit import quota_unit
from quota_manager.models.quota import LotStatus, QuotaLot, as_utc, utc_now

JOB_NAME = "quota.expire"


@dataclass(frozen=True)
class ExpiryFailure:
    lot_id: int
    user_id: str
    code: str
    message: str


@dataclass
class ExpiryReport:
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    scanned: int = 0
    expired: List[int] = field(default_factory=list)
    failures: List[ExpiryFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "scanned": self.scanned,
            "expired": list(self.expired),
            "failures": [asdict(f) for f in self.failures],
        }


def find_expired_lots(db: Session, now: datetime, limit: Optional[int] = None) -> List[QuotaLot]:
    """Valid lots with expiry_date <= now, grouped by user, oldest expiry first."""
    query = (
        select(quota_lots)
        .where(quota_lots.c.status == LotStatus.VALID.value)
        .where(quota_lots.c.expiry_date <= as_utc(now))
        .order_by(quota_lots.c.user_id.asc(), quota_lots.c.expiry_date.asc(), quota_lots.c.id.asc())
    )
    if limit:
        query = query.limit(limit)
    return [_row_to_lot(row) for row in db.execute(query).fetchall()]


def _expire_user_lots(user_id: str, lots: List[QuotaLot], store: QuotaStore) -> Tuple[List[int], List[ExpiryFailure]]:
    expired: List[int] = []
    failures: List[ExpiryFailure] = []
    for lot in lots:
        try:
            with quota_unit(user_id, store=store) as unit:
                expire_lot(unit, lot.id)
        except AppError as exc:
            failures.append(ExpiryFailure(lot.id, user_id, exc.code, exc.message))
            quota_expiry_failures_total.inc({"code": exc.code})
            log_event(
                "warning",
                "quota.expiry.lot_failed",
                user_id=user_id,
                lot_id=lot.id,
                error_code=exc.code,
                extra={"error": exc.message},
            )
            continue
        except Exception as exc:
            code = error_code(exc)
            failures.append(ExpiryFailure(lot.id, user_id, code, str(exc)))
            quota_expiry_failures_total.inc({"code": code})
            log_event(
                "error",
                "quota.expiry.lot_failed",
                user_id=user_id,
                lot_id=lot.id,
                error_code=code,
                extra={"error": exc},
            )
            continue

        expired.append(lot.id)
        quota_lots_expired_total.inc()
        log_event(
            "info",
            "quota.expiry.lot_expired",
            user_id=user_id,
            lot_id=lot.id,
            event_type="expire",
            extra={"amount": lot.amount, "expiry_date": lot.expiry_date.isoformat()},
        )
    return expired, failures


def run_expiry_pass(
    now: Optional[datetime] = None,
    *,
    store: Optional[QuotaStore] = None,
    max_workers: Optional[int] = None,
    limit: Optional[int] = None,
) -> ExpiryReport:
    """
    Expire every valid lot due at `now` (default: current time).

    Args:
        store: Quota store to sync; the process-wide store if omitted
        max_workers: Users processed in parallel (EXPIRY_MAX_WORKERS)
        limit: Cap on lots scanned in this pass (EXPIRY_BATCH_LIMIT; 0 = all)

    Returns:
        ExpiryReport with expired lot ids and per-lot failures
    """
    now = as_utc(now) or utc_now()
    store = store or get_quota_store()
    workers = max(1, max_workers or settings.EXPIRY_MAX_WORKERS)
    limit = settings.EXPIRY_BATCH_LIMIT if limit is None else limit

    with bind_run_id() as run_id:
        report = ExpiryReport(run_id=run_id, started_at=utc_now())

        with get_db_session() as session:
            due = find_expired_lots(session, now, limit)
        report.scanned = len(due)

        by_user: "OrderedDict[str, List[QuotaLot]]" = OrderedDict()
        for lot in due:
            by_user.setdefault(lot.user_id, []).append(lot)

        log_event(
            "info",
            "quota.expiry.started",
            extra={"now": now.isoformat(), "lots": len(due), "users": len(by_user), "workers": workers},
        )

        if by_user:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="quota-expiry") as pool:
                futures = [
                    pool.submit(contextvars.copy_context().run, _expire_user_lots, user_id, lots, store)
                    for user_id, lots in by_user.items()
                ]
                for future in futures:
                    expired, failures = future.result()
                    report.expired.extend(expired)
                    report.failures.extend(failures)

        report.finished_at = utc_now()
        quota_expiry_last_run_lots.set(len(report.expired), {"outcome": "expired"})
        quota_expiry_last_run_lots.set(len(report.failures), {"outcome": "failed"})

        stats = {"scanned": report.scanned, "expired": len(report.expired), "failed": len(report.failures)}
        record_job_run(
            JOB_NAME,
            run_id=run_id,
            started_at=report.started_at,
            finished_at=report.finished_at,
            status="success" if report.ok else "partial",
            stats=stats,
        )
        log_event("info", "quota.expiry.finished", extra=stats)
    return report
