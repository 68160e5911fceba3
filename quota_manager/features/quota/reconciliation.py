"""
Quota reconciliation job.

Checks, for every user with lots:
1. store total vs the ledger's valid-lot sum
2. audit net delta (recharges + expiries) vs the ledger's valid-lot sum

With fix=True the ledger total is pushed to the store. Audit mismatches are
reported only; the audit trail is append-only.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select

from quota_manager.core.database import get_db_session, quota_lots
from quota_manager.core.errors import AppError
from quota_manager.core.logging import bind_run_id, log_event
from quota_manager.features.audit.service import sum_user_audit
from quota_manager.features.quota.jobs import record_job_run
from quota_manager.features.quota.ledger import sum_valid_lots
from quota_manager.features.quota.store import QuotaStore, get_quota_store
from quota_manager.features.quota.unit import quota_unit
from quota_manager.models.quota import utc_now

JOB_NAME = "quota.reconcile"
TOLERANCE = 1e-9


def _ledger_users() -> List[str]:
    with get_db_session() as session:
        rows = session.execute(
            select(quota_lots.c.user_id).distinct().order_by(quota_lots.c.user_id.asc())
        ).fetchall()
    return [row[0] for row in rows]


def _fix_store_total(user_id: str, store: QuotaStore) -> float:
    with quota_unit(user_id, store=store) as unit:
        ledger_total = sum_valid_lots(unit.db, user_id)
        unit.stage(total=ledger_total)
    return ledger_total


def run_reconciliation(*, store: Optional[QuotaStore] = None, fix: bool = False) -> Dict[str, Any]:
    """
    Compare store and audit totals against the ledger for every user with lots.

    Returns:
        Report dict with mismatches, fixes applied and per-user store errors
    """
    store = store or get_quota_store()

    with bind_run_id() as run_id:
        started_at = utc_now()
        mismatches: List[Dict[str, Any]] = []
        fixed: List[str] = []
        errors: List[Dict[str, Any]] = []

        for user_id in _ledger_users():
            with get_db_session() as session:
                ledger_total = sum_valid_lots(session, user_id)
                audit_total = sum_user_audit(session, user_id)
            try:
                store_total: Optional[float] = float(store.get_total(user_id))
            except AppError as exc:
                store_total = None
                errors.append({"user_id": user_id, **exc.to_dict()})
                log_event(
                    "error",
                    "quota.reconcile.read_failed",
                    user_id=user_id,
                    error_code=exc.code,
                    extra={"error": exc.message},
                )

            if store_total is not None and abs(store_total - ledger_total) > TOLERANCE:
                mismatches.append({
                    "user_id": user_id,
                    "type": "store_total",
                    "ledger_total": ledger_total,
                    "observed": store_total,
                    "difference": store_total - ledger_total,
                })
                log_event(
                    "warning",
                    "quota.reconcile.mismatch",
                    user_id=user_id,
                    error_code="store_drift",
                    extra={"ledger_total": ledger_total, "store_total": store_total},
                )
                if fix:
                    try:
                        _fix_store_total(user_id, store)
                        fixed.append(user_id)
                        log_event("info", "quota.reconcile.fixed", user_id=user_id, extra={"total": ledger_total})
                    except AppError as exc:
                        errors.append({"user_id": user_id, **exc.to_dict()})
                        log_event(
                            "error",
                            "quota.reconcile.fix_failed",
                            user_id=user_id,
                            error_code=exc.code,
                            extra={"error": exc.message},
                        )

            if abs(audit_total - ledger_total) > TOLERANCE:
                mismatches.append({
                    "user_id": user_id,
                    "type": "audit_sum",
                    "ledger_total": ledger_total,
                    "observed": audit_total,
                    "difference": audit_total - ledger_total,
                })
                log_event(
                    "warning",
                    "quota.reconcile.mismatch",
                    user_id=user_id,
                    error_code="audit_drift",
                    extra={"ledger_total": ledger_total, "audit_total": audit_total},
                )

        stats = {"mismatches": len(mismatches), "fixed": len(fixed), "errors": len(errors)}
        record_job_run(
            JOB_NAME,
            run_id=run_id,
            started_at=started_at,
            status="success" if not errors else "partial",
            stats=stats,
        )

    unresolved = [m for m in mismatches if not (m["type"] == "store_total" and m["user_id"] in fixed)]
    if unresolved:
        status = "mismatch"
    elif errors:
        status = "error"
    else:
        status = "fixed" if mismatches else "ok"
    return {
        "run_id": run_id,
        "status": status,
        "mismatches": mismatches,
        "fixed": fixed,
        "errors": errors,
        "timestamp": started_at.isoformat(),
    }
