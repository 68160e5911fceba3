from typing import Any, Dict, List, Optional
from datetime import datetime

from sqlalchemy import insert, select, func
from sqlalchemy.orm import Session

from quota_manager.core.database import quota_audit
from quota_manager.core.logging import log_event
from quota_manager.models.quota import AuditEntry, AuditOperation, as_utc, utc_now


def _safe_detail(value: Any, limit: int = 500):
    if value is None or isinstance(value, (bool, int, float)):
        return value
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def record_quota_audit(
    db: Session,
    *,
    user_id: str,
    amount: float,
    operation: AuditOperation,
    strategy_id: Optional[int] = None,
    strategy_name: Optional[str] = None,
    lot_id: Optional[int] = None,
    expiry_date: Optional[datetime] = None,
    details: Optional[Dict[str, Any]] = None,
) -> int:
    """Append a ledger delta to the audit table in the caller's transaction.

    Notes:
    - Nothing is committed here; the entry lives or dies with the enclosing unit.
    - Entries are never updated or deleted.
    - Numbers and booleans in details are kept as is; anything else is stored as truncated text.
    """
    operation = AuditOperation(operation)
    safe_details = None
    if details:
        safe_details = {k: _safe_detail(v) for k, v in details.items()}

    result = db.execute(
        insert(quota_audit).values(
            user_id=user_id,
            amount=float(amount),
            operation=operation.value,
            strategy_id=strategy_id,
            strategy_name=strategy_name,
            lot_id=lot_id,
            expiry_date=as_utc(expiry_date),
            details=safe_details,
            created_at=utc_now(),
        )
    )
    audit_id = result.inserted_primary_key[0]

    log_event(
        "info",
        "quota.audit",
        user_id=user_id,
        strategy_id=strategy_id,
        lot_id=lot_id,
        event_type=operation.value,
        extra={"amount": amount, "audit_id": audit_id},
    )
    return audit_id


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        user_id=row.user_id,
        amount=row.amount,
        operation=row.operation,
        strategy_id=row.strategy_id,
        strategy_name=row.strategy_name,
        lot_id=row.lot_id,
        expiry_date=as_utc(row.expiry_date),
        details=row.details,
        created_at=as_utc(row.created_at),
    )


def get_user_audit(db: Session, user_id: str, operation: Optional[AuditOperation] = None) -> List[AuditEntry]:
    query = select(quota_audit).where(quota_audit.c.user_id == user_id)
    if operation is not None:
        query = query.where(quota_audit.c.operation == AuditOperation(operation).value)
    rows = db.execute(query.order_by(quota_audit.c.id.asc())).fetchall()
    return [_row_to_entry(row) for row in rows]


def sum_user_audit(db: Session, user_id: str) -> float:
    """Net delta of recharges and expiries; consumption is tracked by the store, not here."""
    total = db.execute(
        select(func.coalesce(func.sum(quota_audit.c.amount), 0.0))
        .where(quota_audit.c.user_id == user_id)
        .where(quota_audit.c.operation.in_([AuditOperation.RECHARGE.value, AuditOperation.EXPIRE.value]))
    ).scalar()
    return float(total or 0.0)
