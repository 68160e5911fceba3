"""
Quota ledger: dated lots and their effect on the quota store.

Every mutation takes a QuotaUnit (see unit.py) and stages the store's new
(total, used); nothing here commits or talks to the store directly.

- add_lot: new valid lot, capacity up by its amount
- expire_lot: lot flips to expired, capacity down by its amount, and the
  consumption counter carries over as max(0, used - amount)
- record_consumption: mirrors gateway-reported usage into the audit trail
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, insert, select, update
from sqlalchemy.orm import Session

from quota_manager.core.database import quota_lots
from quota_manager.core.errors import StateError, ValidationError
from quota_manager.features.audit.service import record_quota_audit
from quota_manager.features.quota.store import QuotaStore
from quota_manager.features.quota.unit import QuotaUnit
from quota_manager.models.quota import AuditOperation, LotStatus, QuotaLot, QuotaSummary, as_utc, utc_now
from quota_manager.models.strategy import Strategy


def apply_depletion(used_before: float, expired_amount: float) -> float:
    """
    Consumption left after a lot of `expired_amount` expires.

    Consumption is not attributed to lots, so the expired amount is assumed
    to have been consumed first:

        >>> apply_depletion(30, 100)
        0.0
        >>> apply_depletion(40, 10)
        30.0
    """
    return max(0.0, float(used_before) - float(expired_amount))


def _row_to_lot(row) -> QuotaLot:
    return QuotaLot(
        id=row.id,
        user_id=row.user_id,
        amount=row.amount,
        expiry_date=as_utc(row.expiry_date),
        status=row.status,
        strategy_id=row.strategy_id,
        strategy_name=row.strategy_name,
        created_at=as_utc(row.created_at),
    )


def add_lot(
    unit: QuotaUnit,
    amount: float,
    expiry_date: datetime,
    *,
    strategy: Optional[Strategy] = None,
) -> QuotaLot:
    """
    Insert a valid lot for the unit's user and raise store capacity by `amount`.

    Args:
        unit: Open quota unit for the lot owner
        amount: Positive quota amount
        expiry_date: Aware datetime; stored as UTC
        strategy: Granting strategy, if any

    Returns:
        The new lot
    """
    if amount <= 0:
        raise ValidationError(f"Lot amount must be positive, got {amount}")
    if expiry_date.tzinfo is None:
        raise ValidationError("Lot expiry_date must be timezone-aware")

    unit.check_drift(sum_valid_lots(unit.db, unit.user_id))

    now = utc_now()
    expiry_utc = as_utc(expiry_date)
    result = unit.db.execute(
        insert(quota_lots).values(
            user_id=unit.user_id,
            amount=float(amount),
            expiry_date=expiry_utc,
            status=LotStatus.VALID.value,
            strategy_id=strategy.id if strategy else None,
            strategy_name=strategy.name if strategy else None,
            created_at=now,
            updated_at=now,
        )
    )
    lot_id = result.inserted_primary_key[0]

    total, _ = unit.current()
    unit.stage(total=total + float(amount))

    return QuotaLot(
        id=lot_id,
        user_id=unit.user_id,
        amount=float(amount),
        expiry_date=expiry_utc,
        status=LotStatus.VALID,
        strategy_id=strategy.id if strategy else None,
        strategy_name=strategy.name if strategy else None,
        created_at=now,
    )


def expire_lot(unit: QuotaUnit, lot_id: int) -> QuotaLot:
    """
    Expire one valid lot of the unit's user.

    Writes the -amount audit entry, lowers store capacity by the lot amount
    and carries consumption over with apply_depletion.

    Raises:
        StateError: lot missing, owned by another user, or not valid
    """
    row = unit.db.execute(
        select(quota_lots).where(quota_lots.c.id == lot_id).with_for_update()
    ).first()
    if row is None:
        raise StateError(f"Lot {lot_id} not found")
    if row.user_id != unit.user_id:
        raise StateError(f"Lot {lot_id} belongs to {row.user_id}, not {unit.user_id}")
    if row.status != LotStatus.VALID.value:
        raise StateError(f"Lot {lot_id} is already {row.status}")

    unit.check_drift(sum_valid_lots(unit.db, unit.user_id))

    result = unit.db.execute(
        update(quota_lots)
        .where(quota_lots.c.id == lot_id)
        .where(quota_lots.c.status == LotStatus.VALID.value)
        .values(status=LotStatus.EXPIRED.value, updated_at=utc_now())
    )
    if result.rowcount != 1:
        raise StateError(f"Lot {lot_id} changed state during expiry")

    total, used = unit.current()
    new_used = apply_depletion(used, row.amount)

    record_quota_audit(
        unit.db,
        user_id=unit.user_id,
        amount=-row.amount,
        operation=AuditOperation.EXPIRE,
        strategy_id=row.strategy_id,
        strategy_name=row.strategy_name,
        lot_id=lot_id,
        expiry_date=row.expiry_date,
        details={"used_before": used, "used_after": new_used},
    )
    unit.stage(total=total - row.amount, used=new_used)

    lot = _row_to_lot(row)
    return lot.model_copy(update={"status": LotStatus.EXPIRED})


def record_consumption(unit: QuotaUnit, amount: float, *, details: Optional[Dict[str, Any]] = None) -> float:
    """Add gateway-reported usage to the store's used counter and audit it. Returns the new used value."""
    if amount <= 0:
        raise ValidationError(f"Consumption must be positive, got {amount}")
    _, used = unit.current()
    new_used = used + float(amount)
    record_quota_audit(
        unit.db,
        user_id=unit.user_id,
        amount=-float(amount),
        operation=AuditOperation.CONSUME,
        details=details,
    )
    unit.stage(used=new_used)
    return new_used


def get_lot(db: Session, lot_id: int) -> Optional[QuotaLot]:
    row = db.execute(select(quota_lots).where(quota_lots.c.id == lot_id)).first()
    return _row_to_lot(row) if row else None


def get_user_lots(db: Session, user_id: str, status: Optional[LotStatus] = None) -> List[QuotaLot]:
    """Lots of one user, oldest expiry first."""
    query = select(quota_lots).where(quota_lots.c.user_id == user_id)
    if status is not None:
        query = query.where(quota_lots.c.status == LotStatus(status).value)
    rows = db.execute(query.order_by(quota_lots.c.expiry_date.asc(), quota_lots.c.id.asc())).fetchall()
    return [_row_to_lot(row) for row in rows]


def _count_lots(db: Session, user_id: str, status: LotStatus) -> int:
    count = db.execute(
        select(func.count())
        .select_from(quota_lots)
        .where(quota_lots.c.user_id == user_id)
        .where(quota_lots.c.status == status.value)
    ).scalar()
    return int(count or 0)


def count_valid_lots(db: Session, user_id: str) -> int:
    return _count_lots(db, user_id, LotStatus.VALID)


def count_expired_lots(db: Session, user_id: str) -> int:
    return _count_lots(db, user_id, LotStatus.EXPIRED)


def sum_valid_lots(db: Session, user_id: str) -> float:
    """Ledger view of the user's capacity: the sum of valid lot amounts."""
    total = db.execute(
        select(func.coalesce(func.sum(quota_lots.c.amount), 0.0))
        .where(quota_lots.c.user_id == user_id)
        .where(quota_lots.c.status == LotStatus.VALID.value)
    ).scalar()
    return float(total or 0.0)


def get_user_quota(db: Session, user_id: str, store: QuotaStore) -> QuotaSummary:
    """Store counters next to the ledger's own totals for one user."""
    return QuotaSummary(
        user_id=user_id,
        total=float(store.get_total(user_id)),
        used=float(store.get_used(user_id)),
        ledger_total=sum_valid_lots(db, user_id),
        valid_lots=count_valid_lots(db, user_id),
        expired_lots=count_expired_lots(db, user_id),
    )
