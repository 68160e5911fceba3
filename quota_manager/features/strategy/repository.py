"""
Strategy persistence.

Strategies are administered elsewhere; the engine only reads them. The
write helpers here serve tooling and tests and refuse conditions that do
not parse.
"""
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quota_manager.core.database import quota_strategies
from quota_manager.core.errors import EvaluationError, NotFoundError, ValidationError
from quota_manager.features.conditions.evaluator import validate_condition
from quota_manager.models.quota import as_utc, utc_now
from quota_manager.models.strategy import Strategy, StrategyCreate


def _row_to_strategy(row) -> Strategy:
    return Strategy(
        id=row.id,
        name=row.name,
        title=row.title,
        type=row.type,
        amount=row.amount,
        model=row.model,
        condition=row.condition,
        status=bool(row.status),
        expiry_days=row.expiry_days,
        beneficiary=row.beneficiary,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def create_strategy(db: Session, data: StrategyCreate) -> Strategy:
    """
    Insert a strategy in the caller's transaction.

    Raises:
        ValidationError: the condition does not parse or the name is taken
    """
    try:
        validate_condition(data.condition)
    except EvaluationError as exc:
        raise ValidationError(f"Invalid condition for strategy {data.name}: {exc.message}") from exc

    now = utc_now()
    try:
        with db.begin_nested():
            result = db.execute(
                insert(quota_strategies).values(
                    name=data.name,
                    title=data.title,
                    type=data.type.value,
                    amount=data.amount,
                    model=data.model,
                    condition=data.condition,
                    status=data.status,
                    expiry_days=data.expiry_days,
                    beneficiary=data.beneficiary.value,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError as exc:
        raise ValidationError(f"Strategy {data.name} already exists") from exc

    return Strategy(
        id=result.inserted_primary_key[0],
        created_at=now,
        updated_at=now,
        **data.model_dump(),
    )


def get_strategy(db: Session, strategy_id: int) -> Optional[Strategy]:
    row = db.execute(select(quota_strategies).where(quota_strategies.c.id == strategy_id)).first()
    return _row_to_strategy(row) if row else None


def get_strategy_by_name(db: Session, name: str) -> Optional[Strategy]:
    row = db.execute(select(quota_strategies).where(quota_strategies.c.name == name)).first()
    return _row_to_strategy(row) if row else None


def list_strategies(db: Session, active_only: bool = False) -> List[Strategy]:
    query = select(quota_strategies)
    if active_only:
        query = query.where(quota_strategies.c.status.is_(True))
    rows = db.execute(query.order_by(quota_strategies.c.id.asc())).fetchall()
    return [_row_to_strategy(row) for row in rows]


def set_strategy_status(db: Session, strategy_id: int, active: bool) -> Strategy:
    result = db.execute(
        update(quota_strategies)
        .where(quota_strategies.c.id == strategy_id)
        .values(status=active, updated_at=utc_now())
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Strategy {strategy_id} not found")
    return get_strategy(db, strategy_id)
