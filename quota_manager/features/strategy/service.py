"""
Strategy execution engine.

execute_strategy(strategy, users) applies one strategy to each user on its own:

1. inactive strategy: nothing happens
2. Completed execution already on record for (strategy, user, period): skipped
3. condition false: not eligible, nothing written
4. condition true: Pending record, then one quota unit for the beneficiary
   that re-checks the guard, adds the lot, audits +amount, marks the record
   Completed and syncs the store total
5. any failure: the unit rolls back and the record is marked Failed; a
   database error fails that user only

A condition that does not validate is logged once per run, and each user
keeps a single Failed row per period for it.

Only Completed blocks a later attempt. The partial unique index on
quota_executions is the last line against a concurrent double grant.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quota_manager.core.config import settings
from quota_manager.core.database import get_db_session, quota_executions
from quota_manager.core.errors import (
    AppError,
    EvaluationError,
    NotFoundError,
    PersistenceError,
    StateError,
    error_code,
)
from quota_manager.core.logging import bind_run_id, log_event
from quota_manager.core.metrics import quota_executions_total, quota_grants_total
from quota_manager.features.audit.service import record_quota_audit
from quota_manager.features.conditions.evaluator import evaluate_condition, validate_condition
from quota_manager.features.quota.ledger import add_lot
from quota_manager.features.quota.store import QuotaStore, get_quota_store
from quota_manager.features.quota.unit import quota_unit
from quota_manager.features.strategy.repository import get_strategy_by_name, list_strategies
from quota_manager.features.users.service import load_user_snapshots
from quota_manager.models.quota import AuditOperation, ExecutionRecord, ExecutionStatus, as_utc, utc_now
from quota_manager.models.strategy import Beneficiary, Strategy
from quota_manager.models.user import UserInfo

ONCE_PERIOD = "once"
END_OF_DAY = time(23, 59, 59)

COMPLETED = "completed"
SKIPPED = "skipped"
NOT_ELIGIBLE = "not_eligible"
FAILED = "failed"
SKIPPED_INACTIVE = "skipped_inactive"


class _DuplicateCompletion(Exception):
    """Another execution completed the same (strategy, user, period) first."""


@dataclass(frozen=True)
class UserOutcome:
    user_id: str
    outcome: str
    beneficiary_id: Optional[str] = None
    lot_id: Optional[int] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


@dataclass
class StrategyRunReport:
    strategy_id: int
    strategy_name: str
    run_id: Optional[str] = None
    outcomes: List[UserOutcome] = field(default_factory=list)

    def count(self, outcome: str) -> int:
        return sum(1 for o in self.outcomes if o.outcome == outcome)

    @property
    def failures(self) -> List[UserOutcome]:
        return [o for o in self.outcomes if o.outcome == FAILED]

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for o in self.outcomes:
            counts[o.outcome] = counts.get(o.outcome, 0) + 1
        return {
            "strategy_id": self.strategy_id,
            "strategy_name": self.strategy_name,
            "run_id": self.run_id,
            "counts": counts,
            "failures": [
                {"user_id": o.user_id, "error_code": o.error_code, "message": o.message}
                for o in self.failures
            ],
        }


def local_zone() -> ZoneInfo:
    return ZoneInfo(settings.QUOTA_TIMEZONE)


def compute_expiry_date(strategy: Strategy, now: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """
    Expiry for a lot granted at `now`, at 23:59:59 local time:
    - expiry_days N: the local date N days after now
    - otherwise: the last day of now's local month
    """
    zone = tz or local_zone()
    local_now = as_utc(now).astimezone(zone)
    if strategy.expiry_days:
        day = (local_now + timedelta(days=strategy.expiry_days)).date()
    else:
        last_day = calendar.monthrange(local_now.year, local_now.month)[1]
        day = local_now.date().replace(day=last_day)
    return datetime.combine(day, END_OF_DAY, tzinfo=zone)


def period_key_for(strategy: Strategy, now: datetime, tz: Optional[tzinfo] = None) -> str:
    """Idempotency period: "once" for single strategies, the local date for periodic ones."""
    if strategy.is_single:
        return ONCE_PERIOD
    zone = tz or local_zone()
    return as_utc(now).astimezone(zone).date().isoformat()


def _row_to_execution(row) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        strategy_id=row.strategy_id,
        user_id=row.user_id,
        beneficiary_id=row.beneficiary_id,
        period_key=row.period_key,
        status=row.status,
        lot_id=row.lot_id,
        error=row.error,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _has_completed(db: Session, strategy_id: int, user_id: str, period_key: str) -> bool:
    row = db.execute(
        select(quota_executions.c.id)
        .where(quota_executions.c.strategy_id == strategy_id)
        .where(quota_executions.c.user_id == user_id)
        .where(quota_executions.c.period_key == period_key)
        .where(quota_executions.c.status == ExecutionStatus.COMPLETED.value)
    ).first()
    return row is not None


def _insert_pending(strategy: Strategy, user_id: str, period_key: str, beneficiary_id: str) -> int:
    now = utc_now()
    with get_db_session() as session:
        result = session.execute(
            insert(quota_executions).values(
                strategy_id=strategy.id,
                user_id=user_id,
                beneficiary_id=beneficiary_id,
                period_key=period_key,
                status=ExecutionStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
        )
        return result.inserted_primary_key[0]


def _mark_completed(db: Session, execution_id: int, lot_id: int) -> None:
    try:
        with db.begin_nested():
            db.execute(
                update(quota_executions)
                .where(quota_executions.c.id == execution_id)
                .values(status=ExecutionStatus.COMPLETED.value, lot_id=lot_id, updated_at=utc_now())
            )
    except IntegrityError as exc:
        raise _DuplicateCompletion(str(exc)) from exc


def _error_text(exc: BaseException) -> str:
    message = exc.message if isinstance(exc, AppError) else str(exc)
    return f"{error_code(exc)}: {message}"[:1000]


def _mark_failed(execution_id: int, exc: BaseException) -> None:
    with get_db_session() as session:
        session.execute(
            update(quota_executions)
            .where(quota_executions.c.id == execution_id)
            .values(status=ExecutionStatus.FAILED.value, error=_error_text(exc), updated_at=utc_now())
        )


def _record_rejection(strategy: Strategy, user_id: str, period_key: str, exc: BaseException) -> None:
    """
    Failed record for a user turned away before any grant was attempted.

    A repeat of the same error in the same period touches the existing row
    instead of adding another one.
    """
    error = _error_text(exc)
    now = utc_now()
    with get_db_session() as session:
        existing = session.execute(
            select(quota_executions.c.id)
            .where(quota_executions.c.strategy_id == strategy.id)
            .where(quota_executions.c.user_id == user_id)
            .where(quota_executions.c.period_key == period_key)
            .where(quota_executions.c.status == ExecutionStatus.FAILED.value)
            .where(quota_executions.c.error == error)
        ).first()
        if existing is not None:
            session.execute(
                update(quota_executions).where(quota_executions.c.id == existing.id).values(updated_at=now)
            )
            return
        session.execute(
            insert(quota_executions).values(
                strategy_id=strategy.id,
                user_id=user_id,
                period_key=period_key,
                status=ExecutionStatus.FAILED.value,
                error=error,
                created_at=now,
                updated_at=now,
            )
        )


def _discard_pending(execution_id: int) -> None:
    with get_db_session() as session:
        session.execute(
            delete(quota_executions)
            .where(quota_executions.c.id == execution_id)
            .where(quota_executions.c.status == ExecutionStatus.PENDING.value)
        )


def _write_quietly(strategy: Strategy, user_id: str, write: Callable[..., None], *args) -> None:
    """Run an execution-record write; a database error is logged and the user's outcome stands."""
    try:
        write(*args)
    except SQLAlchemyError as exc:
        log_event(
            "error",
            "strategy.execution.record_failed",
            user_id=user_id,
            strategy_id=strategy.id,
            error_code=PersistenceError.code,
            extra={"strategy": strategy.name, "write": write.__name__, "error": exc},
        )


def _resolve_beneficiary(strategy: Strategy, user: UserInfo) -> str:
    if strategy.beneficiary == Beneficiary.INVITER:
        if not user.has_inviter:
            raise StateError(f"User {user.user_id} has no inviter to credit")
        return user.inviter_id.strip()
    return user.user_id


def _failed(strategy: Strategy, user: UserInfo, exc: BaseException, beneficiary_id: Optional[str] = None) -> UserOutcome:
    code = error_code(exc)
    message = exc.message if isinstance(exc, AppError) else str(exc)
    log_event(
        "warning" if isinstance(exc, AppError) else "error",
        "strategy.execution.failed",
        user_id=user.user_id,
        strategy_id=strategy.id,
        error_code=code,
        extra={"strategy": strategy.name, "beneficiary_id": beneficiary_id, "error": message},
    )
    return UserOutcome(user.user_id, FAILED, beneficiary_id=beneficiary_id, error_code=code, message=message)


def _grant_for_user(
    strategy: Strategy,
    user: UserInfo,
    *,
    store: QuotaStore,
    now: datetime,
    tz: tzinfo,
    condition_error: Optional[EvaluationError],
) -> UserOutcome:
    period_key = period_key_for(strategy, now, tz)

    with get_db_session() as session:
        if _has_completed(session, strategy.id, user.user_id, period_key):
            return UserOutcome(user.user_id, SKIPPED)

    if condition_error is not None:
        # logged once per run by execute_strategy
        _write_quietly(strategy, user.user_id, _record_rejection, strategy, user.user_id, period_key, condition_error)
        return UserOutcome(
            user.user_id, FAILED, error_code=condition_error.code, message=condition_error.message
        )

    try:
        eligible = evaluate_condition(strategy.condition, user, tz=tz)
    except EvaluationError as exc:
        _write_quietly(strategy, user.user_id, _record_rejection, strategy, user.user_id, period_key, exc)
        return _failed(strategy, user, exc)
    if not eligible:
        return UserOutcome(user.user_id, NOT_ELIGIBLE)

    try:
        beneficiary_id = _resolve_beneficiary(strategy, user)
    except StateError as exc:
        _write_quietly(strategy, user.user_id, _record_rejection, strategy, user.user_id, period_key, exc)
        return _failed(strategy, user, exc)

    expiry_date = compute_expiry_date(strategy, now, tz)
    execution_id = _insert_pending(strategy, user.user_id, period_key, beneficiary_id)

    lot = None
    try:
        with quota_unit(beneficiary_id, store=store, extra_lock_keys=[user.user_id]) as unit:
            if _has_completed(unit.db, strategy.id, user.user_id, period_key):
                raise _DuplicateCompletion(f"{strategy.name} already completed for {user.user_id}")
            lot = add_lot(unit, strategy.amount, expiry_date, strategy=strategy)
            record_quota_audit(
                unit.db,
                user_id=beneficiary_id,
                amount=strategy.amount,
                operation=AuditOperation.RECHARGE,
                strategy_id=strategy.id,
                strategy_name=strategy.name,
                lot_id=lot.id,
                expiry_date=expiry_date,
                details={"evaluated_user": user.user_id, "period_key": period_key, "model": strategy.model},
            )
            _mark_completed(unit.db, execution_id, lot.id)
    except _DuplicateCompletion:
        _write_quietly(strategy, user.user_id, _discard_pending, execution_id)
        return UserOutcome(user.user_id, SKIPPED, beneficiary_id=beneficiary_id)
    except Exception as exc:
        _write_quietly(strategy, user.user_id, _mark_failed, execution_id, exc)
        return _failed(strategy, user, exc, beneficiary_id)

    quota_grants_total.inc({"strategy": strategy.name})
    log_event(
        "info",
        "strategy.execution.completed",
        user_id=user.user_id,
        strategy_id=strategy.id,
        lot_id=lot.id,
        event_type="recharge",
        extra={
            "strategy": strategy.name,
            "beneficiary_id": beneficiary_id,
            "amount": strategy.amount,
            "expiry_date": expiry_date.isoformat(),
        },
    )
    return UserOutcome(user.user_id, COMPLETED, beneficiary_id=beneficiary_id, lot_id=lot.id)


def _execute_for_user(
    strategy: Strategy,
    user: UserInfo,
    *,
    store: QuotaStore,
    now: datetime,
    tz: tzinfo,
    condition_error: Optional[EvaluationError] = None,
) -> UserOutcome:
    """One user's attempt. Database errors outside the quota unit fail this user only."""
    try:
        return _grant_for_user(strategy, user, store=store, now=now, tz=tz, condition_error=condition_error)
    except SQLAlchemyError as exc:
        return _failed(strategy, user, PersistenceError(f"Execution record for {user.user_id} failed: {exc}"))


def execute_strategy(
    strategy: Strategy,
    users: Iterable[UserInfo],
    *,
    store: Optional[QuotaStore] = None,
    now: Optional[datetime] = None,
) -> StrategyRunReport:
    """
    Apply a strategy to each user independently.

    One user's failure never stops the others; every outcome, failures
    included, is returned in the report.
    """
    store = store or get_quota_store()
    now = as_utc(now) or utc_now()
    tz = local_zone()
    report = StrategyRunReport(strategy_id=strategy.id, strategy_name=strategy.name)

    with bind_run_id() as run_id:
        report.run_id = run_id

        condition_error = None
        if strategy.status:
            try:
                validate_condition(strategy.condition)
            except EvaluationError as exc:
                condition_error = exc
                log_event(
                    "error",
                    "strategy.condition.invalid",
                    strategy_id=strategy.id,
                    error_code=exc.code,
                    extra={"strategy": strategy.name, "condition": strategy.condition, "error": exc.message},
                )

        for user in users:
            if not strategy.status:
                outcome = UserOutcome(user.user_id, SKIPPED_INACTIVE)
            else:
                outcome = _execute_for_user(
                    strategy, user, store=store, now=now, tz=tz, condition_error=condition_error
                )
            quota_executions_total.inc({"status": outcome.outcome})
            report.outcomes.append(outcome)

        log_event(
            "info",
            "strategy.run.finished",
            strategy_id=strategy.id,
            extra={"strategy": strategy.name, **report.to_dict()["counts"]},
        )
    return report


def run_active_strategies(
    *,
    store: Optional[QuotaStore] = None,
    now: Optional[datetime] = None,
    names: Optional[Iterable[str]] = None,
) -> List[StrategyRunReport]:
    """Run every active strategy (or the named ones) against all user snapshots."""
    with get_db_session() as session:
        if names:
            strategies = []
            for name in names:
                strategy = get_strategy_by_name(session, name)
                if strategy is None:
                    raise NotFoundError(f"Strategy {name} not found")
                strategies.append(strategy)
        else:
            strategies = list_strategies(session, active_only=True)

    users = load_user_snapshots()
    return [execute_strategy(strategy, users, store=store, now=now) for strategy in strategies]


def get_executions(
    db: Session,
    strategy_id: Optional[int] = None,
    user_id: Optional[str] = None,
    status: Optional[ExecutionStatus] = None,
) -> List[ExecutionRecord]:
    query = select(quota_executions)
    if strategy_id is not None:
        query = query.where(quota_executions.c.strategy_id == strategy_id)
    if user_id is not None:
        query = query.where(quota_executions.c.user_id == user_id)
    if status is not None:
        query = query.where(quota_executions.c.status == ExecutionStatus(status).value)
    rows = db.execute(query.order_by(quota_executions.c.id.asc())).fetchall()
    return [_row_to_execution(row) for row in rows]


def count_completed_executions(db: Session, strategy_id: int, user_id: str) -> int:
    count = db.execute(
        select(func.count())
        .select_from(quota_executions)
        .where(quota_executions.c.strategy_id == strategy_id)
        .where(quota_executions.c.user_id == user_id)
        .where(quota_executions.c.status == ExecutionStatus.COMPLETED.value)
    ).scalar()
    return int(count or 0)
