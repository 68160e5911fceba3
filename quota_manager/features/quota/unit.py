"""
Per-user transactional unit for quota mutations.

Every grant, expiry and consumption runs inside `quota_unit(user_id)`:

1. in-process locks for the user (and any extra keys) are taken in sorted order
2. a session is opened and the user's quota_accounts row is locked
3. ledger operations write rows and stage the store's new (total, used)
4. on exit the staged values are pushed to the quota store, then the session
   commits; a failed push rolls the session back, a failed commit restores
   the store

So a lot never exists without the store reflecting it, and vice versa.
"""
from __future__ import annotations

import threading
import weakref
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quota_manager.core.database import get_session_factory, quota_accounts
from quota_manager.core.errors import PersistenceError
from quota_manager.core.logging import log_event
from quota_manager.core.metrics import quota_store_drift_total
from quota_manager.features.quota.store import QuotaStore, get_quota_store
from quota_manager.features.quota.sync import QuotaStoreSynchronizer, SyncReceipt
from quota_manager.models.quota import utc_now


class _KeyedLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self):
        self.lock = threading.Lock()


class UserLocks:
    """Lazily created per-key locks, dropped once nobody holds a reference."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, _KeyedLock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def _get(self, key: str) -> _KeyedLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyedLock()
                self._locks[key] = entry
            return entry

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        entries: List[_KeyedLock] = [self._get(key) for key in sorted(set(keys))]
        acquired: List[_KeyedLock] = []
        try:
            for entry in entries:
                entry.lock.acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry.lock.release()


USER_LOCKS = UserLocks()


class QuotaUnit:
    """One user's pending ledger changes plus the store values they imply."""

    def __init__(self, db: Session, user_id: str, synchronizer: QuotaStoreSynchronizer):
        self.db = db
        self.user_id = user_id
        self.synchronizer = synchronizer
        self._snapshot: Optional[Tuple[float, float]] = None
        self._staged_total: Optional[float] = None
        self._staged_used: Optional[float] = None
        self.receipt: Optional[SyncReceipt] = None

    def snapshot(self) -> Tuple[float, float]:
        """Store (total, used) as of the start of this unit; read once."""
        if self._snapshot is None:
            self._snapshot = self.synchronizer.snapshot(self.user_id)
        return self._snapshot

    def current(self) -> Tuple[float, float]:
        """Store (total, used) with this unit's staged changes applied."""
        total, used = self.snapshot()
        if self._staged_total is not None:
            total = self._staged_total
        if self._staged_used is not None:
            used = self._staged_used
        return total, used

    def stage(self, *, total: Optional[float] = None, used: Optional[float] = None) -> None:
        if total is not None:
            self._staged_total = float(total)
        if used is not None:
            self._staged_used = float(used)

    @property
    def has_staged_changes(self) -> bool:
        return self._staged_total is not None or self._staged_used is not None

    def check_drift(self, ledger_total: float) -> bool:
        """Compare the store total against the ledger before mutating; log drift, never block."""
        store_total, _ = self.current()
        if abs(store_total - ledger_total) <= 1e-9:
            return True
        quota_store_drift_total.inc()
        log_event(
            "error",
            "quota.store.drift",
            user_id=self.user_id,
            error_code="store_drift",
            extra={"store_total": store_total, "ledger_total": ledger_total},
        )
        return False

    def _lock_account(self) -> None:
        query = select(quota_accounts.c.user_id).where(quota_accounts.c.user_id == self.user_id).with_for_update()
        if self.db.execute(query).first() is not None:
            return
        try:
            with self.db.begin_nested():
                now = utc_now()
                self.db.execute(insert(quota_accounts).values(user_id=self.user_id, created_at=now, updated_at=now))
        except IntegrityError:
            # Another process created it first; wait for its lock instead
            pass
        self.db.execute(query).first()

    def _commit(self) -> None:
        if self.has_staged_changes:
            self.db.execute(
                update(quota_accounts)
                .where(quota_accounts.c.user_id == self.user_id)
                .values(updated_at=utc_now())
            )
            self.receipt = self.synchronizer.push(
                self.user_id,
                total=self._staged_total,
                used=self._staged_used,
                previous=self.snapshot(),
            )
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            if self.receipt is not None:
                self.synchronizer.restore(self.receipt)
            raise PersistenceError(f"Commit for {self.user_id} failed: {exc}") from exc


@contextmanager
def quota_unit(
    user_id: str,
    *,
    store: Optional[QuotaStore] = None,
    extra_lock_keys: Iterable[str] = (),
    verify: Optional[bool] = None,
) -> Iterator[QuotaUnit]:
    """
    Open a serialized, all-or-nothing unit for one user's quota.

    Raises:
        SyncError: the store push failed; nothing was committed
        PersistenceError: a database write or the commit failed; the store was restored
    """
    synchronizer = QuotaStoreSynchronizer(store or get_quota_store(), verify=verify)
    with USER_LOCKS.hold([user_id, *extra_lock_keys]):
        session = get_session_factory()()
        unit = QuotaUnit(session, user_id, synchronizer)
        try:
            unit._lock_account()
            yield unit
            unit._commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(f"Quota unit for {user_id} failed: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
