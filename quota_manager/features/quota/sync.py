"""
Quota store synchronizer.

Pushes the ledger's aggregate view of a user to the quota store. A push
either lands completely (and, when verification is on, reads back exactly)
or the previous values are put back and SyncError is raised.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

from quota_manager.core.config import settings
from quota_manager.core.errors import SyncError
from quota_manager.core.logging import log_event
from quota_manager.core.metrics import quota_sync_failures_total
from quota_manager.features.quota.store import QuotaStore


@dataclass(frozen=True)
class SyncReceipt:
    user_id: str
    previous_total: float
    previous_used: float
    total: Optional[float]
    used: Optional[float]

    @property
    def changed(self) -> bool:
        return self.total is not None or self.used is not None


def _same(a: float, b: float) -> bool:
    return math.isclose(a, b, rel_tol=0.0, abs_tol=1e-9)


class QuotaStoreSynchronizer:
    def __init__(self, store: QuotaStore, *, verify: Optional[bool] = None):
        self.store = store
        self.verify = settings.QUOTA_STORE_VERIFY if verify is None else verify

    def snapshot(self, user_id: str) -> Tuple[float, float]:
        """Current (total, used) from the store."""
        try:
            return float(self.store.get_total(user_id)), float(self.store.get_used(user_id))
        except SyncError:
            raise
        except Exception as exc:
            raise SyncError(f"Quota store read for {user_id} failed: {exc}") from exc

    def push(
        self,
        user_id: str,
        *,
        total: Optional[float] = None,
        used: Optional[float] = None,
        previous: Optional[Tuple[float, float]] = None,
    ) -> SyncReceipt:
        """
        Write total and/or used for a user.

        Args:
            previous: (total, used) already read inside the unit; read here if omitted

        Raises:
            SyncError: the write failed or read back differently; prior values restored
        """
        prev_total, prev_used = previous if previous is not None else self.snapshot(user_id)
        receipt = SyncReceipt(user_id, prev_total, prev_used, total, used)
        if not receipt.changed:
            return receipt

        try:
            if total is not None:
                self.store.set_total(user_id, total)
            if used is not None:
                self.store.set_used(user_id, used)
            if self.verify:
                self._verify(receipt)
        except SyncError as exc:
            self._abort(receipt, exc)
            raise
        except Exception as exc:
            sync_exc = SyncError(f"Quota store write for {user_id} failed: {exc}")
            self._abort(receipt, sync_exc)
            raise sync_exc from exc

        log_event(
            "info",
            "quota.sync.pushed",
            user_id=user_id,
            extra={"total": total, "used": used, "previous_total": prev_total, "previous_used": prev_used},
        )
        return receipt

    def _abort(self, receipt: SyncReceipt, exc: SyncError) -> None:
        quota_sync_failures_total.inc({"operation": "push"})
        log_event(
            "warning",
            "quota.sync.failed",
            user_id=receipt.user_id,
            error_code=exc.code,
            extra={"error": exc.message, "total": receipt.total, "used": receipt.used},
        )
        self.restore(receipt)

    def _verify(self, receipt: SyncReceipt) -> None:
        actual_total, actual_used = self.snapshot(receipt.user_id)
        if receipt.total is not None and not _same(actual_total, receipt.total):
            raise SyncError(
                f"Quota store total diverged for {receipt.user_id}: wrote {receipt.total}, read {actual_total}"
            )
        if receipt.used is not None and not _same(actual_used, receipt.used):
            raise SyncError(
                f"Quota store used diverged for {receipt.user_id}: wrote {receipt.used}, read {actual_used}"
            )

    def restore(self, receipt: SyncReceipt) -> bool:
        """Put back the values seen before a push. Returns False if the store refused."""
        if not receipt.changed:
            return True
        try:
            if receipt.total is not None:
                self.store.set_total(receipt.user_id, receipt.previous_total)
            if receipt.used is not None:
                self.store.set_used(receipt.user_id, receipt.previous_used)
        except Exception as exc:
            quota_sync_failures_total.inc({"operation": "restore"})
            log_event(
                "error",
                "quota.sync.restore_failed",
                user_id=receipt.user_id,
                error_code="sync_restore_failed",
                extra={
                    "error": exc,
                    "previous_total": receipt.previous_total,
                    "previous_used": receipt.previous_used,
                },
            )
            return False
        return True
