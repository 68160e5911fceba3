from typing import Optional, Set

from quota_manager.core.errors import SyncError
from quota_manager.features.quota.store import InMemoryQuotaStore


class FlakyQuotaStore(InMemoryQuotaStore):
    """In-memory store that rejects writes (or reads) for chosen users."""

    def __init__(self, fail_users: Optional[Set[str]] = None, fail_on: str = "set_total", failures: int = -1):
        super().__init__()
        self.fail_users = set(fail_users or ())
        self.fail_on = fail_on
        self.failures = failures  # -1 = fail forever
        self.calls = []

    def _maybe_fail(self, op: str, user_id: str):
        self.calls.append((op, user_id))
        if op != self.fail_on or user_id not in self.fail_users or self.failures == 0:
            return
        if self.failures > 0:
            self.failures -= 1
        raise SyncError(f"store unavailable for {user_id}")

    def set_total(self, user_id: str, amount: float) -> None:
        self._maybe_fail("set_total", user_id)
        super().set_total(user_id, amount)

    def set_used(self, user_id: str, amount: float) -> None:
        self._maybe_fail("set_used", user_id)
        super().set_used(user_id, amount)

    def get_total(self, user_id: str) -> float:
        self._maybe_fail("get_total", user_id)
        return super().get_total(user_id)


class DriftingQuotaStore(InMemoryQuotaStore):
    """Accepts writes but reads back a different total, like a gateway applying its own adjustments."""

    def __init__(self, skew: float = 1.0):
        super().__init__()
        self.skew = skew

    def get_total(self, user_id: str) -> float:
        return super().get_total(user_id) + self.skew
