from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC; naive values (as read back from SQLite) are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LotStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AuditOperation(str, Enum):
    RECHARGE = "recharge"
    EXPIRE = "expire"
    CONSUME = "consume"


class QuotaLot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    amount: float
    expiry_date: datetime
    status: LotStatus
    strategy_id: Optional[int] = None
    strategy_name: Optional[str] = None
    created_at: Optional[datetime] = None


class ExecutionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    strategy_id: int
    user_id: str
    beneficiary_id: Optional[str] = None
    period_key: str
    status: ExecutionStatus
    lot_id: Optional[int] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    amount: float
    operation: AuditOperation
    strategy_id: Optional[int] = None
    strategy_name: Optional[str] = None
    lot_id: Optional[int] = None
    expiry_date: Optional[datetime] = None
    details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class QuotaSummary(BaseModel):
    """Ledger and store view of one user's quota."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    total: float
    used: float
    ledger_total: float
    valid_lots: int
    expired_lots: int

    @property
    def remaining(self) -> float:
        return max(0.0, self.total - self.used)

    @property
    def in_sync(self) -> bool:
        return self.total == self.ledger_total
