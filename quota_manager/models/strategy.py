"""
Quota strategy models.

A strategy pairs an eligibility condition with a grant amount and an
expiry policy:

- type "single": granted at most once per (strategy, user)
- type "periodic": granted at most once per (strategy, user, local day)
- expiry_days None: lot expires at the end of the current month
- beneficiary "inviter": the lot is credited to the evaluated user's inviter
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class StrategyType(str, Enum):
    SINGLE = "single"
    PERIODIC = "periodic"


class Beneficiary(str, Enum):
    SELF = "self"
    INVITER = "inviter"


class StrategyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    title: str = Field(min_length=1, max_length=200)
    type: StrategyType = StrategyType.SINGLE
    amount: float = Field(gt=0)
    model: Optional[str] = None
    condition: str = "true()"
    status: bool = True
    expiry_days: Optional[int] = Field(default=None, gt=0)
    beneficiary: Beneficiary = Beneficiary.SELF


class Strategy(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    title: str
    type: StrategyType
    amount: float
    model: Optional[str] = None
    condition: str
    status: bool
    expiry_days: Optional[int] = None
    beneficiary: Beneficiary = Beneficiary.SELF
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_single(self) -> bool:
        return self.type == StrategyType.SINGLE
