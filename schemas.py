from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import BalanceChangeKind, ExpenseCategory, IncomeCategory


class CircleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    currency_code: str = Field(default="JPY", min_length=3, max_length=3)

    @field_validator("currency_code")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()


class CheckpointIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: int
    amount: int
    note: Optional[str] = Field(default=None, max_length=200)
    occurred_at: Optional[datetime] = None


class DebitIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: int
    amount: int = Field(..., gt=0)
    category: ExpenseCategory = ExpenseCategory.other
    tags: list[str] = Field(default_factory=list)
    place: Optional[str] = Field(default=None, max_length=120)
    note: Optional[str] = Field(default=None, max_length=200)
    occurred_at: Optional[datetime] = None


class CreditIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: int
    amount: int = Field(..., gt=0)
    category: IncomeCategory = IncomeCategory.other
    tags: list[str] = Field(default_factory=list)
    source: Optional[str] = Field(default=None, max_length=120)
    note: Optional[str] = Field(default=None, max_length=200)
    occurred_at: Optional[datetime] = None


class CircleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    currency_code: str
    current_balance: int


class BalanceChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    circle_id: int
    user_id: Optional[int]
    kind: BalanceChangeKind
    is_delete: bool
    amount: int
    balance_before: int
    balance_after: int
    entry_id: Optional[int]
    created_at: datetime


class ReconcileOut(BaseModel):
    circle_id: int
    cached: int
    reconstructed: int
    repaired: bool
