import datetime as dt
from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import TransactionType


def _as_date(value: object) -> object:
    """Let callers pass a timestamp where only its calendar day matters."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and "T" in value:
        return datetime.fromisoformat(value).date()
    return value


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType = TransactionType.expense


class SubcategoryIn(BaseModel):
    category_id: str
    name: str = Field(..., min_length=1, max_length=100)


class BudgetIn(BaseModel):
    """Creation payload. Amount and category are checked by the service."""

    period: dt.date
    amount_cents: int
    category_id: Optional[str] = None
    subcategory_id: Optional[str] = None
    is_recurring: bool = False
    note: Optional[str] = Field(default=None, max_length=500)
    shared: bool = True

    @field_validator("period", mode="before")
    @classmethod
    def drop_time(cls, value: object) -> object:
        return _as_date(value)


class BudgetUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: int
    note: Optional[str] = Field(default=None, max_length=500)


class BudgetCopyIn(BaseModel):
    source_period: dt.date
    target_period: Optional[dt.date] = None

    @field_validator("source_period", "target_period", mode="before")
    @classmethod
    def drop_time(cls, value: object) -> object:
        return _as_date(value)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: Optional[TransactionType] = None


class SubcategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    category_id: Optional[str] = None


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    period: date
    amount_cents: int
    category_id: str
    subcategory_id: Optional[str] = None
    user_id: str
    household_id: Optional[str] = None
    is_recurring: bool
    note: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class BudgetProgressOut(BudgetOut):
    category: Optional[CategoryOut] = None
    subcategory: Optional[SubcategoryOut] = None
    actual_spend_cents: int = 0
    remaining_cents: int = 0
    percentage: float = 0.0
    status: Literal["ok", "warning", "over"] = "ok"


class RefreshResultOut(BaseModel):
    period: date
    users_refreshed: int
