import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountType, RecurringInterval, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.current
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    is_default: bool = False


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    currency: str
    is_default: bool
    balance: Decimal


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: TransactionType
    color: Optional[str] = None


class TransactionIn(BaseModel):
    # Optional client-generated id; resubmitting the same id is a no-op.
    id: Optional[str] = Field(default=None, min_length=1, max_length=36)
    account_id: int
    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: str = Field(..., min_length=1, max_length=50)
    date: dt.date
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None
    receipt_url: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _recurring_fields_paired(self) -> "TransactionIn":
        if self.is_recurring and self.recurring_interval is None:
            raise ValueError("Recurring transactions need a recurring interval")
        if not self.is_recurring and self.recurring_interval is not None:
            raise ValueError("Recurring interval given for a non-recurring transaction")
        return self


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: int
    type: TransactionType
    amount: Decimal
    description: Optional[str]
    category_id: str
    date: dt.date
    is_recurring: bool
    recurring_interval: Optional[RecurringInterval]
    next_recurring_date: Optional[dt.date]
    last_processed_date: Optional[dt.date]
    needs_review: bool
    origin_series_id: Optional[str]
    receipt_url: Optional[str]
    created_at: datetime


class BulkDeleteIn(BaseModel):
    ids: list[str] = Field(..., min_length=1, max_length=500)


class BudgetIn(BaseModel):
    account_id: Optional[int] = None
    amount: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: Optional[int]
    amount: Decimal
    currency: str


class ReceiptDraft(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Decimal
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=500)
    category: Optional[str] = Field(default=None, max_length=100)


class ReceiptTransactionIn(BaseModel):
    id: Optional[str] = Field(default=None, min_length=1, max_length=36)
    account_id: int
    draft: ReceiptDraft
    receipt_url: Optional[str] = Field(default=None, max_length=500)
