import datetime as dt
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


MONEY = Numeric(14, 2)


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"


class AccountType(str, Enum):
    current = "CURRENT"
    savings = "SAVINGS"


class RecurringInterval(str, Enum):
    daily = "DAILY"
    weekly = "WEEKLY"
    monthly = "MONTHLY"
    yearly = "YEARLY"


@dataclass(frozen=True)
class NotRecurring:
    pass


@dataclass(frozen=True)
class Scheduled:
    interval: RecurringInterval
    next_date: date
    last_processed: Optional[date] = None


@dataclass(frozen=True)
class Terminated:
    interval: RecurringInterval
    last_processed: Optional[date] = None


RecurrenceState = Union[NotRecurring, Scheduled, Terminated]


def new_transaction_id() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    color: Mapped[Optional[str]] = mapped_column(String(7))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.current
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    balance: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0")
    )
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (
        Index("ix_accounts_owner", "owner_id"),
        Index(
            "uq_accounts_owner_default",
            "owner_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=new_transaction_id
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category_id: Mapped[str] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(500))
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_interval: Mapped[Optional[RecurringInterval]] = mapped_column(
        SAEnum(RecurringInterval)
    )
    next_recurring_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    last_processed_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    origin_series_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("transactions.id")
    )
    occurrence_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    account: Mapped["Account"] = relationship(
        "Account", back_populates="transactions"
    )
    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint(
            "origin_series_id",
            "occurrence_date",
            name="uq_txn_series_occurrence",
        ),
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_owner_date", "owner_id", "date"),
        Index("ix_transactions_due_series", "is_recurring", "next_recurring_date"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "(is_recurring AND recurring_interval IS NOT NULL)"
            " OR (NOT is_recurring AND recurring_interval IS NULL)",
            name="ck_transactions_recurring_interval",
        ),
        CheckConstraint(
            "next_recurring_date IS NULL OR is_recurring",
            name="ck_transactions_next_date_recurring",
        ),
    )

    @property
    def recurrence(self) -> RecurrenceState:
        if not self.is_recurring or self.recurring_interval is None:
            return NotRecurring()
        if self.next_recurring_date is None:
            return Terminated(self.recurring_interval, self.last_processed_date)
        return Scheduled(
            self.recurring_interval, self.next_recurring_date, self.last_processed_date
        )

    @recurrence.setter
    def recurrence(self, state: RecurrenceState) -> None:
        if isinstance(state, Scheduled):
            self.is_recurring = True
            self.recurring_interval = state.interval
            self.next_recurring_date = state.next_date
            self.last_processed_date = state.last_processed
        elif isinstance(state, Terminated):
            self.is_recurring = True
            self.recurring_interval = state.interval
            self.next_recurring_date = None
            self.last_processed_date = state.last_processed
        elif isinstance(state, NotRecurring):
            self.is_recurring = False
            self.recurring_interval = None
            self.next_recurring_date = None
            self.last_processed_date = None
            self.needs_review = False
        else:
            raise TypeError(f"Unknown recurrence state: {state!r}")


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    account: Mapped[Optional["Account"]] = relationship("Account")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_budgets_amount_non_negative"),
        UniqueConstraint("owner_id", "account_id", name="uq_budget_owner_scope"),
        Index(
            "uq_budgets_owner_wide",
            "owner_id",
            unique=True,
            sqlite_where=text("account_id IS NULL"),
            postgresql_where=text("account_id IS NULL"),
        ),
    )
