from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from functools import partial
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from balance import BalanceReconciler, signed_amount
from config import get_settings
from errors import Conflict, NotFound, Unauthorized, ValidationError
from ledger import LedgerStore, run_with_conflict_retry
from models import (
    Account,
    Budget,
    Category,
    NotRecurring,
    RecurrenceState,
    Scheduled,
    Terminated,
    Transaction,
    TransactionType,
    new_transaction_id,
)
from recurrence import initial_state
from schemas import AccountIn, BudgetIn, TransactionIn


DEFAULT_CATEGORIES: dict[TransactionType, list[tuple[str, str, str]]] = {
    TransactionType.income: [
        ("salary", "Salary", "#22c55e"),
        ("freelance", "Freelance", "#06b6d4"),
        ("investments", "Investments", "#6366f1"),
        ("business", "Business", "#ec4899"),
        ("rental", "Rental", "#f59e0b"),
        ("other-income", "Other Income", "#64748b"),
    ],
    TransactionType.expense: [
        ("housing", "Housing", "#ef4444"),
        ("transportation", "Transportation", "#f97316"),
        ("groceries", "Groceries", "#84cc16"),
        ("utilities", "Utilities", "#06b6d4"),
        ("entertainment", "Entertainment", "#8b5cf6"),
        ("food", "Food", "#f43f5e"),
        ("shopping", "Shopping", "#ec4899"),
        ("healthcare", "Healthcare", "#14b8a6"),
        ("education", "Education", "#6366f1"),
        ("personal", "Personal Care", "#d946ef"),
        ("travel", "Travel", "#0ea5e9"),
        ("insurance", "Insurance", "#64748b"),
        ("gifts", "Gifts & Donations", "#f472b6"),
        ("bills", "Bills & Fees", "#fb7185"),
        ("other-expense", "Other Expenses", "#94a3b8"),
    ],
}


def seed_categories(session: Session) -> int:
    existing = set(session.scalars(select(Category.id)).all())
    created = 0
    for txn_type, rows in DEFAULT_CATEGORIES.items():
        for category_id, name, color in rows:
            if category_id in existing:
                continue
            session.add(
                Category(id=category_id, name=name, type=txn_type, color=color)
            )
            created += 1
    session.commit()
    return created


def _require_owner(owner_id: Optional[str]) -> str:
    if not owner_id:
        raise Unauthorized("Missing owner identity")
    return owner_id


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, txn_type: Optional[TransactionType] = None) -> list[Category]:
        stmt = select(Category).order_by(Category.type, Category.name)
        if txn_type:
            stmt = stmt.where(Category.type == txn_type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: str) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFound("Category not found")
        return category


class AccountService:
    def __init__(self, session: Session, owner_id: Optional[str]) -> None:
        self.session = session
        self.owner_id = _require_owner(owner_id)
        self.store = LedgerStore(session)

    def list_all(self, include_archived: bool = False) -> list[Account]:
        return self.store.accounts_for_owner(
            self.owner_id, include_archived=include_archived
        )

    def get(self, account_id: int) -> Account:
        return self.store.account_for_owner(self.owner_id, account_id)

    def default_account(self) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(
                Account.owner_id == self.owner_id,
                Account.is_default.is_(True),
                Account.archived_at.is_(None),
            )
        )

    def create(self, data: AccountIn) -> Account:
        has_accounts = bool(self.list_all())
        make_default = data.is_default or not has_accounts
        if make_default:
            self._clear_default()
        account = Account(
            owner_id=self.owner_id,
            name=data.name.strip(),
            type=data.type,
            currency=(data.currency or get_settings().default_currency).upper(),
            is_default=make_default,
            balance=Decimal("0"),
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def set_default(self, account_id: int) -> Account:
        account = self.get(account_id)
        if account.is_default:
            return account
        self._clear_default()
        account.is_default = True
        self.session.commit()
        self.session.refresh(account)
        return account

    def archive(self, account_id: int) -> Account:
        return run_with_conflict_retry(partial(self._archive_once, account_id))

    def _archive_once(self, account_id: int) -> Account:
        with self.store.unit_of_work(self.owner_id, [account_id]) as accounts:
            account = accounts[account_id]
            if account.archived_at is not None:
                return account
            if account.is_default:
                raise ValidationError("The default account cannot be archived")
            for series in self.store.scheduled_series_for_account(account_id):
                series.recurrence = Terminated(
                    series.recurring_interval, series.last_processed_date
                )
            account.archived_at = datetime.utcnow()
        return account

    def _clear_default(self) -> None:
        self.session.execute(
            update(Account)
            .where(Account.owner_id == self.owner_id, Account.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()


class TransactionService:
    def __init__(self, session: Session, owner_id: Optional[str]) -> None:
        self.session = session
        self.owner_id = _require_owner(owner_id)
        self.store = LedgerStore(session)
        self.reconciler = BalanceReconciler(self.store)

    def _validate(self, data: TransactionIn) -> Category:
        if data.amount is None or data.amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if data.amount.as_tuple().exponent < -2:
            raise ValidationError("Amount cannot have more than two decimal places")
        if data.is_recurring != (data.recurring_interval is not None):
            raise ValidationError(
                "Recurring transactions need an interval, and only they may have one"
            )
        category = self.session.get(Category, data.category_id)
        if not category:
            raise NotFound("Category not found")
        if category.type != data.type:
            raise ValidationError("Category type mismatch")
        return category

    def create(self, data: TransactionIn) -> Transaction:
        self._validate(data)
        if data.id:
            existing = self._existing_for_id(data.id)
            if existing is not None:
                return existing
        try:
            return run_with_conflict_retry(partial(self._create_once, data))
        except IntegrityError:
            # A concurrent resubmission with the same id won the insert.
            existing = self._existing_for_id(data.id) if data.id else None
            if existing is None:
                raise
            return existing

    def _existing_for_id(self, transaction_id: str) -> Optional[Transaction]:
        existing = self.store.get(transaction_id, include_deleted=True)
        if existing is None:
            return None
        if existing.owner_id != self.owner_id:
            raise ValidationError("Transaction id is already in use")
        return existing

    def _create_once(self, data: TransactionIn) -> Transaction:
        with self.store.unit_of_work(self.owner_id, [data.account_id]) as accounts:
            if accounts[data.account_id].archived_at is not None:
                raise NotFound("Account not found")
            txn = Transaction(
                id=data.id or new_transaction_id(),
                owner_id=self.owner_id,
                account_id=data.account_id,
                type=data.type,
                amount=data.amount,
                description=data.description,
                category_id=data.category_id,
                date=data.date,
                receipt_url=data.receipt_url,
            )
            if data.is_recurring:
                txn.recurrence = initial_state(data.date, data.recurring_interval)
            else:
                txn.recurrence = NotRecurring()
            self._write_new(txn)
        return txn

    def _write_new(self, txn: Transaction) -> None:
        self.store.put(txn)
        self.reconciler.reconcile(txn.account_id, signed_amount(txn.type, txn.amount))

    def materialize_occurrence(
        self, series: Transaction, occurrence: date
    ) -> Transaction:
        """Insert one concrete occurrence of ``series``.

        Must run inside a unit of work that holds the series account's lock.
        """
        txn = Transaction(
            id=new_transaction_id(),
            owner_id=series.owner_id,
            account_id=series.account_id,
            type=series.type,
            amount=series.amount,
            description=series.description,
            category_id=series.category_id,
            date=occurrence,
            origin_series_id=series.id,
            occurrence_date=occurrence,
        )
        txn.recurrence = NotRecurring()
        self._write_new(txn)
        return txn

    def get(self, transaction_id: str) -> Transaction:
        txn = self.store.get(transaction_id)
        if not txn or txn.owner_id != self.owner_id:
            raise NotFound("Transaction not found")
        return txn

    def list_for_account(
        self,
        account_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Transaction]:
        if start and end and start >= end:
            raise ValidationError("Start date must be before end date")
        self.store.account_for_owner(self.owner_id, account_id, include_archived=True)
        return self.store.list_by_account(account_id, start, end)

    def update(self, transaction_id: str, data: TransactionIn) -> Transaction:
        self._validate(data)
        return run_with_conflict_retry(
            partial(self._update_once, transaction_id, data)
        )

    def _update_once(self, transaction_id: str, data: TransactionIn) -> Transaction:
        current = self.get(transaction_id)
        account_ids = {current.account_id, data.account_id}
        with self.store.unit_of_work(self.owner_id, account_ids) as accounts:
            txn = self.store.get(transaction_id)
            if txn is None or txn.owner_id != self.owner_id:
                raise NotFound("Transaction not found")
            if txn.account_id not in accounts:
                raise Conflict("Transaction moved to another account concurrently")
            if accounts[data.account_id].archived_at is not None:
                raise NotFound("Account not found")

            old_account_id = txn.account_id
            old_signed = signed_amount(txn.type, txn.amount)
            new_signed = signed_amount(data.type, data.amount)
            old_state = txn.recurrence
            old_date = txn.date

            txn.account_id = data.account_id
            txn.type = data.type
            txn.amount = data.amount
            txn.description = data.description
            txn.category_id = data.category_id
            txn.date = data.date
            txn.receipt_url = data.receipt_url
            txn.recurrence = self._recurrence_after_edit(old_state, old_date, data)
            self.session.flush()

            if old_account_id == data.account_id:
                self.reconciler.reconcile(old_account_id, new_signed - old_signed)
            else:
                self.reconciler.reconcile(old_account_id, -old_signed)
                self.reconciler.reconcile(data.account_id, new_signed)
        return txn

    @staticmethod
    def _recurrence_after_edit(
        old_state: RecurrenceState, old_date: date, data: TransactionIn
    ) -> RecurrenceState:
        if not data.is_recurring:
            return NotRecurring()
        if (
            isinstance(old_state, Scheduled)
            and old_state.interval == data.recurring_interval
            and old_date == data.date
        ):
            return old_state
        last_processed = getattr(old_state, "last_processed", None)
        return initial_state(data.date, data.recurring_interval, last_processed)

    def delete(self, transaction_id: str) -> None:
        self.bulk_delete([transaction_id])

    def bulk_delete(self, transaction_ids: list[str]) -> int:
        wanted = set(transaction_ids)
        if not wanted:
            return 0
        rows = self.session.scalars(
            select(Transaction)
            .where(Transaction.id.in_(wanted), Transaction.owner_id == self.owner_id)
            .execution_options(populate_existing=True)
        ).all()
        if len(rows) != len(wanted):
            raise NotFound("Transaction not found")

        by_account: dict[int, list[str]] = defaultdict(list)
        for txn in rows:
            if txn.deleted_at is None:
                by_account[txn.account_id].append(txn.id)

        deleted = 0
        for account_id in sorted(by_account):
            deleted += run_with_conflict_retry(
                partial(self._delete_group, account_id, by_account[account_id])
            )
        return deleted

    def _delete_group(self, account_id: int, transaction_ids: list[str]) -> int:
        deleted = 0
        with self.store.unit_of_work(self.owner_id, [account_id]):
            delta = Decimal("0")
            for transaction_id in transaction_ids:
                txn = self.store.get(transaction_id)
                if txn is None:
                    continue
                if txn.account_id != account_id:
                    raise Conflict("Transaction moved to another account concurrently")
                state = txn.recurrence
                if not isinstance(state, NotRecurring):
                    txn.recurrence = Terminated(state.interval, state.last_processed)
                self.store.soft_delete(txn)
                delta -= signed_amount(txn.type, txn.amount)
                deleted += 1
            self.reconciler.reconcile(account_id, delta)
        return deleted


class BudgetService:
    def __init__(self, session: Session, owner_id: Optional[str]) -> None:
        self.session = session
        self.owner_id = _require_owner(owner_id)
        self.store = LedgerStore(session)

    def get_for_scope(self, account_id: Optional[int]) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget).where(
                Budget.owner_id == self.owner_id,
                Budget.account_id.is_(None)
                if account_id is None
                else Budget.account_id == account_id,
            )
        )

    def upsert(self, data: BudgetIn) -> Budget:
        currency = get_settings().default_currency
        if data.account_id is not None:
            account = self.store.account_for_owner(self.owner_id, data.account_id)
            currency = account.currency

        existing = self.get_for_scope(data.account_id)
        if existing:
            existing.amount = data.amount
            existing.currency = currency
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = Budget(
            owner_id=self.owner_id,
            account_id=data.account_id,
            amount=data.amount,
            currency=currency,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.owner_id != self.owner_id:
            raise NotFound("Budget not found")
        self.session.delete(budget)
        self.session.commit()
