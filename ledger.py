"""Ledger store: persisted accounts and transactions behind a per-account unit of work.

Every mutation of an account's ledger runs inside :meth:`LedgerStore.unit_of_work`,
which row-locks the affected accounts in ascending id order, commits on success
and rolls back on any exception. Store errors are translated into the core's
``Conflict`` / ``Timeout`` errors so callers never see driver exceptions.
"""

import logging
import time
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, Iterator, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from config import get_settings
from errors import Conflict, NotFound, Timeout
from models import Account, Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL SQLSTATEs
_LOCK_NOT_AVAILABLE = "55P03"
_QUERY_CANCELED = "57014"


def translate_store_error(exc: Exception) -> Exception:
    if isinstance(exc, PoolTimeoutError):
        return Timeout("Timed out waiting for a database connection")
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    message = str(orig if orig is not None else exc).lower()
    if (
        code == _LOCK_NOT_AVAILABLE
        or "database is locked" in message
        or "could not obtain lock" in message
    ):
        return Conflict("Account is being modified by another operation")
    if code == _QUERY_CANCELED or "timeout" in message or "timed out" in message:
        return Timeout("Ledger store did not respond in time")
    return exc


def run_with_conflict_retry(operation: Callable[[], T]) -> T:
    settings = get_settings()
    attempts = max(1, settings.conflict_max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Conflict:
            if attempt >= attempts:
                logger.warning(f"conflict_exhausted: attempts={attempts}")
                raise
            delay = settings.conflict_backoff_secs * (2 ** (attempt - 1))
            logger.info(f"conflict_retry: attempt={attempt} delay={delay:.3f}")
            time.sleep(delay)
    raise AssertionError("unreachable")


class LedgerStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    @contextmanager
    def unit_of_work(
        self, owner_id: str, account_ids: Iterable[int]
    ) -> Iterator[dict[int, Account]]:
        ids = sorted(set(account_ids))
        try:
            accounts = self._lock_accounts(owner_id, ids)
            yield accounts
            self.session.commit()
        except (DBAPIError, PoolTimeoutError) as exc:
            self.session.rollback()
            translated = translate_store_error(exc)
            if translated is exc:
                raise
            raise translated from exc
        except BaseException:
            self.session.rollback()
            raise

    def _lock_accounts(self, owner_id: str, ids: list[int]) -> dict[int, Account]:
        if not ids:
            return {}
        stmt = (
            select(Account)
            .where(Account.owner_id == owner_id, Account.id.in_(ids))
            .order_by(Account.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        accounts = {account.id: account for account in self.session.scalars(stmt)}
        if len(accounts) != len(ids):
            raise NotFound("Account not found")
        return accounts

    def account_for_owner(
        self, owner_id: str, account_id: int, *, include_archived: bool = False
    ) -> Account:
        stmt = (
            select(Account)
            .where(Account.owner_id == owner_id, Account.id == account_id)
            .execution_options(populate_existing=True)
        )
        if not include_archived:
            stmt = stmt.where(Account.archived_at.is_(None))
        account = self.session.scalar(stmt)
        if not account:
            raise NotFound("Account not found")
        return account

    def accounts_for_owner(
        self, owner_id: str, *, include_archived: bool = False
    ) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.owner_id == owner_id)
            .order_by(Account.id)
            .execution_options(populate_existing=True)
        )
        if not include_archived:
            stmt = stmt.where(Account.archived_at.is_(None))
        return self.session.scalars(stmt).all()

    def put(self, txn: Transaction) -> str:
        self.session.add(txn)
        self.session.flush()
        return txn.id

    def get(
        self, transaction_id: str, *, include_deleted: bool = False
    ) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        return self.session.scalar(stmt)

    def list_by_account(
        self,
        account_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.account_id == account_id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.asc(),
                Transaction.id.asc(),
            )
        )
        if start is not None:
            stmt = stmt.where(Transaction.date >= start)
        if end is not None:
            stmt = stmt.where(Transaction.date < end)
        return self.session.scalars(stmt).all()

    def soft_delete(self, txn: Transaction) -> None:
        txn.deleted_at = datetime.utcnow()
        self.session.flush()

    def update_account_balance(self, account_id: int, new_balance: Decimal) -> None:
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance=new_balance)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFound("Account not found")

    def add_to_balance(self, account_id: int, delta: Decimal) -> None:
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance=Account.balance + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFound("Account not found")

    def account_balance(self, account_id: int) -> Decimal:
        balance = self.session.execute(
            select(Account.balance).where(Account.id == account_id)
        ).scalar_one_or_none()
        if balance is None:
            raise NotFound("Account not found")
        return Decimal(str(balance))

    def due_series(
        self, today: date, owner_id: Optional[str] = None
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.next_recurring_date.is_not(None),
                Transaction.next_recurring_date <= today,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.next_recurring_date, Transaction.created_at)
        )
        if owner_id is not None:
            stmt = stmt.where(Transaction.owner_id == owner_id)
        return self.session.scalars(stmt).all()

    def occurrence_posted(self, series_id: str, occurrence: date) -> bool:
        # Soft-deleted occurrences still hold their slot in the unique key.
        found = self.session.execute(
            select(Transaction.id).where(
                Transaction.origin_series_id == series_id,
                Transaction.occurrence_date == occurrence,
            )
        ).first()
        return found is not None

    def scheduled_series_for_account(self, account_id: int) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.account_id == account_id,
            Transaction.is_recurring.is_(True),
            Transaction.next_recurring_date.is_not(None),
            Transaction.deleted_at.is_(None),
        )
        return self.session.scalars(stmt).all()

    def advance_series(
        self,
        series_id: str,
        expected_next: date,
        new_next: date,
        *,
        last_processed: Optional[date] = None,
        needs_review: bool = False,
    ) -> bool:
        """Move a series' next date only if it still equals ``expected_next``.

        Returns False when another sweep already advanced (or a user
        terminated) the series.
        """
        values: dict[str, object] = {"next_recurring_date": new_next}
        if last_processed is not None:
            values["last_processed_date"] = last_processed
        if needs_review:
            values["needs_review"] = True
        result = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == series_id,
                Transaction.is_recurring.is_(True),
                Transaction.next_recurring_date == expected_next,
                Transaction.deleted_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
