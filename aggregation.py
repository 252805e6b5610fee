from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from balance import to_money
from errors import NotFound, ValidationError
from ledger import LedgerStore
from models import Account, Budget, Category, Transaction, TransactionType
from periods import chart_period, month_period
from recurrence import local_today
from services import AccountService, BudgetService, _require_owner

RECENT_LIMIT = 10


@dataclass
class CurrentBudget:
    budget_id: int
    account_id: Optional[int]
    budget_amount: Decimal
    current_expenses: Decimal
    remaining: Decimal
    percent_used: float
    period_start: date
    period_end: date


@dataclass
class CategoryTotal:
    category_id: str
    name: str
    type: TransactionType
    total: Decimal
    count: int


@dataclass
class Overview:
    start: Optional[date]
    end: Optional[date]
    income: Decimal
    expense: Decimal
    net: Decimal
    transaction_count: int
    by_category: list[CategoryTotal] = field(default_factory=list)


@dataclass
class SeriesPoint:
    day: date
    income: Decimal
    expense: Decimal


@dataclass
class AccountSeries:
    account_id: int
    range_key: str
    start: date
    end: date
    points: list[SeriesPoint]
    total_income: Decimal
    total_expense: Decimal


@dataclass
class Dashboard:
    accounts: list[Account]
    default_account: Optional[Account]
    budget: Optional[CurrentBudget]
    recent_transactions: list[Transaction]
    month: Overview


class AggregationEngine:
    """Read-only summaries over one owner's ledger.

    Every figure comes from a single SELECT against non-deleted rows, so a
    result never mixes ledger states from before and after a commit.
    """

    def __init__(self, session: Session, owner_id: Optional[str]) -> None:
        self.session = session
        self.owner_id = _require_owner(owner_id)
        self.store = LedgerStore(session)

    def _owned_account_ids(self, account_ids: Optional[list[int]]) -> list[int]:
        owned = [
            account.id
            for account in self.store.accounts_for_owner(
                self.owner_id, include_archived=True
            )
        ]
        if account_ids is None:
            return owned
        if set(account_ids) - set(owned):
            raise NotFound("Account not found")
        return list(account_ids)

    def budget_progress(
        self, account_id: Optional[int], period_start: date, period_end: date
    ) -> Decimal:
        if period_start >= period_end:
            raise ValidationError("Start date must be before end date")
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.owner_id == self.owner_id,
            Transaction.type == TransactionType.expense,
            Transaction.deleted_at.is_(None),
            Transaction.date >= period_start,
            Transaction.date < period_end,
        )
        if account_id is not None:
            self.store.account_for_owner(
                self.owner_id, account_id, include_archived=True
            )
            stmt = stmt.where(Transaction.account_id == account_id)
        return to_money(self.session.execute(stmt).scalar_one())

    def current_budget(
        self, account_id: Optional[int] = None, today: Optional[date] = None
    ) -> Optional[CurrentBudget]:
        today = today or local_today()
        budgets = BudgetService(self.session, self.owner_id)
        budget: Optional[Budget] = None
        if account_id is not None:
            budget = budgets.get_for_scope(account_id)
        if budget is None:
            budget = budgets.get_for_scope(None)
        if budget is None:
            return None

        month = month_period(today)
        # Owner-wide budgets count expenses across every account.
        expenses = self.budget_progress(budget.account_id, month.start, month.end)
        amount = to_money(budget.amount)
        percent = float(expenses / amount * 100) if amount else 0.0
        return CurrentBudget(
            budget_id=budget.id,
            account_id=budget.account_id,
            budget_amount=amount,
            current_expenses=expenses,
            remaining=amount - expenses,
            percent_used=round(percent, 2),
            period_start=month.start,
            period_end=month.end,
        )

    def overview(
        self,
        account_ids: Optional[list[int]] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> Overview:
        if start and end and start >= end:
            raise ValidationError("Start date must be before end date")
        ids = self._owned_account_ids(account_ids)
        filters = [
            Transaction.owner_id == self.owner_id,
            Transaction.deleted_at.is_(None),
            Transaction.account_id.in_(ids),
        ]
        if start is not None:
            filters.append(Transaction.date >= start)
        if end is not None:
            filters.append(Transaction.date < end)

        rows = self.session.execute(
            select(
                Category.id,
                Category.name,
                Transaction.type,
                func.sum(Transaction.amount).label("total"),
                func.count(Transaction.id).label("txn_count"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(*filters)
            .group_by(Category.id, Category.name, Transaction.type)
        ).all()

        income = Decimal("0.00")
        expense = Decimal("0.00")
        count = 0
        by_category: list[CategoryTotal] = []
        for row in rows:
            total = to_money(row.total)
            if row.type == TransactionType.income:
                income += total
            else:
                expense += total
            count += int(row.txn_count)
            by_category.append(
                CategoryTotal(row.id, row.name, row.type, total, int(row.txn_count))
            )
        by_category.sort(key=lambda item: (-item.total, item.name))
        return Overview(
            start=start,
            end=end,
            income=income,
            expense=expense,
            net=income - expense,
            transaction_count=count,
            by_category=by_category,
        )

    def account_series(
        self, account_id: int, range_key: str = "1M", today: Optional[date] = None
    ) -> AccountSeries:
        try:
            period = chart_period(range_key, today=today or local_today())
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        self.store.account_for_owner(self.owner_id, account_id, include_archived=True)

        income_sum = func.sum(
            case(
                (Transaction.type == TransactionType.income, Transaction.amount),
                else_=0,
            )
        )
        expense_sum = func.sum(
            case(
                (Transaction.type == TransactionType.expense, Transaction.amount),
                else_=0,
            )
        )
        rows = self.session.execute(
            select(
                Transaction.date,
                income_sum.label("income"),
                expense_sum.label("expense"),
            )
            .where(
                Transaction.account_id == account_id,
                Transaction.deleted_at.is_(None),
                Transaction.date >= period.start,
                Transaction.date < period.end,
            )
            .group_by(Transaction.date)
            .order_by(Transaction.date)
        ).all()

        points = [
            SeriesPoint(row.date, to_money(row.income), to_money(row.expense))
            for row in rows
        ]
        return AccountSeries(
            account_id=account_id,
            range_key=period.slug,
            start=period.start,
            end=period.end - timedelta(days=1),
            points=points,
            total_income=sum((p.income for p in points), Decimal("0.00")),
            total_expense=sum((p.expense for p in points), Decimal("0.00")),
        )

    def dashboard(self, today: Optional[date] = None) -> Dashboard:
        today = today or local_today()
        accounts_service = AccountService(self.session, self.owner_id)
        accounts = accounts_service.list_all()
        default = accounts_service.default_account()
        budget = self.current_budget(default.id if default else None, today)

        recent_stmt = (
            select(Transaction)
            .where(
                Transaction.owner_id == self.owner_id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.date.desc(), Transaction.created_at.desc())
            .limit(RECENT_LIMIT)
        )
        if default is not None:
            recent_stmt = recent_stmt.where(Transaction.account_id == default.id)
        recent = self.session.scalars(recent_stmt).all()

        month = month_period(today)
        return Dashboard(
            accounts=accounts,
            default_account=default,
            budget=budget,
            recent_transactions=recent,
            month=self.overview(None, month.start, month.end),
        )
