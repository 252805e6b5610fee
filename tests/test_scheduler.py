from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import scheduler
from database import Base
from ledger import LedgerStore
from models import RecurringInterval, TransactionType
from recurrence import local_today
from schemas import AccountIn, TransactionIn
from services import AccountService, TransactionService, seed_categories

OWNER = "owner-1"


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    seed_categories(session)
    return session


def _use_session(monkeypatch, session: Session) -> None:
    @contextmanager
    def fake_scope():
        yield session
        session.commit()

    monkeypatch.setattr(scheduler, "session_scope", fake_scope)


def test_run_sweep_posts_due_occurrences(monkeypatch):
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    yesterday = local_today() - timedelta(days=1)
    TransactionService(session, OWNER).create(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.expense,
            amount=Decimal("4.00"),
            category_id="food",
            date=yesterday,
            is_recurring=True,
            recurring_interval=RecurringInterval.daily,
        )
    )
    _use_session(monkeypatch, session)

    result = scheduler.run_sweep("test")

    assert result.materialized == 1
    assert LedgerStore(session).account_balance(account.id) == Decimal("-8.00")


def test_run_drift_check_repairs(monkeypatch):
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    LedgerStore(session).update_account_balance(account.id, Decimal("3.00"))
    session.commit()
    _use_session(monkeypatch, session)

    assert scheduler.run_drift_check("test") == 1
    assert LedgerStore(session).account_balance(account.id) == Decimal("0.00")


def test_manager_registers_jobs(monkeypatch):
    session = make_session()
    _use_session(monkeypatch, session)
    manager = scheduler.SchedulerManager()
    manager.start()
    try:
        jobs = {job.id: job for job in manager.scheduler.get_jobs()}
        assert set(jobs) == {
            "recurring_daily",
            "recurring_safety_net",
            "balance_drift_check",
        }
        assert all(job.max_instances == 1 for job in jobs.values())
        assert all(job.coalesce for job in jobs.values())
    finally:
        manager.stop()
