from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import Base
from ledger import LedgerStore
from models import (
    NotRecurring,
    RecurringInterval,
    Scheduled,
    Terminated,
    Transaction,
    TransactionType,
)
from recurrence import RecurrenceScheduler, add_months, advance, first_occurrence_after
from schemas import AccountIn, TransactionIn
from services import AccountService, TransactionService, seed_categories

OWNER = "owner-1"


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    seed_categories(session)
    return session


def _rent(account_id: int, on: date, interval=RecurringInterval.daily) -> TransactionIn:
    return TransactionIn(
        account_id=account_id,
        type=TransactionType.expense,
        amount=Decimal("10.00"),
        description="Rent",
        category_id="housing",
        date=on,
        is_recurring=True,
        recurring_interval=interval,
    )


def _occurrences(session: Session, series_id: str) -> list[Transaction]:
    return session.scalars(
        select(Transaction)
        .where(Transaction.origin_series_id == series_id)
        .order_by(Transaction.occurrence_date)
    ).all()


def test_advance_monthly_clamps_to_month_end():
    assert advance(date(2023, 1, 31), RecurringInterval.monthly) == date(2023, 2, 28)
    assert advance(date(2024, 1, 31), RecurringInterval.monthly) == date(2024, 2, 29)
    assert advance(date(2024, 12, 31), RecurringInterval.monthly) == date(2025, 1, 31)


def test_advance_yearly_from_leap_day():
    assert advance(date(2024, 2, 29), RecurringInterval.yearly) == date(2025, 2, 28)
    assert advance(date(2023, 2, 28), RecurringInterval.yearly) == date(2024, 2, 28)


def test_advance_daily_and_weekly_cross_boundaries():
    assert advance(date(2024, 2, 28), RecurringInterval.daily) == date(2024, 2, 29)
    assert advance(date(2024, 12, 31), RecurringInterval.daily) == date(2025, 1, 1)
    assert advance(date(2024, 12, 28), RecurringInterval.weekly) == date(2025, 1, 4)


def test_add_months_handles_negative_offsets():
    assert add_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
    assert add_months(date(2024, 1, 15), -13) == date(2022, 12, 15)


def test_first_occurrence_after_counts_passed_dates():
    resume, passed = first_occurrence_after(
        date(2024, 3, 4), RecurringInterval.daily, date(2024, 3, 10)
    )
    assert resume == date(2024, 3, 11)
    assert passed == 7


def test_create_recurring_schedules_next_date():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    series = TransactionService(session, OWNER).create(
        _rent(account.id, date(2024, 1, 31), RecurringInterval.monthly)
    )
    assert series.recurrence == Scheduled(
        RecurringInterval.monthly, date(2024, 2, 29), None
    )


def test_sweep_after_three_day_gap_materializes_three_occurrences():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    start = date(2024, 3, 1)
    series = TransactionService(session, OWNER).create(_rent(account.id, start))

    result = RecurrenceScheduler(session).sweep(today=date(2024, 3, 4))

    assert result.materialized == 3
    occurrences = _occurrences(session, series.id)
    assert [t.date for t in occurrences] == [
        date(2024, 3, 2),
        date(2024, 3, 3),
        date(2024, 3, 4),
    ]
    assert all(isinstance(t.recurrence, NotRecurring) for t in occurrences)

    refreshed = LedgerStore(session).get(series.id)
    assert refreshed.next_recurring_date == date(2024, 3, 5)
    assert refreshed.last_processed_date == date(2024, 3, 4)
    assert LedgerStore(session).account_balance(account.id) == Decimal("-40.00")


def test_sweep_twice_is_idempotent():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    series = TransactionService(session, OWNER).create(
        _rent(account.id, date(2024, 3, 1))
    )

    scheduler = RecurrenceScheduler(session)
    first = scheduler.sweep(today=date(2024, 3, 3))
    second = scheduler.sweep(today=date(2024, 3, 3))

    assert first.materialized == 2
    assert second.materialized == 0
    assert second.series_processed == 0
    assert len(_occurrences(session, series.id)) == 2
    assert LedgerStore(session).account_balance(account.id) == Decimal("-30.00")


def test_sweep_under_cap_catches_up_fully():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    series = TransactionService(session, OWNER).create(
        _rent(account.id, date(2024, 3, 1))
    )

    result = RecurrenceScheduler(session, catch_up_cap=5).sweep(
        today=date(2024, 3, 6)
    )

    assert result.materialized == 5
    assert result.overflowed == []
    refreshed = LedgerStore(session).get(series.id)
    assert refreshed.next_recurring_date == date(2024, 3, 7)
    assert refreshed.needs_review is False


def test_sweep_over_cap_skips_ahead_and_flags_review():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    series = TransactionService(session, OWNER).create(
        _rent(account.id, date(2024, 3, 1))
    )

    result = RecurrenceScheduler(session, catch_up_cap=2).sweep(
        today=date(2024, 3, 10)
    )

    assert result.materialized == 2
    assert result.overflowed == [series.id]
    assert [t.date for t in _occurrences(session, series.id)] == [
        date(2024, 3, 2),
        date(2024, 3, 3),
    ]
    refreshed = LedgerStore(session).get(series.id)
    assert refreshed.next_recurring_date == date(2024, 3, 11)
    assert refreshed.last_processed_date == date(2024, 3, 3)
    assert refreshed.needs_review is True
    assert LedgerStore(session).account_balance(account.id) == Decimal("-30.00")


def test_advance_series_is_compare_and_swap():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    series = TransactionService(session, OWNER).create(
        _rent(account.id, date(2024, 3, 1))
    )
    store = LedgerStore(session)

    assert not store.advance_series(series.id, date(2024, 3, 5), date(2024, 3, 6))
    assert store.advance_series(series.id, date(2024, 3, 2), date(2024, 3, 3))
    session.commit()
    assert store.get(series.id).next_recurring_date == date(2024, 3, 3)


def test_stale_series_is_skipped_by_racing_sweep():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    series = TransactionService(session, OWNER).create(
        _rent(account.id, date(2024, 3, 1))
    )
    scheduler = RecurrenceScheduler(session)

    # Another sweep already posted the 2nd and moved the series on.
    assert scheduler._materialize(series.id, date(2024, 3, 2))
    assert not scheduler._materialize(series.id, date(2024, 3, 2))
    assert len(_occurrences(session, series.id)) == 1


def test_deleting_series_terminates_it():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    service = TransactionService(session, OWNER)
    series = service.create(_rent(account.id, date(2024, 3, 1)))

    service.delete(series.id)

    stored = LedgerStore(session).get(series.id, include_deleted=True)
    assert stored.recurrence == Terminated(RecurringInterval.daily, None)
    result = RecurrenceScheduler(session).sweep(today=date(2024, 3, 10))
    assert result.materialized == 0
    assert LedgerStore(session).account_balance(account.id) == Decimal("0.00")


def test_editing_series_to_one_off_stops_recurrence():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    service = TransactionService(session, OWNER)
    series = service.create(_rent(account.id, date(2024, 3, 1)))

    edited = _rent(account.id, date(2024, 3, 1)).model_copy(
        update={"is_recurring": False, "recurring_interval": None}
    )
    updated = service.update(series.id, edited)

    assert updated.recurrence == NotRecurring()
    result = RecurrenceScheduler(session).sweep(today=date(2024, 3, 10))
    assert result.materialized == 0


def test_editing_series_date_reschedules_from_new_date():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    service = TransactionService(session, OWNER)
    series = service.create(
        _rent(account.id, date(2024, 1, 15), RecurringInterval.monthly)
    )

    updated = service.update(
        series.id, _rent(account.id, date(2024, 1, 20), RecurringInterval.monthly)
    )

    assert updated.next_recurring_date == date(2024, 2, 20)


def test_archiving_account_terminates_its_series():
    session = make_session()
    accounts = AccountService(session, OWNER)
    main = accounts.create(AccountIn(name="Main"))
    side = accounts.create(AccountIn(name="Side"))
    series = TransactionService(session, OWNER).create(
        _rent(side.id, date(2024, 3, 1))
    )

    accounts.archive(side.id)

    assert isinstance(LedgerStore(session).get(series.id).recurrence, Terminated)
    assert RecurrenceScheduler(session).sweep(today=date(2024, 3, 5)).materialized == 0
    assert main.is_default


def test_rescheduling_onto_posted_dates_does_not_double_post():
    session = make_session()
    mine = AccountService(session, OWNER).create(AccountIn(name="Main"))
    theirs = AccountService(session, "owner-2").create(AccountIn(name="Theirs"))
    service = TransactionService(session, OWNER)
    series = service.create(_rent(mine.id, date(2024, 3, 1)))
    TransactionService(session, "owner-2").create(_rent(theirs.id, date(2024, 3, 4)))
    scheduler = RecurrenceScheduler(session)
    scheduler.sweep(today=date(2024, 3, 3))

    weekly = _rent(mine.id, date(2024, 3, 1), RecurringInterval.weekly)
    service.update(series.id, weekly)
    rewound = service.update(series.id, _rent(mine.id, date(2024, 3, 1)))
    assert rewound.next_recurring_date == date(2024, 3, 2)

    result = scheduler.sweep(today=date(2024, 3, 6))

    assert result.failed == []
    assert result.already_posted == 2
    assert result.materialized == 5
    posted = session.scalars(
        select(Transaction.occurrence_date)
        .where(Transaction.origin_series_id == series.id)
        .order_by(Transaction.occurrence_date)
    ).all()
    assert posted == [date(2024, 3, day) for day in range(2, 7)]
    store = LedgerStore(session)
    assert store.account_balance(mine.id) == Decimal("-60.00")
    assert store.account_balance(theirs.id) == Decimal("-30.00")
    assert store.get(series.id).next_recurring_date == date(2024, 3, 7)


def test_failing_series_does_not_block_the_rest(monkeypatch):
    session = make_session()
    accounts = AccountService(session, OWNER)
    first = accounts.create(AccountIn(name="First"))
    second = accounts.create(AccountIn(name="Second"))
    service = TransactionService(session, OWNER)
    broken = service.create(_rent(first.id, date(2024, 3, 1)))
    broken_id = broken.id
    healthy = service.create(_rent(second.id, date(2024, 3, 2)))

    scheduler = RecurrenceScheduler(session)
    original = scheduler._materialize

    def materialize(series_id, occurrence):
        if series_id == broken_id:
            raise IntegrityError("INSERT INTO transactions", {}, Exception("boom"))
        return original(series_id, occurrence)

    monkeypatch.setattr(scheduler, "_materialize", materialize)
    result = scheduler.sweep(today=date(2024, 3, 3))

    assert result.failed == [broken_id]
    assert result.materialized == 1
    store = LedgerStore(session)
    assert store.account_balance(second.id) == Decimal("-20.00")
    assert store.account_balance(first.id) == Decimal("-10.00")
    assert store.get(broken_id).next_recurring_date == date(2024, 3, 2)
    assert store.get(healthy.id).next_recurring_date == date(2024, 3, 4)
