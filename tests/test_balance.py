import random
import threading
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from balance import BalanceReconciler, signed_amount
from database import Base
from errors import DriftDetected
from ledger import LedgerStore
from models import TransactionType
from schemas import AccountIn, TransactionIn
from services import AccountService, TransactionService, seed_categories

OWNER = "owner-1"
CATEGORY_FOR = {TransactionType.income: "salary", TransactionType.expense: "groceries"}


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    seed_categories(session)
    return session


def _txn(
    account_id: int,
    amount: str,
    txn_type: TransactionType = TransactionType.expense,
    on: date = date(2024, 5, 1),
) -> TransactionIn:
    return TransactionIn(
        account_id=account_id,
        type=txn_type,
        amount=Decimal(amount),
        category_id=CATEGORY_FOR[txn_type],
        date=on,
    )


def test_signed_amount():
    assert signed_amount(TransactionType.income, Decimal("12.5")) == Decimal("12.50")
    assert signed_amount(TransactionType.expense, Decimal("12.5")) == Decimal("-12.50")


@pytest.mark.parametrize("seed", [1, 7, 42, 1234])
def test_balance_matches_ledger_after_random_sequences(seed):
    rng = random.Random(seed)
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    service = TransactionService(session, OWNER)
    store = LedgerStore(session)
    reconciler = BalanceReconciler(store)

    expected: dict[str, Decimal] = {}
    for step in range(60):
        action = rng.choice(["create", "create", "update", "delete"])
        txn_type = rng.choice([TransactionType.income, TransactionType.expense])
        amount = f"{rng.randint(1, 50000) / 100:.2f}"
        on = date(2024, 1, 1) + timedelta(days=rng.randint(0, 90))
        if action == "create" or not expected:
            txn = service.create(_txn(account.id, amount, txn_type, on))
            expected[txn.id] = signed_amount(txn_type, Decimal(amount))
        elif action == "update":
            txn_id = rng.choice(sorted(expected))
            service.update(txn_id, _txn(account.id, amount, txn_type, on))
            expected[txn_id] = signed_amount(txn_type, Decimal(amount))
        else:
            txn_id = rng.choice(sorted(expected))
            service.delete(txn_id)
            del expected[txn_id]

        total = sum(expected.values(), Decimal("0.00"))
        assert store.account_balance(account.id) == total, f"step {step}"
        assert reconciler.ledger_total(account.id) == total


def test_update_moves_transaction_between_accounts():
    session = make_session()
    accounts = AccountService(session, OWNER)
    a = accounts.create(AccountIn(name="A"))
    b = accounts.create(AccountIn(name="B"))
    service = TransactionService(session, OWNER)
    service.create(_txn(a.id, "150.00", TransactionType.income))
    expense = service.create(_txn(a.id, "50.00"))
    service.create(_txn(b.id, "200.00", TransactionType.income))

    store = LedgerStore(session)
    assert store.account_balance(a.id) == Decimal("100.00")
    assert store.account_balance(b.id) == Decimal("200.00")

    moved = service.update(expense.id, _txn(b.id, "50.00"))

    assert moved.account_id == b.id
    assert store.account_balance(a.id) == Decimal("150.00")
    assert store.account_balance(b.id) == Decimal("150.00")


def test_update_same_account_applies_delta():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    service = TransactionService(session, OWNER)
    txn = service.create(_txn(account.id, "40.00"))

    service.update(txn.id, _txn(account.id, "25.00", TransactionType.income))

    assert LedgerStore(session).account_balance(account.id) == Decimal("25.00")


def test_concurrent_creates_on_one_account(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    make = sessionmaker(bind=engine, expire_on_commit=False)
    with make() as session:
        seed_categories(session)
        account_id = AccountService(session, OWNER).create(AccountIn(name="Main")).id

    barrier = threading.Barrier(2)
    errors: list[BaseException] = []

    def worker(amount: str) -> None:
        try:
            with make() as session:
                service = TransactionService(session, OWNER)
                barrier.wait()
                service.create(_txn(account_id, amount))
        except BaseException as exc:  # surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(a,)) for a in ("10.00", "20.00")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    with make() as session:
        store = LedgerStore(session)
        assert store.account_balance(account_id) == Decimal("-30.00")
        assert BalanceReconciler(store).ledger_total(account_id) == Decimal("-30.00")


def test_verify_raises_on_drift_without_repair():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    TransactionService(session, OWNER).create(_txn(account.id, "12.34"))
    store = LedgerStore(session)
    store.update_account_balance(account.id, Decimal("99.00"))
    session.commit()

    with pytest.raises(DriftDetected) as excinfo:
        BalanceReconciler(store).verify(account.id, repair=False)

    assert excinfo.value.cached == Decimal("99.00")
    assert excinfo.value.actual == Decimal("-12.34")
    assert store.account_balance(account.id) == Decimal("99.00")


def test_verify_all_repairs_drift():
    session = make_session()
    accounts = AccountService(session, OWNER)
    drifted = accounts.create(AccountIn(name="Drifted"))
    healthy = accounts.create(AccountIn(name="Healthy"))
    service = TransactionService(session, OWNER)
    service.create(_txn(drifted.id, "10.00"))
    service.create(_txn(healthy.id, "5.00", TransactionType.income))
    store = LedgerStore(session)
    store.update_account_balance(drifted.id, Decimal("0.00"))
    session.commit()

    drifts = BalanceReconciler(store).verify_all()

    assert [d.account_id for d in drifts] == [drifted.id]
    assert drifts[0].difference == Decimal("-10.00")
    assert store.account_balance(drifted.id) == Decimal("-10.00")
    assert store.account_balance(healthy.id) == Decimal("5.00")


def test_verify_ignores_rounding_within_tolerance():
    session = make_session()
    account = AccountService(session, OWNER).create(AccountIn(name="Main"))
    TransactionService(session, OWNER).create(_txn(account.id, "10.00"))
    store = LedgerStore(session)
    store.update_account_balance(account.id, Decimal("-10.01"))
    session.commit()

    assert BalanceReconciler(store).verify(account.id, repair=False) is None
