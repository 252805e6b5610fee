import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func, select

from config import get_settings
from errors import DriftDetected
from ledger import LedgerStore
from models import Account, Transaction, TransactionType

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

SIGNED_AMOUNT = case(
    (Transaction.type == TransactionType.income, Transaction.amount),
    else_=-Transaction.amount,
)


def to_money(value: object) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT)


def signed_amount(txn_type: TransactionType, amount: Decimal) -> Decimal:
    amount = to_money(amount)
    return amount if txn_type == TransactionType.income else -amount


class BalanceReconciler:
    """Keeps ``Account.balance`` equal to the signed sum of active transactions.

    ``reconcile`` and ``reconcile_full`` write through the caller's unit of
    work; they never commit on their own.
    """

    def __init__(self, store: LedgerStore) -> None:
        self.store = store
        self.session = store.session

    def reconcile(self, account_id: int, delta: Decimal) -> None:
        delta = to_money(delta)
        if delta == 0:
            return
        self.store.add_to_balance(account_id, delta)

    def ledger_total(self, account_id: int) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(SIGNED_AMOUNT), 0)).where(
                Transaction.account_id == account_id,
                Transaction.deleted_at.is_(None),
            )
        ).scalar_one()
        return to_money(total)

    def reconcile_full(self, account_id: int) -> Decimal:
        total = self.ledger_total(account_id)
        self.store.update_account_balance(account_id, total)
        return total

    def verify(
        self, account_id: int, *, repair: bool = True
    ) -> Optional[DriftDetected]:
        cached = to_money(self.store.account_balance(account_id))
        actual = self.ledger_total(account_id)
        tolerance = get_settings().drift_tolerance
        if abs(actual - cached) <= tolerance:
            return None
        drift = DriftDetected(account_id, cached, actual)
        logger.error(
            f"balance_drift: account_id={account_id} cached={cached} "
            f"actual={actual} repair={repair}"
        )
        if not repair:
            raise drift
        self.reconcile_full(account_id)
        return drift

    def verify_all(self) -> list[DriftDetected]:
        rows = self.session.execute(
            select(Account.id, Account.owner_id).order_by(Account.id)
        ).all()
        drifts: list[DriftDetected] = []
        for row in rows:
            with self.store.unit_of_work(row.owner_id, [row.id]):
                drift = self.verify(row.id)
            if drift:
                drifts.append(drift)
        logger.info(f"drift_check: accounts={len(rows)} repaired={len(drifts)}")
        return drifts
