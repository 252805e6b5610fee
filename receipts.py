from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import ValidationError
from models import Category, Transaction, TransactionType
from recurrence import local_today
from schemas import ReceiptDraft, TransactionIn
from services import TransactionService, _require_owner

FALLBACK_CATEGORY_ID = "other-expense"


class ReceiptService:
    """Turns parsed receipt drafts into expense transactions."""

    def __init__(self, session: Session, owner_id: Optional[str]) -> None:
        self.session = session
        self.owner_id = _require_owner(owner_id)

    def resolve_category(self, raw: Optional[str]) -> str:
        name = (raw or "").strip()
        if not name:
            return FALLBACK_CATEGORY_ID
        input_lower = name.lower()
        exact = self.session.scalar(
            select(Category).where(
                Category.type == TransactionType.expense,
                (func.lower(Category.name) == input_lower)
                | (Category.id == input_lower),
            )
        )
        if exact:
            return exact.id

        categories = self.session.scalars(
            select(Category).where(Category.type == TransactionType.expense)
        ).all()
        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in categories:
            dist = int(Levenshtein.distance(input_lower, category.name.lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is None or best_distance > 1:
            return FALLBACK_CATEGORY_ID
        if len(best) > 1:
            options = ", ".join(sorted(c.name for c in best))
            raise ValidationError(f"Category '{name}' is ambiguous; matches: {options}")
        return best[0].id

    def to_transaction_input(
        self,
        draft: ReceiptDraft,
        account_id: int,
        *,
        transaction_id: Optional[str] = None,
        receipt_url: Optional[str] = None,
    ) -> TransactionIn:
        try:
            return TransactionIn(
                id=transaction_id,
                account_id=account_id,
                type=TransactionType.expense,
                amount=draft.amount,
                description=draft.description,
                category_id=self.resolve_category(draft.category),
                date=draft.date or local_today(),
                receipt_url=receipt_url,
            )
        except PydanticValidationError as exc:
            message = "; ".join(err["msg"] for err in exc.errors())
            raise ValidationError(message or "Invalid receipt") from exc

    def create_from_receipt(
        self,
        draft: ReceiptDraft,
        account_id: int,
        *,
        transaction_id: Optional[str] = None,
        receipt_url: Optional[str] = None,
    ) -> Transaction:
        data = self.to_transaction_input(
            draft,
            account_id,
            transaction_id=transaction_id,
            receipt_url=receipt_url,
        )
        return TransactionService(self.session, self.owner_id).create(data)
