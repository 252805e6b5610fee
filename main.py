import logging
from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from aggregation import AggregationEngine
from auth import owner_from_authorization
from balance import BalanceReconciler
from config import get_settings
from database import SessionLocal, session_scope
from errors import (
    Conflict,
    LedgerError,
    NotFound,
    Timeout,
    Unauthorized,
    ValidationError,
)
from ledger import LedgerStore
from models import TransactionType
from periods import resolve_period
from receipts import ReceiptService
from recurrence import RecurrenceScheduler
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    BudgetIn,
    BudgetOut,
    BulkDeleteIn,
    CategoryOut,
    ReceiptTransactionIn,
    TransactionIn,
    TransactionOut,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    TransactionService,
    seed_categories,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_owner(authorization: Optional[str] = Header(default=None)) -> str:
    try:
        return owner_from_authorization(authorization)
    except Unauthorized as exc:
        raise HTTPException(
            status_code=401,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, Unauthorized):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ValidationError, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, Conflict):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, Timeout):
        return HTTPException(
            status_code=503, detail=str(exc), headers={"Retry-After": "1"}
        )
    logger.error(f"ledger_error: type={type(exc).__name__} detail={exc}")
    return HTTPException(status_code=500, detail="Internal ledger error")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = "; ".join(err.get("msg", "") for err in exc.errors())
    return JSONResponse(status_code=400, content={"detail": messages})


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        created = seed_categories(session)
    logger.info(f"startup: categories_seeded={created}")
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _account_out(account) -> dict:
    return AccountOut.model_validate(account).model_dump(mode="json")


def _transaction_out(txn) -> dict:
    return TransactionOut.model_validate(txn).model_dump(mode="json")


@app.get("/api/accounts")
def list_accounts(
    include_archived: bool = False,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    accounts = AccountService(db, owner_id).list_all(include_archived)
    return [_account_out(account) for account in accounts]


@app.post("/api/accounts", status_code=201)
def create_account(
    data: AccountIn,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, owner_id).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _account_out(account)


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, owner_id).get(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _account_out(account)


@app.post("/api/accounts/{account_id}/default")
def set_default_account(
    account_id: int,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, owner_id).set_default(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _account_out(account)


@app.post("/api/accounts/{account_id}/archive")
def archive_account(
    account_id: int,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, owner_id).archive(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"id": account.id, "archived_at": account.archived_at.isoformat()}


@app.get("/api/accounts/{account_id}/transactions")
def account_transactions(
    account_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        items = TransactionService(db, owner_id).list_for_account(
            account_id, start, end
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"items": [_transaction_out(txn) for txn in items]}


@app.get("/api/accounts/{account_id}/chart")
def account_chart(
    account_id: int,
    range_key: str = Query(default="1M", alias="range"),
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        series = AggregationEngine(db, owner_id).account_series(account_id, range_key)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return asdict(series)


@app.get("/api/categories")
def list_categories(
    type: Optional[TransactionType] = None,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    categories = CategoryService(db).list_all(type)
    return [CategoryOut.model_validate(c).model_dump(mode="json") for c in categories]


@app.post("/api/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, owner_id).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _transaction_out(txn)


@app.post("/api/transactions/from-receipt", status_code=201)
def create_transaction_from_receipt(
    data: ReceiptTransactionIn,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        txn = ReceiptService(db, owner_id).create_from_receipt(
            data.draft,
            data.account_id,
            transaction_id=data.id,
            receipt_url=data.receipt_url,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _transaction_out(txn)


@app.post("/api/transactions/bulk-delete")
def bulk_delete_transactions(
    data: BulkDeleteIn,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        deleted = TransactionService(db, owner_id).bulk_delete(data.ids)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"deleted": deleted}


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, owner_id).get(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _transaction_out(txn)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    data: TransactionIn,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, owner_id).update(transaction_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _transaction_out(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: str,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, owner_id).delete(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/budgets")
def upsert_budget(
    data: BudgetIn,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        budget = BudgetService(db, owner_id).upsert(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return BudgetOut.model_validate(budget).model_dump(mode="json")


@app.get("/api/budgets/current")
def current_budget(
    account_id: Optional[int] = None,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    try:
        progress = AggregationEngine(db, owner_id).current_budget(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    if progress is None:
        raise HTTPException(status_code=404, detail="No budget set")
    return asdict(progress)


@app.get("/api/dashboard")
def dashboard(owner_id: str = Depends(current_owner), db: Session = Depends(get_db)):
    data = AggregationEngine(db, owner_id).dashboard()
    return {
        "accounts": [_account_out(account) for account in data.accounts],
        "default_account": (
            _account_out(data.default_account) if data.default_account else None
        ),
        "budget": asdict(data.budget) if data.budget else None,
        "recent_transactions": [
            _transaction_out(txn) for txn in data.recent_transactions
        ],
        "month": asdict(data.month),
    }


@app.get("/api/overview")
def overview(
    request: Request,
    account_id: Optional[list[int]] = Query(default=None),
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    params = request.query_params
    try:
        period = resolve_period(
            params.get("period"), params.get("start"), params.get("end")
        )
        data = AggregationEngine(db, owner_id).overview(
            account_id, period.start, period.end
        )
    except (LedgerError, ValueError) as exc:
        raise _http_error(exc) from exc
    return asdict(data)


@app.post("/api/admin/sweep")
def run_sweep(
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    logger.info(f"manual_sweep: owner_id={owner_id}")
    try:
        result = RecurrenceScheduler(db).sweep(owner_id=owner_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return asdict(result)


@app.post("/api/admin/accounts/{account_id}/reconcile")
def reconcile_account(
    account_id: int,
    owner_id: str = Depends(current_owner),
    db: Session = Depends(get_db),
):
    store = LedgerStore(db)
    try:
        with store.unit_of_work(owner_id, [account_id]):
            drift = BalanceReconciler(store).verify(account_id, repair=True)
        balance = store.account_balance(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {
        "account_id": account_id,
        "balance": str(balance),
        "repaired": drift is not None,
        "difference": str(drift.difference) if drift else None,
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
