import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from errors import LedgerError
from ledger import LedgerStore, run_with_conflict_retry
from models import RecurringInterval, Scheduled

logger = logging.getLogger(__name__)

POSTED = "posted"
ALREADY_POSTED = "already_posted"


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def advance(current: date, interval: RecurringInterval) -> date:
    if interval == RecurringInterval.daily:
        return current + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return current + timedelta(weeks=1)
    if interval == RecurringInterval.monthly:
        return add_months(current, 1)
    if interval == RecurringInterval.yearly:
        # Feb 29 lands on Feb 28 in non-leap years.
        return add_months(current, 12)
    raise ValueError(f"Unsupported recurring interval: {interval}")


def initial_state(
    effective_date: date,
    interval: RecurringInterval,
    last_processed: Optional[date] = None,
) -> Scheduled:
    return Scheduled(interval, advance(effective_date, interval), last_processed)


def first_occurrence_after(
    start: date, interval: RecurringInterval, today: date
) -> tuple[date, int]:
    """Advance from ``start`` until strictly after ``today``.

    Returns the new date and how many occurrences were passed over.
    """
    current = start
    passed = 0
    while current <= today:
        current = advance(current, interval)
        passed += 1
    return current, passed


@dataclass
class SweepResult:
    today: date
    series_processed: int = 0
    materialized: int = 0
    skipped_conflicts: int = 0
    already_posted: int = 0
    overflowed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class RecurrenceScheduler:
    """Materializes due occurrences of recurring transactions.

    Safe to run concurrently with itself: every step is a compare-and-swap on
    the series' stored ``next_recurring_date``, so a racing sweep that already
    advanced a series makes this one skip it.
    """

    def __init__(self, session: Session, catch_up_cap: Optional[int] = None) -> None:
        self.session = session
        self.store = LedgerStore(session)
        self.catch_up_cap = (
            catch_up_cap if catch_up_cap is not None else get_settings().catch_up_cap
        )

    def sweep(
        self, today: Optional[date] = None, owner_id: Optional[str] = None
    ) -> SweepResult:
        today = today or local_today()
        result = SweepResult(today=today)
        series_ids = [txn.id for txn in self.store.due_series(today, owner_id)]
        for series_id in series_ids:
            try:
                self.catch_up_series(series_id, today, result)
            except (LedgerError, SQLAlchemyError) as exc:
                # Left due; the next sweep retries it.
                self.session.rollback()
                result.failed.append(series_id)
                logger.error(
                    f"sweep_series_failed: series_id={series_id} "
                    f"error={type(exc).__name__}: {exc}"
                )
                continue
            result.series_processed += 1
        logger.info(
            f"sweep_done: today={today} owner={owner_id or '*'} "
            f"series={result.series_processed} materialized={result.materialized} "
            f"already_posted={result.already_posted} "
            f"conflicts={result.skipped_conflicts} "
            f"overflowed={len(result.overflowed)} failed={len(result.failed)}"
        )
        return result

    def catch_up_series(
        self, series_id: str, today: date, result: Optional[SweepResult] = None
    ) -> int:
        result = result or SweepResult(today=today)
        materialized = 0
        while True:
            series = self.store.get(series_id)
            if series is None:
                break
            state = series.recurrence
            if not isinstance(state, Scheduled) or state.next_date > today:
                break
            if materialized >= self.catch_up_cap:
                if self._skip_ahead(series_id, state, today):
                    result.overflowed.append(series_id)
                else:
                    result.skipped_conflicts += 1
                break
            occurrence = state.next_date
            outcome = run_with_conflict_retry(
                lambda: self._materialize(series_id, occurrence)
            )
            if outcome is None:
                result.skipped_conflicts += 1
                break
            if outcome == ALREADY_POSTED:
                result.already_posted += 1
                continue
            materialized += 1
            result.materialized += 1
        return materialized

    def _materialize(self, series_id: str, occurrence: date) -> Optional[str]:
        from services import TransactionService

        series = self.store.get(series_id)
        if series is None or series.next_recurring_date != occurrence:
            return None
        account_id = series.account_id
        with self.store.unit_of_work(series.owner_id, [account_id]):
            # Re-read under the account lock; the template may have been edited.
            series = self.store.get(series_id)
            if series is None or series.account_id != account_id:
                return None
            applied = self.store.advance_series(
                series_id,
                occurrence,
                advance(occurrence, series.recurring_interval),
                last_processed=occurrence,
            )
            if not applied:
                return None
            # An edit can move the schedule back onto a date posted earlier.
            if self.store.occurrence_posted(series_id, occurrence):
                logger.info(
                    f"occurrence_exists: series_id={series_id} date={occurrence}"
                )
                return ALREADY_POSTED
            TransactionService(self.session, series.owner_id).materialize_occurrence(
                series, occurrence
            )
        return POSTED

    def _skip_ahead(self, series_id: str, state: Scheduled, today: date) -> bool:
        resume_at, skipped = first_occurrence_after(
            state.next_date, state.interval, today
        )
        series = self.store.get(series_id)
        if series is None:
            return False
        with self.store.unit_of_work(series.owner_id, [series.account_id]):
            applied = self.store.advance_series(
                series_id, state.next_date, resume_at, needs_review=True
            )
        if applied:
            logger.warning(
                f"catch_up_overflow: series_id={series_id} cap={self.catch_up_cap} "
                f"skipped={skipped} skipped_from={state.next_date} "
                f"resumed_at={resume_at}"
            )
        return applied
