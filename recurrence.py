import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Iterator, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from database import SessionLocal, session_scope
from errors import (
    CategoryReferenceError,
    DuplicateMaterializationError,
    RuleValidationError,
)
from ledger import BudgetLedger
from models import Frequency, RecurringRule, TransactionType
from periods import advance, local_today
from store import (
    category_exists,
    count_transactions_for_rule,
    create_transaction,
    find_transaction,
    is_skipped,
    taken_occurrence_dates,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EndDate:
    on: date


@dataclass(frozen=True)
class OccurrenceCap:
    count: int


Terminator = Union[EndDate, OccurrenceCap]


def make_terminator(
    start_date: date, end_date: Optional[date], occurrence_cap: Optional[int]
) -> Terminator:
    if (end_date is None) == (occurrence_cap is None):
        raise RuleValidationError(
            "Either an end date or an occurrence cap must be provided, but not both"
        )
    if end_date is not None:
        if end_date <= start_date:
            raise RuleValidationError("End date must be after start date")
        return EndDate(end_date)
    if occurrence_cap <= 0:
        raise RuleValidationError("Occurrence cap must be positive")
    return OccurrenceCap(occurrence_cap)


@dataclass(frozen=True)
class RecurrenceSchedule:
    frequency: Frequency
    start_date: date
    terminator: Terminator

    @classmethod
    def from_rule(cls, rule: RecurringRule) -> "RecurrenceSchedule":
        return cls(
            frequency=rule.frequency,
            start_date=rule.start_date,
            terminator=make_terminator(
                rule.start_date, rule.end_date, rule.occurrence_cap
            ),
        )


def calculate_next_date(frequency: Frequency, from_date: date) -> date:
    return advance(from_date, frequency)


def first_occurrence_on_or_after(schedule: RecurrenceSchedule, target: date) -> date:
    """First firing date of ``schedule`` that is not before ``target``.

    Monthly and yearly steps continue from the clamped date of the previous
    step, so a rule started on Jan 31 runs Feb 29, Mar 29, Apr 29, ...
    """
    start = schedule.start_date
    if start >= target:
        return start
    elapsed = (target - start).days
    if schedule.frequency == Frequency.daily:
        return target
    if schedule.frequency == Frequency.weekly:
        weeks = -(-elapsed // 7)
        return start + timedelta(weeks=weeks)

    current = start
    while current < target:
        current = calculate_next_date(schedule.frequency, current)
    return current


def next_firing_date(
    schedule: RecurrenceSchedule,
    occurrences: int,
    today: Optional[date] = None,
) -> Optional[date]:
    today = today or local_today()
    candidate = first_occurrence_on_or_after(schedule, today)
    terminator = schedule.terminator
    if isinstance(terminator, EndDate) and candidate > terminator.on:
        return None
    if isinstance(terminator, OccurrenceCap) and occurrences >= terminator.count:
        return None
    return candidate


def occurrence_dates(schedule: RecurrenceSchedule, until: date) -> Iterator[date]:
    """Scheduled dates from the start up to ``until``, ignoring any occurrence cap."""
    terminator = schedule.terminator
    last = until
    if isinstance(terminator, EndDate):
        last = min(last, terminator.on)
    current = schedule.start_date
    while current <= last:
        yield current
        current = calculate_next_date(schedule.frequency, current)


def is_rule_active(
    schedule: RecurrenceSchedule, occurrences: int, today: Optional[date] = None
) -> bool:
    return next_firing_date(schedule, occurrences, today) is not None


@dataclass(frozen=True)
class RuleFailure:
    rule_id: int
    error: str


@dataclass
class SweepResult:
    as_of: date
    created: list[int] = field(default_factory=list)
    failures: list[RuleFailure] = field(default_factory=list)


class RecurringEngine:
    def __init__(
        self, session_factory: Optional[sessionmaker] = None, *, max_workers: int = 1
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.max_workers = max(1, max_workers)

    def process_due(self, as_of: Optional[date] = None) -> SweepResult:
        as_of = as_of or local_today()
        result = SweepResult(as_of=as_of)
        rule_ids = self._candidate_rule_ids(as_of)
        outcomes = self._map(lambda rule_id: [self._run_rule(rule_id, as_of)], rule_ids)
        self._collect(result, outcomes)
        logger.info(
            f"recurring_sweep: as_of={as_of.isoformat()} rules={len(rule_ids)} "
            f"created={len(result.created)} failures={len(result.failures)}"
        )
        return result

    def backfill(self, as_of: Optional[date] = None) -> SweepResult:
        """Materialize every scheduled date up to ``as_of`` that is still missing.

        Covers firings lost to downtime or to a sweep that died part way. Dates
        already materialized, or deleted by the user, are left alone.
        """
        as_of = as_of or local_today()
        result = SweepResult(as_of=as_of)
        rule_ids = self._backfill_rule_ids(as_of)
        outcomes = self._map(
            lambda rule_id: self._backfill_rule(rule_id, as_of), rule_ids
        )
        self._collect(result, outcomes)
        logger.info(
            f"recurring_backfill: as_of={as_of.isoformat()} rules={len(rule_ids)} "
            f"created={len(result.created)} failures={len(result.failures)}"
        )
        return result

    def catch_up(self, start: date, end: date) -> list[SweepResult]:
        if end < start:
            raise ValueError("Catch-up range end must not precede its start")
        results = []
        current = start
        while current <= end:
            results.append(self.process_due(current))
            current += timedelta(days=1)
        return results

    def _map(
        self,
        work: Callable[[int], list[tuple[int, Optional[int], Optional[str]]]],
        rule_ids: list[int],
    ) -> list[list[tuple[int, Optional[int], Optional[str]]]]:
        if self.max_workers > 1 and len(rule_ids) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                return list(pool.map(work, rule_ids))
        return [work(rule_id) for rule_id in rule_ids]

    @staticmethod
    def _collect(
        result: SweepResult,
        outcomes: list[list[tuple[int, Optional[int], Optional[str]]]],
    ) -> None:
        for rule_outcomes in outcomes:
            for rule_id, txn_id, error in rule_outcomes:
                if error is not None:
                    result.failures.append(RuleFailure(rule_id=rule_id, error=error))
                elif txn_id is not None:
                    result.created.append(txn_id)

    def _candidate_rule_ids(self, as_of: date) -> list[int]:
        with session_scope(self.session_factory) as session:
            stmt = (
                select(RecurringRule.id)
                .where(
                    RecurringRule.auto_apply.is_(True),
                    RecurringRule.start_date <= as_of,
                    or_(
                        RecurringRule.end_date.is_(None),
                        RecurringRule.end_date >= as_of,
                    ),
                )
                .order_by(RecurringRule.id)
            )
            return list(session.scalars(stmt).all())

    def _backfill_rule_ids(self, as_of: date) -> list[int]:
        # Rules that ended recently may still owe dates before their end.
        with session_scope(self.session_factory) as session:
            stmt = (
                select(RecurringRule.id)
                .where(
                    RecurringRule.auto_apply.is_(True),
                    RecurringRule.start_date <= as_of,
                )
                .order_by(RecurringRule.id)
            )
            return list(session.scalars(stmt).all())

    def _missing_dates(self, rule_id: int, as_of: date) -> list[date]:
        with session_scope(self.session_factory) as session:
            rule = session.get(RecurringRule, rule_id)
            if rule is None or not rule.auto_apply:
                return []
            schedule = RecurrenceSchedule.from_rule(rule)
            taken = taken_occurrence_dates(session, rule_id)
            missing = [d for d in occurrence_dates(schedule, as_of) if d not in taken]
            if isinstance(schedule.terminator, OccurrenceCap):
                remaining = schedule.terminator.count - count_transactions_for_rule(
                    session, rule_id
                )
                missing = missing[: max(remaining, 0)]
            return missing

    def _backfill_rule(
        self, rule_id: int, as_of: date
    ) -> list[tuple[int, Optional[int], Optional[str]]]:
        try:
            missing = self._missing_dates(rule_id, as_of)
        except Exception as exc:
            logger.warning(
                f"recurring_backfill: rule_id={rule_id} as_of={as_of.isoformat()} "
                f"failed error={exc!r}"
            )
            return [(rule_id, None, str(exc))]

        outcomes = []
        for occurrence_date in missing:
            outcome = self._run_rule(rule_id, occurrence_date)
            outcomes.append(outcome)
            if outcome[2] is not None:
                break
        return outcomes

    def _run_rule(
        self, rule_id: int, as_of: date
    ) -> tuple[int, Optional[int], Optional[str]]:
        try:
            with session_scope(self.session_factory) as session:
                return rule_id, self._process_rule(session, rule_id, as_of), None
        except DuplicateMaterializationError:
            logger.debug(
                f"recurring_sweep: rule_id={rule_id} as_of={as_of.isoformat()} "
                "already materialized"
            )
            return rule_id, None, None
        except Exception as exc:
            logger.warning(
                f"recurring_sweep: rule_id={rule_id} as_of={as_of.isoformat()} "
                f"failed error={exc!r}"
            )
            return rule_id, None, str(exc)

    def _process_rule(
        self, session: Session, rule_id: int, as_of: date
    ) -> Optional[int]:
        rule = session.get(RecurringRule, rule_id)
        if rule is None or not rule.auto_apply:
            return None
        if not category_exists(session, rule.category_id):
            raise CategoryReferenceError(rule.category_id)

        schedule = RecurrenceSchedule.from_rule(rule)
        occurrences = count_transactions_for_rule(session, rule.id)
        if next_firing_date(schedule, occurrences, as_of) != as_of:
            return None
        if find_transaction(session, rule.id, as_of) is not None:
            return None
        if is_skipped(session, rule.id, as_of):
            return None

        txn = create_transaction(session, rule, as_of)
        if txn.type == TransactionType.expense:
            BudgetLedger(session).apply_impact(
                txn.user_id, txn.category_id, txn.amount_cents, txn.date, txn.id
            )
        return txn.id
