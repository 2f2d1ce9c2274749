from datetime import date
from typing import Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import DuplicateMaterializationError
from models import (
    Budget,
    BudgetCategory,
    Category,
    RecurringRule,
    SkippedOccurrence,
    Transaction,
)


def category_exists(session: Session, category_id: int) -> bool:
    stmt = select(Category.id).where(
        Category.id == category_id, Category.archived_at.is_(None)
    )
    return session.execute(stmt).scalar_one_or_none() is not None


def count_transactions_for_rule(session: Session, rule_id: int) -> int:
    stmt = select(func.count(Transaction.id)).where(
        Transaction.recurring_rule_id == rule_id
    )
    return int(session.execute(stmt).scalar_one() or 0)


def find_transaction(
    session: Session, rule_id: int, occurrence_date: date
) -> Optional[int]:
    stmt = (
        select(Transaction.id)
        .where(
            Transaction.recurring_rule_id == rule_id,
            Transaction.occurrence_date == occurrence_date,
        )
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def is_skipped(session: Session, rule_id: int, occurrence_date: date) -> bool:
    stmt = select(SkippedOccurrence.id).where(
        SkippedOccurrence.recurring_rule_id == rule_id,
        SkippedOccurrence.occurrence_date == occurrence_date,
    )
    return session.execute(stmt).scalar_one_or_none() is not None


def skip_occurrence(session: Session, rule_id: int, occurrence_date: date) -> None:
    if is_skipped(session, rule_id, occurrence_date):
        return
    session.add(
        SkippedOccurrence(recurring_rule_id=rule_id, occurrence_date=occurrence_date)
    )
    session.flush()


def delete_skipped_occurrences(session: Session, rule_id: int) -> None:
    session.execute(
        delete(SkippedOccurrence).where(SkippedOccurrence.recurring_rule_id == rule_id)
    )


def taken_occurrence_dates(session: Session, rule_id: int) -> set[date]:
    """Dates a rule must not materialize again: created or deliberately removed."""
    created = session.scalars(
        select(Transaction.occurrence_date).where(
            Transaction.recurring_rule_id == rule_id,
            Transaction.occurrence_date.is_not(None),
        )
    ).all()
    skipped = session.scalars(
        select(SkippedOccurrence.occurrence_date).where(
            SkippedOccurrence.recurring_rule_id == rule_id
        )
    ).all()
    return set(created) | set(skipped)


def create_transaction(
    session: Session, rule: RecurringRule, occurrence_date: date
) -> Transaction:
    # A failed flush expires the rule, so its id cannot be read afterwards.
    rule_id = rule.id
    txn = Transaction(
        user_id=rule.user_id,
        date=occurrence_date,
        type=rule.type,
        amount_cents=rule.amount_cents,
        category_id=rule.category_id,
        description=rule.description,
        recurring_rule_id=rule_id,
        occurrence_date=occurrence_date,
    )
    session.add(txn)
    try:
        session.flush()
    except IntegrityError as exc:
        if not _is_unique_violation(exc):
            raise
        raise DuplicateMaterializationError(rule_id, occurrence_date) from exc
    return txn


def _is_unique_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig).lower()
    return "unique" in message or "duplicate key" in message


def delete_transaction(session: Session, transaction_id: int) -> None:
    session.execute(delete(Transaction).where(Transaction.id == transaction_id))


def increment_spent(
    session: Session, budget_id: int, category_id: int, amount_cents: int
) -> None:
    session.execute(
        update(BudgetCategory)
        .where(
            BudgetCategory.budget_id == budget_id,
            BudgetCategory.category_id == category_id,
        )
        .values(spent_cents=BudgetCategory.spent_cents + amount_cents),
        execution_options={"synchronize_session": "fetch"},
    )
    session.execute(
        update(Budget)
        .where(Budget.id == budget_id)
        .values(total_spent_cents=Budget.total_spent_cents + amount_cents),
        execution_options={"synchronize_session": "fetch"},
    )


def _floored(column, amount_cents: int):
    return case((column < amount_cents, 0), else_=column - amount_cents)


def decrement_spent(
    session: Session, budget_id: int, category_id: int, amount_cents: int
) -> None:
    session.execute(
        update(BudgetCategory)
        .where(
            BudgetCategory.budget_id == budget_id,
            BudgetCategory.category_id == category_id,
        )
        .values(spent_cents=_floored(BudgetCategory.spent_cents, amount_cents)),
        execution_options={"synchronize_session": "fetch"},
    )
    session.execute(
        update(Budget)
        .where(Budget.id == budget_id)
        .values(total_spent_cents=_floored(Budget.total_spent_cents, amount_cents)),
        execution_options={"synchronize_session": "fetch"},
    )
