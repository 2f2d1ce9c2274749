from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session, joinedload

from errors import BudgetNotFound, RuleValidationError, TransactionNotFound
from ledger import AppliedImpact, BudgetLedger
from models import (
    Budget,
    BudgetCategory,
    BudgetImpact,
    BudgetStatus,
    Category,
    Frequency,
    RecurringRule,
    Transaction,
    TransactionType,
)
from periods import budget_period_end, local_today, upcoming_window
from recurrence import (
    RecurrenceSchedule,
    is_rule_active,
    make_terminator,
    next_firing_date,
)
from schemas import BudgetIn, CategoryIn, RecurringRuleIn, TransactionIn
from store import (
    count_transactions_for_rule,
    delete_skipped_occurrences,
    delete_transaction,
    find_transaction,
    is_skipped,
    skip_occurrence,
)


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


@contextmanager
def _atomic(session: Session) -> Iterator[None]:
    try:
        yield
        session.commit()
    except Exception:
        session.rollback()
        raise


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = select(Category).where(Category.user_id == self.user_id)
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        stmt = stmt.order_by(Category.type, Category.name)
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int, *, include_archived: bool = False) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        if category.archived_at is not None and not include_archived:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                Category.name == data.name,
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(user_id=self.user_id, name=data.name, type=data.type)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def archive(self, category_id: int) -> None:
        category = self.get(category_id)
        category.archived_at = datetime.utcnow()
        self.session.commit()

    def restore(self, category_id: int) -> None:
        category = self.get(category_id, include_archived=True)
        category.archived_at = None
        self.session.commit()


class TransactionService:
    """Manual transaction writes, each routed through the budget ledger.

    An edit always reverses the transaction's existing impacts before the new
    values are written and re-applied; patching aggregates in place is never
    done.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.ledger = BudgetLedger(session)

    def _checked_category(self, data: TransactionIn) -> Category:
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        if category.type != data.type:
            raise ValueError("Category type mismatch")
        return category

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise TransactionNotFound("Transaction not found")
        return txn

    def list_between(self, start: date, end: date) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(start, end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def impacts(self, transaction_id: int) -> list[BudgetImpact]:
        self.get(transaction_id)
        return self.ledger.impacts_for_transaction(transaction_id)

    def create(self, data: TransactionIn) -> tuple[Transaction, list[AppliedImpact]]:
        self._checked_category(data)
        applied: list[AppliedImpact] = []
        with _atomic(self.session):
            txn = Transaction(
                user_id=self.user_id,
                date=data.date,
                type=data.type,
                amount_cents=data.amount_cents,
                category_id=data.category_id,
                description=data.description,
            )
            self.session.add(txn)
            self.session.flush()
            if txn.type == TransactionType.expense:
                applied = self.ledger.apply_impact(
                    self.user_id, txn.category_id, txn.amount_cents, txn.date, txn.id
                )
        self.session.refresh(txn)
        return txn, applied

    def update(
        self, transaction_id: int, data: TransactionIn
    ) -> tuple[Transaction, list[AppliedImpact]]:
        txn = self.get(transaction_id)
        self._checked_category(data)
        applied: list[AppliedImpact] = []
        with _atomic(self.session):
            self.ledger.reverse_impact(txn.id)
            txn.date = data.date
            txn.type = data.type
            txn.amount_cents = data.amount_cents
            txn.category_id = data.category_id
            txn.description = data.description
            self.session.flush()
            if txn.type == TransactionType.expense:
                applied = self.ledger.apply_impact(
                    self.user_id, txn.category_id, txn.amount_cents, txn.date, txn.id
                )
        self.session.refresh(txn)
        return txn, applied

    def delete(self, transaction_id: int) -> list[AppliedImpact]:
        txn = self.get(transaction_id)
        rule_id, occurrence_date = txn.recurring_rule_id, txn.occurrence_date
        with _atomic(self.session):
            reversed_impacts = self.ledger.reverse_impact(txn.id)
            if rule_id is not None and occurrence_date is not None:
                skip_occurrence(self.session, rule_id, occurrence_date)
            self.session.expunge(txn)
            delete_transaction(self.session, transaction_id)
        return reversed_impacts


@dataclass(frozen=True)
class UpcomingOccurrence:
    rule_id: int
    description: Optional[str]
    category_name: str
    type: TransactionType
    amount_cents: int
    due_date: date
    auto_apply: bool


@dataclass(frozen=True)
class BudgetTransaction:
    transaction_id: int
    transaction_date: date
    category_id: int
    category_name: str
    description: Optional[str]
    amount_cents: int
    impact_cents: int


_MONTHLY_FACTORS = {
    Frequency.daily: 30.0,
    Frequency.weekly: 4.33,
    Frequency.monthly: 1.0,
    Frequency.yearly: 1 / 12,
}


class RecurringRuleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, rule_id: int) -> RecurringRule:
        rule = self.session.get(RecurringRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise ValueError("Rule not found")
        return rule

    def list(self) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .options(joinedload(RecurringRule.category))
            .where(RecurringRule.user_id == self.user_id)
            .order_by(RecurringRule.start_date, RecurringRule.id)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: RecurringRuleIn) -> RecurringRule:
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        if category.type != data.type:
            raise ValueError("Category type mismatch")
        if data.amount_cents <= 0:
            raise RuleValidationError("Amount must be positive")
        make_terminator(data.start_date, data.end_date, data.occurrence_cap)
        rule = RecurringRule(
            user_id=self.user_id,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            description=data.description,
            frequency=data.frequency,
            start_date=data.start_date,
            end_date=data.end_date,
            occurrence_cap=data.occurrence_cap,
            auto_apply=data.auto_apply,
        )
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def toggle_auto_apply(self, rule_id: int, auto_apply: bool) -> None:
        rule = self.get(rule_id)
        rule.auto_apply = auto_apply
        self.session.commit()

    def delete(self, rule_id: int, *, delete_transactions: bool = False) -> None:
        rule = self.get(rule_id)
        txn_ids = self.session.scalars(
            select(Transaction.id).where(Transaction.recurring_rule_id == rule.id)
        ).all()
        with _atomic(self.session):
            if delete_transactions:
                ledger = BudgetLedger(self.session)
                for txn_id in txn_ids:
                    ledger.reverse_impact(txn_id)
                    delete_transaction(self.session, txn_id)
            else:
                self.session.execute(
                    update(Transaction)
                    .where(Transaction.recurring_rule_id == rule.id)
                    .values(recurring_rule_id=None),
                    execution_options={"synchronize_session": False},
                )
            delete_skipped_occurrences(self.session, rule.id)
            self.session.delete(rule)
        logger.info(
            f"recurring_rule_deleted: rule_id={rule_id} transactions={len(txn_ids)} "
            f"deleted_transactions={delete_transactions}"
        )

    def transactions(self, rule_id: int) -> list[Transaction]:
        rule = self.get(rule_id)
        stmt = (
            select(Transaction)
            .where(Transaction.recurring_rule_id == rule.id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def next_firing(self, rule_id: int, today: Optional[date] = None) -> Optional[date]:
        rule = self.get(rule_id)
        return self._next_unmaterialized(rule, today or local_today())

    def _next_unmaterialized(self, rule: RecurringRule, today: date) -> Optional[date]:
        schedule = RecurrenceSchedule.from_rule(rule)
        occurrences = count_transactions_for_rule(self.session, rule.id)
        due = next_firing_date(schedule, occurrences, today)
        if due == today and (
            find_transaction(self.session, rule.id, today) is not None
            or is_skipped(self.session, rule.id, today)
        ):
            due = next_firing_date(schedule, occurrences, today + timedelta(days=1))
        return due

    def upcoming(
        self, days: int = 7, today: Optional[date] = None
    ) -> list[UpcomingOccurrence]:
        today = today or local_today()
        window = upcoming_window(today, days)
        items: list[UpcomingOccurrence] = []
        for rule in self.list():
            due = self._next_unmaterialized(rule, today)
            if due is None or not window.contains(due):
                continue
            items.append(
                UpcomingOccurrence(
                    rule_id=rule.id,
                    description=rule.description,
                    category_name=rule.category.name if rule.category else "Unknown",
                    type=rule.type,
                    amount_cents=rule.amount_cents,
                    due_date=due,
                    auto_apply=rule.auto_apply,
                )
            )
        items.sort(key=lambda item: (item.due_date, item.rule_id))
        return items

    def summary(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        active = 0
        inactive = 0
        monthly_income = 0
        monthly_expense = 0
        for rule in self.list():
            schedule = RecurrenceSchedule.from_rule(rule)
            occurrences = count_transactions_for_rule(self.session, rule.id)
            if not is_rule_active(schedule, occurrences, today):
                inactive += 1
                continue
            active += 1
            monthly = int(round(rule.amount_cents * _MONTHLY_FACTORS[rule.frequency]))
            if rule.type == TransactionType.income:
                monthly_income += monthly
            else:
                monthly_expense += monthly
        return {
            "total_active": active,
            "total_inactive": inactive,
            "monthly_income_cents": monthly_income,
            "monthly_expense_cents": monthly_expense,
            "net_monthly_cents": monthly_income - monthly_expense,
            "upcoming": self.upcoming(7, today),
        }


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _expense_category(self, category_id: int) -> Category:
        category = CategoryService(self.session, self.user_id).get(category_id)
        if category.type != TransactionType.expense:
            raise ValueError("Budgets can only be set for expense categories")
        return category

    def get(self, budget_id: int) -> Budget:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.allocations).joinedload(BudgetCategory.category))
            .where(Budget.id == budget_id, Budget.user_id == self.user_id)
        )
        budget = self.session.scalars(stmt).unique().one_or_none()
        if not budget:
            raise BudgetNotFound("Budget not found")
        return budget

    def list(self, status: Optional[BudgetStatus] = None) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        if status:
            stmt = stmt.where(Budget.status == status)
        return list(self.session.scalars(stmt).all())

    def create(self, data: BudgetIn) -> Budget:
        for allocation in data.allocations:
            self._expense_category(allocation.category_id)
        budget = Budget(
            user_id=self.user_id,
            name=data.name,
            budget_type=data.budget_type,
            start_date=data.start_date,
            end_date=budget_period_end(data.start_date, data.budget_type),
            total_allocated_cents=sum(a.allocated_cents for a in data.allocations),
            total_spent_cents=0,
            status=BudgetStatus.active,
            description=data.description,
            allocations=[
                BudgetCategory(
                    category_id=a.category_id,
                    allocated_cents=a.allocated_cents,
                    spent_cents=0,
                )
                for a in data.allocations
            ],
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def set_allocation(
        self, budget_id: int, category_id: int, allocated_cents: int
    ) -> BudgetCategory:
        if allocated_cents < 0:
            raise ValueError("Allocated amount cannot be negative")
        budget = self.get(budget_id)
        self._expense_category(category_id)
        allocation = next(
            (a for a in budget.allocations if a.category_id == category_id), None
        )
        if allocation is None:
            allocation = BudgetCategory(
                category_id=category_id, allocated_cents=allocated_cents, spent_cents=0
            )
            budget.allocations.append(allocation)
        else:
            allocation.allocated_cents = allocated_cents
        budget.total_allocated_cents = sum(a.allocated_cents for a in budget.allocations)
        self.session.commit()
        self.session.refresh(allocation)
        return allocation

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        """Replace a budget's period and allocations.

        Impacts for removed categories, or for transactions now outside the
        period, are dropped and the totals recomputed from what is left. New
        categories and the widened part of a period start empty.
        """
        budget = self.get(budget_id)
        for allocation in data.allocations:
            self._expense_category(allocation.category_id)
        wanted = {a.category_id: a.allocated_cents for a in data.allocations}

        with _atomic(self.session):
            budget.name = data.name
            budget.budget_type = data.budget_type
            budget.start_date = data.start_date
            budget.end_date = budget_period_end(data.start_date, data.budget_type)
            budget.description = data.description

            for allocation in list(budget.allocations):
                if allocation.category_id not in wanted:
                    budget.allocations.remove(allocation)
            existing = {a.category_id: a for a in budget.allocations}
            for category_id, allocated_cents in wanted.items():
                if category_id in existing:
                    existing[category_id].allocated_cents = allocated_cents
                else:
                    budget.allocations.append(
                        BudgetCategory(
                            category_id=category_id,
                            allocated_cents=allocated_cents,
                            spent_cents=0,
                        )
                    )
            budget.total_allocated_cents = sum(wanted.values())
            self.session.flush()

            out_of_period = select(Transaction.id).where(
                or_(
                    Transaction.date < budget.start_date,
                    Transaction.date > budget.end_date,
                )
            )
            dropped = self.session.execute(
                delete(BudgetImpact).where(
                    BudgetImpact.budget_id == budget.id,
                    or_(
                        BudgetImpact.category_id.not_in(list(wanted)),
                        BudgetImpact.transaction_id.in_(out_of_period),
                    ),
                ),
                execution_options={"synchronize_session": "fetch"},
            ).rowcount
            BudgetLedger(self.session).recompute_budget(budget.id)
        logger.info(
            f"budget_updated: budget_id={budget_id} allocations={len(wanted)} "
            f"impacts_dropped={dropped or 0}"
        )
        return self.get(budget_id)

    def transactions(self, budget_id: int) -> list[BudgetTransaction]:
        budget = self.get(budget_id)
        stmt = (
            select(Transaction, BudgetImpact.amount_cents)
            .join(BudgetImpact, BudgetImpact.transaction_id == Transaction.id)
            .options(joinedload(Transaction.category))
            .where(BudgetImpact.budget_id == budget.id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return [
            BudgetTransaction(
                transaction_id=txn.id,
                transaction_date=txn.date,
                category_id=txn.category_id,
                category_name=txn.category.name if txn.category else "Unknown",
                description=txn.description,
                amount_cents=txn.amount_cents,
                impact_cents=impact_cents,
            )
            for txn, impact_cents in self.session.execute(stmt).all()
        ]

    def update_status(self, budget_id: int, status: BudgetStatus) -> Budget:
        budget = self.get(budget_id)
        budget.status = status
        self.session.commit()
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def details(self, budget_id: int) -> dict[str, object]:
        budget = self.get(budget_id)

        def progress(spent: int, allocated: int) -> float:
            if allocated <= 0:
                return 0.0
            return min(spent / allocated * 100, 100.0)

        return {
            "id": budget.id,
            "name": budget.name,
            "budget_type": budget.budget_type,
            "status": budget.status,
            "start_date": budget.start_date,
            "end_date": budget.end_date,
            "total_allocated_cents": budget.total_allocated_cents,
            "total_spent_cents": budget.total_spent_cents,
            "remaining_cents": budget.total_allocated_cents - budget.total_spent_cents,
            "progress_percent": progress(
                budget.total_spent_cents, budget.total_allocated_cents
            ),
            "allocations": [
                {
                    "category_id": a.category_id,
                    "category_name": a.category.name if a.category else "Unknown",
                    "allocated_cents": a.allocated_cents,
                    "spent_cents": a.spent_cents,
                    "remaining_cents": a.allocated_cents - a.spent_cents,
                    "progress_percent": progress(a.spent_cents, a.allocated_cents),
                    "over_limit": a.spent_cents > a.allocated_cents,
                }
                for a in budget.allocations
            ],
        }


def complete_expired_budgets(session: Session, today: Optional[date] = None) -> int:
    today = today or local_today()
    result = session.execute(
        update(Budget)
        .where(Budget.status == BudgetStatus.active, Budget.end_date < today)
        .values(status=BudgetStatus.completed),
        execution_options={"synchronize_session": False},
    )
    session.commit()
    return result.rowcount or 0
