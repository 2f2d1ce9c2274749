import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import AllocationNotFound, BudgetNotFound, DuplicateImpactError
from models import Budget, BudgetCategory, BudgetImpact, BudgetStatus
from store import decrement_spent, increment_spent


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppliedImpact:
    budget_id: int
    budget_name: str
    category_id: int
    amount_cents: int


class BudgetLedger:
    """Keeps budget and allocation ``spent`` totals in step with impact rows.

    Every method works inside the caller's session and never commits: the
    impact rows and the aggregate updates land in the caller's database
    transaction, so a failure rolls back both together.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def apply_impact(
        self,
        user_id: int,
        category_id: int,
        amount_cents: int,
        on: date,
        transaction_id: int,
    ) -> list[AppliedImpact]:
        if amount_cents <= 0:
            raise ValueError("Impact amount must be positive")
        if self._has_impacts(transaction_id):
            raise DuplicateImpactError(transaction_id)

        stmt = (
            select(Budget.id, Budget.name)
            .join(BudgetCategory, BudgetCategory.budget_id == Budget.id)
            .where(
                Budget.user_id == user_id,
                Budget.status == BudgetStatus.active,
                Budget.start_date <= on,
                Budget.end_date >= on,
                BudgetCategory.category_id == category_id,
            )
            .order_by(Budget.id)
        )
        matches = self.session.execute(stmt).all()
        if not matches:
            return []

        for row in matches:
            self.session.add(
                BudgetImpact(
                    transaction_id=transaction_id,
                    budget_id=row.id,
                    category_id=category_id,
                    amount_cents=amount_cents,
                )
            )
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise DuplicateImpactError(transaction_id) from exc

        applied: list[AppliedImpact] = []
        for row in matches:
            increment_spent(self.session, row.id, category_id, amount_cents)
            applied.append(
                AppliedImpact(
                    budget_id=row.id,
                    budget_name=row.name,
                    category_id=category_id,
                    amount_cents=amount_cents,
                )
            )
        logger.info(
            f"ledger_apply: transaction_id={transaction_id} "
            f"budgets={[a.budget_id for a in applied]} amount_cents={amount_cents}"
        )
        return applied

    def _has_impacts(self, transaction_id: int) -> bool:
        count = self.session.execute(
            select(func.count(BudgetImpact.id)).where(
                BudgetImpact.transaction_id == transaction_id
            )
        ).scalar_one()
        return count > 0

    def reverse_impact(self, transaction_id: int) -> list[AppliedImpact]:
        stmt = (
            select(BudgetImpact, Budget.name)
            .join(Budget, Budget.id == BudgetImpact.budget_id)
            .where(BudgetImpact.transaction_id == transaction_id)
            .order_by(BudgetImpact.id)
        )
        rows = self.session.execute(stmt).all()
        # No impacts is valid: the transaction never matched a budget.
        if not rows:
            return []

        reversed_impacts: list[AppliedImpact] = []
        for impact, budget_name in rows:
            decrement_spent(
                self.session, impact.budget_id, impact.category_id, impact.amount_cents
            )
            reversed_impacts.append(
                AppliedImpact(
                    budget_id=impact.budget_id,
                    budget_name=budget_name,
                    category_id=impact.category_id,
                    amount_cents=impact.amount_cents,
                )
            )
        self.session.execute(
            delete(BudgetImpact).where(BudgetImpact.transaction_id == transaction_id),
            execution_options={"synchronize_session": "fetch"},
        )
        self.session.flush()
        logger.info(
            f"ledger_reverse: transaction_id={transaction_id} "
            f"budgets={[r.budget_id for r in reversed_impacts]}"
        )
        return reversed_impacts

    def impacts_for_transaction(self, transaction_id: int) -> list[BudgetImpact]:
        stmt = (
            select(BudgetImpact)
            .where(BudgetImpact.transaction_id == transaction_id)
            .order_by(BudgetImpact.id)
        )
        return list(self.session.scalars(stmt).all())

    def recompute_budget(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget:
            raise BudgetNotFound(f"Budget {budget_id} not found")

        per_category = dict(
            self.session.execute(
                select(
                    BudgetImpact.category_id,
                    func.coalesce(func.sum(BudgetImpact.amount_cents), 0),
                )
                .where(BudgetImpact.budget_id == budget_id)
                .group_by(BudgetImpact.category_id)
            ).all()
        )
        before = budget.total_spent_cents
        budget.total_spent_cents = int(sum(per_category.values()))
        for allocation in budget.allocations:
            allocation.spent_cents = int(per_category.get(allocation.category_id, 0))
        self.session.flush()
        if before != budget.total_spent_cents:
            logger.warning(
                f"ledger_recompute: budget_id={budget_id} drift_cents="
                f"{before - budget.total_spent_cents}"
            )
        return budget

    def recompute_all(self, user_id: int) -> int:
        budget_ids = self.session.scalars(
            select(Budget.id).where(Budget.user_id == user_id).order_by(Budget.id)
        ).all()
        for budget_id in budget_ids:
            self.recompute_budget(budget_id)
        return len(budget_ids)

    def is_over_limit(self, budget_id: int, category_id: int) -> bool:
        allocation = self.session.scalar(
            select(BudgetCategory).where(
                BudgetCategory.budget_id == budget_id,
                BudgetCategory.category_id == category_id,
            )
        )
        if allocation is None:
            raise AllocationNotFound(
                f"Budget {budget_id} has no allocation for category {category_id}"
            )
        return allocation.spent_cents > allocation.allocated_cents
