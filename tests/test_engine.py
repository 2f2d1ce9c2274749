from datetime import date, datetime

from sqlalchemy import func, select

from database import Base, build_engine, build_session_factory
from errors import CategoryReferenceError, DuplicateMaterializationError
from ledger import BudgetLedger
from models import (
    Budget,
    BudgetCategory,
    BudgetImpact,
    BudgetType,
    Category,
    Frequency,
    RecurringRule,
    Transaction,
    TransactionType,
)
from recurrence import RecurrenceSchedule, RecurringEngine, next_firing_date
from schemas import BudgetAllocationIn, BudgetIn
from services import BudgetService, TransactionService


def make_factory():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return build_session_factory(engine)


def seed_category(factory, name="Food", type_=TransactionType.expense) -> int:
    with factory() as session:
        category = Category(user_id=1, name=name, type=type_)
        session.add(category)
        session.commit()
        return category.id


def seed_rule(factory, category_id: int, **overrides) -> int:
    values = dict(
        user_id=1,
        type=TransactionType.expense,
        amount_cents=5_000,
        category_id=category_id,
        description="Groceries box",
        frequency=Frequency.weekly,
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
        occurrence_cap=None,
        auto_apply=True,
    )
    values.update(overrides)
    with factory() as session:
        rule = RecurringRule(**values)
        session.add(rule)
        session.commit()
        return rule.id


def seed_budget(factory, category_id: int, allocated_cents: int = 30_000) -> int:
    with factory() as session:
        budget = BudgetService(session).create(
            BudgetIn(
                name="January",
                budget_type=BudgetType.monthly,
                start_date=date(2024, 1, 1),
                allocations=[
                    BudgetAllocationIn(
                        category_id=category_id, allocated_cents=allocated_cents
                    )
                ],
            )
        )
        return budget.id


def count_transactions(factory, rule_id: int) -> int:
    with factory() as session:
        return session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.recurring_rule_id == rule_id
            )
        ).scalar_one()


def test_end_to_end_weekly_rule_against_monthly_budget():
    factory = make_factory()
    food = seed_category(factory)
    budget_id = seed_budget(factory, food)
    rule_id = seed_rule(factory, food)

    engine = RecurringEngine(factory)
    created = []
    for day in (1, 8, 15, 22, 29):
        result = engine.process_due(date(2024, 1, day))
        assert result.failures == []
        assert len(result.created) == 1
        created.extend(result.created)

    assert engine.process_due(date(2024, 2, 5)).created == []

    with factory() as session:
        budget = session.get(Budget, budget_id)
        allocation = session.scalar(
            select(BudgetCategory).where(BudgetCategory.budget_id == budget_id)
        )
        impacts = session.scalars(select(BudgetImpact)).all()
        assert len(created) == 5
        assert len(impacts) == 5
        assert budget.total_spent_cents == 25_000
        assert allocation.spent_cents == 25_000
        assert BudgetLedger(session).is_over_limit(budget_id, food) is False

        rule = session.get(RecurringRule, rule_id)
        schedule = RecurrenceSchedule.from_rule(rule)
        assert next_firing_date(schedule, 5, date(2024, 2, 5)) is None


def test_sweep_is_idempotent_within_a_day():
    factory = make_factory()
    food = seed_category(factory)
    budget_id = seed_budget(factory, food)
    rule_id = seed_rule(factory, food)

    engine = RecurringEngine(factory)
    first = engine.process_due(date(2024, 1, 8))
    second = engine.process_due(date(2024, 1, 8))

    assert len(first.created) == 1
    assert second.created == []
    assert second.failures == []
    assert count_transactions(factory, rule_id) == 1
    with factory() as session:
        assert session.get(Budget, budget_id).total_spent_cents == 5_000


def test_days_between_firings_create_nothing():
    factory = make_factory()
    food = seed_category(factory)
    rule_id = seed_rule(factory, food)

    engine = RecurringEngine(factory)
    for day in range(2, 8):
        assert engine.process_due(date(2024, 1, day)).created == []
    assert count_transactions(factory, rule_id) == 0


def test_occurrence_cap_stops_materialization():
    factory = make_factory()
    food = seed_category(factory)
    rule_id = seed_rule(
        factory,
        food,
        frequency=Frequency.daily,
        end_date=None,
        occurrence_cap=3,
    )

    results = RecurringEngine(factory).catch_up(date(2024, 1, 1), date(2024, 1, 10))

    created_days = [r.as_of for r in results if r.created]
    assert created_days == [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)]
    assert count_transactions(factory, rule_id) == 3


def test_catch_up_backfills_missed_days():
    factory = make_factory()
    food = seed_category(factory)
    seed_budget(factory, food)
    rule_id = seed_rule(factory, food)

    engine = RecurringEngine(factory)
    results = engine.catch_up(date(2024, 1, 1), date(2024, 2, 10))
    assert sum(len(r.created) for r in results) == 5
    assert count_transactions(factory, rule_id) == 5

    again = engine.catch_up(date(2024, 1, 1), date(2024, 2, 10))
    assert sum(len(r.created) for r in again) == 0


def test_rules_without_auto_apply_are_left_alone():
    factory = make_factory()
    food = seed_category(factory)
    rule_id = seed_rule(factory, food, auto_apply=False)

    result = RecurringEngine(factory).process_due(date(2024, 1, 1))

    assert result.created == []
    assert count_transactions(factory, rule_id) == 0


def test_income_rule_materializes_without_budget_impact():
    factory = make_factory()
    food = seed_category(factory)
    salary = seed_category(factory, "Salary", TransactionType.income)
    budget_id = seed_budget(factory, food)
    rule_id = seed_rule(
        factory,
        salary,
        type=TransactionType.income,
        frequency=Frequency.monthly,
        end_date=None,
        occurrence_cap=12,
    )

    result = RecurringEngine(factory).process_due(date(2024, 1, 1))

    assert len(result.created) == 1
    assert count_transactions(factory, rule_id) == 1
    with factory() as session:
        assert session.scalars(select(BudgetImpact)).all() == []
        assert session.get(Budget, budget_id).total_spent_cents == 0


def test_archived_category_fails_only_that_rule():
    factory = make_factory()
    food = seed_category(factory)
    rent = seed_category(factory, "Rent")
    broken_rule = seed_rule(factory, rent)
    healthy_rule = seed_rule(factory, food)
    with factory() as session:
        session.get(Category, rent).archived_at = datetime(2023, 12, 31)
        session.commit()

    result = RecurringEngine(factory).process_due(date(2024, 1, 1))

    assert len(result.created) == 1
    assert [f.rule_id for f in result.failures] == [broken_rule]
    assert "no longer exists" in result.failures[0].error
    assert count_transactions(factory, healthy_rule) == 1
    assert count_transactions(factory, broken_rule) == 0


def test_lost_materialization_race_is_skipped_silently(monkeypatch):
    factory = make_factory()
    food = seed_category(factory)
    budget_id = seed_budget(factory, food)
    rule_id = seed_rule(factory, food)

    engine = RecurringEngine(factory)
    assert len(engine.process_due(date(2024, 1, 1)).created) == 1

    # Simulate a concurrent sweep that passed the existence check first.
    monkeypatch.setattr("recurrence.find_transaction", lambda *args: None)
    result = engine.process_due(date(2024, 1, 1))

    assert result.created == []
    assert result.failures == []
    assert count_transactions(factory, rule_id) == 1
    with factory() as session:
        assert session.get(Budget, budget_id).total_spent_cents == 5_000
        assert len(session.scalars(select(BudgetImpact)).all()) == 1


def test_failed_impact_rolls_back_the_materialized_transaction(monkeypatch):
    factory = make_factory()
    food = seed_category(factory)
    seed_budget(factory, food)
    rule_id = seed_rule(factory, food)

    def broken_apply(self, *args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(BudgetLedger, "apply_impact", broken_apply)
    result = RecurringEngine(factory).process_due(date(2024, 1, 1))

    assert result.created == []
    assert result.failures[0].rule_id == rule_id
    assert result.failures[0].error == "ledger unavailable"
    assert count_transactions(factory, rule_id) == 0


def test_parallel_sweep_collects_outcomes_per_rule(monkeypatch):
    factory = make_factory()
    engine = RecurringEngine(factory, max_workers=3)

    def fake_process(session, rule_id, as_of):
        if rule_id == 2:
            raise CategoryReferenceError(9)
        if rule_id == 3:
            raise DuplicateMaterializationError(rule_id, as_of)
        return 100 + rule_id

    monkeypatch.setattr(engine, "_candidate_rule_ids", lambda as_of: [1, 2, 3, 4])
    monkeypatch.setattr(engine, "_process_rule", fake_process)

    result = engine.process_due(date(2024, 1, 1))

    assert sorted(result.created) == [101, 104]
    assert [f.rule_id for f in result.failures] == [2]


def test_backfill_recovers_firings_missed_during_downtime():
    factory = make_factory()
    food = seed_category(factory)
    budget_id = seed_budget(factory, food)
    rule_id = seed_rule(factory, food)

    engine = RecurringEngine(factory)
    result = engine.backfill(date(2024, 1, 22))

    assert result.failures == []
    assert len(result.created) == 4
    with factory() as session:
        dates = session.scalars(
            select(Transaction.occurrence_date)
            .where(Transaction.recurring_rule_id == rule_id)
            .order_by(Transaction.occurrence_date)
        ).all()
        assert dates == [
            date(2024, 1, 1),
            date(2024, 1, 8),
            date(2024, 1, 15),
            date(2024, 1, 22),
        ]
        assert session.get(Budget, budget_id).total_spent_cents == 20_000

    assert engine.backfill(date(2024, 1, 22)).created == []


def test_backfill_finishes_rules_that_ended_during_downtime():
    factory = make_factory()
    food = seed_category(factory)
    rule_id = seed_rule(factory, food)

    result = RecurringEngine(factory).backfill(date(2024, 3, 1))

    assert len(result.created) == 5
    assert count_transactions(factory, rule_id) == 5


def test_backfill_respects_the_occurrence_cap():
    factory = make_factory()
    food = seed_category(factory)
    rule_id = seed_rule(
        factory, food, frequency=Frequency.daily, end_date=None, occurrence_cap=3
    )

    result = RecurringEngine(factory).backfill(date(2024, 1, 10))

    assert len(result.created) == 3
    assert count_transactions(factory, rule_id) == 3


def test_backfill_stops_a_rule_at_its_first_failure():
    factory = make_factory()
    rent = seed_category(factory, "Rent")
    rule_id = seed_rule(factory, rent)
    with factory() as session:
        session.get(Category, rent).archived_at = datetime(2023, 12, 31)
        session.commit()

    result = RecurringEngine(factory).backfill(date(2024, 1, 22))

    assert result.created == []
    assert [f.rule_id for f in result.failures] == [rule_id]


def test_deleted_generated_transaction_is_not_recreated():
    factory = make_factory()
    food = seed_category(factory)
    budget_id = seed_budget(factory, food)
    rule_id = seed_rule(factory, food)

    engine = RecurringEngine(factory)
    (txn_id,) = engine.process_due(date(2024, 1, 8)).created
    with factory() as session:
        TransactionService(session).delete(txn_id)

    assert engine.process_due(date(2024, 1, 8)).created == []
    backfilled = engine.backfill(date(2024, 1, 15))

    assert len(backfilled.created) == 2
    with factory() as session:
        dates = session.scalars(
            select(Transaction.occurrence_date)
            .where(Transaction.recurring_rule_id == rule_id)
            .order_by(Transaction.occurrence_date)
        ).all()
        assert dates == [date(2024, 1, 1), date(2024, 1, 15)]
        assert session.get(Budget, budget_id).total_spent_cents == 10_000


def test_parallel_sweep_against_a_file_database(tmp_path):
    engine_ = build_engine(f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine_)
    factory = build_session_factory(engine_)
    categories = [seed_category(factory, f"Category {n}") for n in range(4)]
    with factory() as session:
        budget = BudgetService(session).create(
            BudgetIn(
                name="January",
                budget_type=BudgetType.monthly,
                start_date=date(2024, 1, 1),
                allocations=[
                    BudgetAllocationIn(category_id=cid, allocated_cents=100_000)
                    for cid in categories
                ],
            )
        )
        budget_id = budget.id
    rule_ids = [seed_rule(factory, cid) for cid in categories]

    engine = RecurringEngine(factory, max_workers=4)
    first = engine.process_due(date(2024, 1, 1))
    rest = engine.backfill(date(2024, 1, 22))

    assert first.failures == []
    assert rest.failures == []
    assert len(first.created) == 4
    assert len(rest.created) == 12
    assert [count_transactions(factory, rule_id) for rule_id in rule_ids] == [4] * 4
    with factory() as session:
        assert session.get(Budget, budget_id).total_spent_cents == 16 * 5_000
        spent = session.scalars(
            select(BudgetCategory.spent_cents).where(
                BudgetCategory.budget_id == budget_id
            )
        ).all()
        assert spent == [20_000] * 4
        assert len(session.scalars(select(BudgetImpact)).all()) == 16
    engine_.dispose()
