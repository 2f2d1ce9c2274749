from datetime import date
from typing import Optional

import pytest

from errors import RuleValidationError
from models import BudgetType, Frequency, RecurringRule, TransactionType
from periods import add_months, add_years, advance, budget_period_end, days_in_month
from recurrence import (
    EndDate,
    OccurrenceCap,
    RecurrenceSchedule,
    first_occurrence_on_or_after,
    make_terminator,
    next_firing_date,
)


def _schedule(
    frequency: Frequency,
    start: date,
    *,
    end: Optional[date] = None,
    cap: Optional[int] = None,
) -> RecurrenceSchedule:
    return RecurrenceSchedule(
        frequency=frequency,
        start_date=start,
        terminator=make_terminator(start, end, cap),
    )


def test_days_in_month_handles_leap_years():
    assert days_in_month(2024, 2) == 29
    assert days_in_month(2023, 2) == 28
    assert days_in_month(2024, 12) == 31


def test_add_months_clamps_to_end_of_shorter_month():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
    assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)
    assert add_years(date(2024, 2, 29), 1) == date(2025, 2, 28)


def test_advance_by_frequency():
    start = date(2024, 1, 31)
    assert advance(start, Frequency.daily) == date(2024, 2, 1)
    assert advance(start, Frequency.weekly) == date(2024, 2, 7)
    assert advance(start, Frequency.monthly) == date(2024, 2, 29)
    assert advance(start, Frequency.yearly) == date(2025, 1, 31)


def test_budget_period_end():
    assert budget_period_end(date(2024, 1, 1), BudgetType.monthly) == date(2024, 1, 31)
    assert budget_period_end(date(2024, 1, 31), BudgetType.monthly) == date(2024, 2, 28)
    assert budget_period_end(date(2024, 3, 1), BudgetType.annually) == date(
        2025, 2, 28
    )


def test_monthly_rule_sticks_to_clamped_day():
    schedule = _schedule(Frequency.monthly, date(2024, 1, 31), cap=24)
    fired = []
    today = date(2024, 1, 31)
    for _ in range(4):
        due = next_firing_date(schedule, len(fired), today)
        fired.append(due)
        today = date.fromordinal(due.toordinal() + 1)
    assert fired == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 29),
        date(2024, 4, 29),
    ]


def test_yearly_leap_day_rule_drifts_to_feb_28():
    schedule = _schedule(Frequency.yearly, date(2024, 2, 29), cap=10)
    assert first_occurrence_on_or_after(schedule, date(2024, 3, 1)) == date(
        2025, 2, 28
    )
    assert first_occurrence_on_or_after(schedule, date(2028, 1, 1)) == date(
        2028, 2, 28
    )


def test_rule_starting_today_fires_today():
    schedule = _schedule(Frequency.weekly, date(2024, 1, 1), end=date(2024, 1, 31))
    assert next_firing_date(schedule, 0, date(2024, 1, 1)) == date(2024, 1, 1)


def test_future_start_date_is_next_firing():
    schedule = _schedule(Frequency.monthly, date(2024, 5, 10), cap=3)
    assert next_firing_date(schedule, 0, date(2024, 1, 1)) == date(2024, 5, 10)


def test_weekly_closed_form_matches_stepping():
    start = date(2023, 11, 7)
    schedule = _schedule(Frequency.weekly, start, cap=500)
    current = start
    stepped = []
    while current <= date(2024, 3, 1):
        stepped.append(current)
        current = advance(current, Frequency.weekly)
    for target in (date(2023, 11, 7), date(2023, 11, 8), date(2024, 1, 2)):
        expected = next(d for d in stepped if d >= target)
        assert first_occurrence_on_or_after(schedule, target) == expected


def test_daily_rule_due_every_day_after_start():
    schedule = _schedule(Frequency.daily, date(2020, 1, 1), cap=100_000)
    assert next_firing_date(schedule, 10, date(2024, 6, 15)) == date(2024, 6, 15)


def test_end_date_expires_rule():
    schedule = _schedule(Frequency.weekly, date(2024, 1, 1), end=date(2024, 1, 31))
    assert next_firing_date(schedule, 4, date(2024, 1, 29)) == date(2024, 1, 29)
    assert next_firing_date(schedule, 5, date(2024, 1, 30)) is None
    assert next_firing_date(schedule, 5, date(2024, 2, 5)) is None


def test_occurrence_cap_terminates_regardless_of_calendar_time():
    schedule = _schedule(Frequency.monthly, date(2024, 1, 1), cap=3)
    assert next_firing_date(schedule, 2, date(2030, 1, 1)) == date(2030, 1, 1)
    assert next_firing_date(schedule, 3, date(2024, 2, 1)) is None
    assert next_firing_date(schedule, 3, date(2030, 1, 1)) is None


def test_terminator_requires_exactly_one_of_end_date_or_cap():
    with pytest.raises(RuleValidationError):
        make_terminator(date(2024, 1, 1), date(2024, 2, 1), 3)
    with pytest.raises(RuleValidationError):
        make_terminator(date(2024, 1, 1), None, None)
    with pytest.raises(RuleValidationError):
        make_terminator(date(2024, 1, 1), date(2024, 1, 1), None)
    with pytest.raises(RuleValidationError):
        make_terminator(date(2024, 1, 1), None, 0)
    assert make_terminator(date(2024, 1, 1), date(2024, 2, 1), None) == EndDate(
        date(2024, 2, 1)
    )
    assert make_terminator(date(2024, 1, 1), None, 3) == OccurrenceCap(3)


def test_schedule_from_rule():
    rule = RecurringRule(
        id=1,
        user_id=1,
        type=TransactionType.expense,
        amount_cents=5_000,
        category_id=1,
        description="Gym",
        frequency=Frequency.monthly,
        start_date=date(2024, 1, 15),
        end_date=None,
        occurrence_cap=12,
        auto_apply=True,
    )
    schedule = RecurrenceSchedule.from_rule(rule)
    assert schedule.terminator == OccurrenceCap(12)
    assert schedule.frequency == Frequency.monthly
