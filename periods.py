from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from config import get_settings
from models import BudgetType, Frequency


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, target: date) -> bool:
        return self.start <= target <= self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


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
    """Shift ``base`` by whole months, clamping to the target month's last day.

    Jan 31 + 1 month is Feb 29 in a leap year, never Mar 2.
    """
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def add_years(base: date, years: int) -> date:
    return add_months(base, 12 * years)


def advance(base: date, frequency: Frequency, steps: int = 1) -> date:
    if frequency == Frequency.daily:
        return base + timedelta(days=steps)
    if frequency == Frequency.weekly:
        return base + timedelta(weeks=steps)
    if frequency == Frequency.monthly:
        return add_months(base, steps)
    if frequency == Frequency.yearly:
        return add_years(base, steps)
    raise ValueError(f"Unsupported frequency: {frequency}")


def budget_period_end(start: date, budget_type: BudgetType) -> date:
    if budget_type == BudgetType.monthly:
        return add_months(start, 1) - date.resolution
    if budget_type == BudgetType.annually:
        return add_years(start, 1) - date.resolution
    raise ValueError(f"Unsupported budget type: {budget_type}")


def upcoming_window(today: date, days: int) -> Period:
    if days < 0:
        raise ValueError("Window must not be negative")
    return Period("upcoming", today, today + timedelta(days=days))
