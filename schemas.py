import datetime as dt
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from models import BudgetType, Frequency, TransactionType


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType


class TransactionIn(BaseModel):
    date: dt.date
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category_id: int
    description: Optional[str] = Field(default=None, max_length=200)


class RecurringRuleIn(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category_id: int
    description: Optional[str] = Field(default=None, max_length=200)
    frequency: Frequency
    start_date: dt.date
    end_date: Optional[dt.date] = None
    occurrence_cap: Optional[int] = Field(default=None, gt=0)
    auto_apply: bool = True

    @model_validator(mode="after")
    def _single_terminator(self) -> "RecurringRuleIn":
        if (self.end_date is None) == (self.occurrence_cap is None):
            raise ValueError(
                "Either end_date or occurrence_cap must be provided, but not both"
            )
        if self.end_date is not None and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class BudgetAllocationIn(BaseModel):
    category_id: int
    allocated_cents: int = Field(..., ge=0)


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    budget_type: BudgetType = BudgetType.monthly
    start_date: dt.date
    description: Optional[str] = Field(default=None, max_length=500)
    allocations: list[BudgetAllocationIn] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _unique_categories(self) -> "BudgetIn":
        category_ids = [a.category_id for a in self.allocations]
        if len(category_ids) != len(set(category_ids)):
            raise ValueError("Each category can only be allocated once per budget")
        return self
