import datetime as dt
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class BudgetType(str, Enum):
    monthly = "monthly"
    annually = "annually"


class BudgetStatus(str, Enum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


class TimestampMixin:
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime,
        default=dt.datetime.utcnow,
        onupdate=dt.datetime.utcnow,
        nullable=False,
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    archived_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )
    recurring_rules: Mapped[list["RecurringRule"]] = relationship(
        "RecurringRule", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    recurring_rule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_rules.id", ondelete="SET NULL")
    )
    occurrence_date: Mapped[Optional[dt.date]] = mapped_column(Date)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )
    recurring_rule: Mapped[Optional["RecurringRule"]] = relationship(
        "RecurringRule", back_populates="transactions"
    )
    impacts: Mapped[list["BudgetImpact"]] = relationship(
        "BudgetImpact", back_populates="transaction"
    )

    __table_args__ = (
        UniqueConstraint(
            "recurring_rule_id",
            "occurrence_date",
            name="uq_txn_rule_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        Index("ix_transactions_rule", "recurring_rule_id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class RecurringRule(Base, TimestampMixin):
    __tablename__ = "recurring_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(String(200))
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    occurrence_cap: Mapped[Optional[int]] = mapped_column(Integer)
    auto_apply: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="recurring_rules"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="recurring_rule", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_rule_amount_positive"),
        CheckConstraint(
            "(end_date IS NULL AND occurrence_cap IS NOT NULL)"
            " OR (end_date IS NOT NULL AND occurrence_cap IS NULL)",
            name="ck_rule_single_terminator",
        ),
        CheckConstraint(
            "occurrence_cap IS NULL OR occurrence_cap > 0",
            name="ck_rule_cap_positive",
        ),
        CheckConstraint(
            "end_date IS NULL OR end_date > start_date",
            name="ck_rule_end_after_start",
        ),
        Index("ix_recurring_rules_start", "auto_apply", "start_date"),
    )


class SkippedOccurrence(Base):
    """A generated transaction the user deleted; the sweep must not recreate it."""

    __tablename__ = "skipped_occurrences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    recurring_rule_id: Mapped[int] = mapped_column(
        ForeignKey("recurring_rules.id", ondelete="CASCADE"), nullable=False
    )
    occurrence_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "recurring_rule_id", "occurrence_date", name="uq_skip_rule_occurrence"
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    budget_type: Mapped[BudgetType] = mapped_column(
        SAEnum(BudgetType), nullable=False, default=BudgetType.monthly
    )
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    total_allocated_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    total_spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[BudgetStatus] = mapped_column(
        SAEnum(BudgetStatus), nullable=False, default=BudgetStatus.active
    )
    description: Mapped[Optional[str]] = mapped_column(String(500))

    allocations: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory",
        back_populates="budget",
        cascade="all, delete-orphan",
        order_by="BudgetCategory.id",
    )
    impacts: Mapped[list["BudgetImpact"]] = relationship(
        "BudgetImpact", back_populates="budget", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("start_date <= end_date", name="ck_budget_period_order"),
        CheckConstraint("total_spent_cents >= 0", name="ck_budget_spent_positive"),
        Index("ix_budgets_user_status_period", "user_id", "status", "start_date"),
    )


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="allocations")
    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint("budget_id", "category_id", name="uq_budget_category"),
        CheckConstraint(
            "allocated_cents >= 0", name="ck_budget_category_allocated_positive"
        ),
        CheckConstraint("spent_cents >= 0", name="ck_budget_category_spent_positive"),
    )


class BudgetImpact(Base):
    __tablename__ = "budget_impacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, nullable=False
    )

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="impacts"
    )
    budget: Mapped["Budget"] = relationship("Budget", back_populates="impacts")

    __table_args__ = (
        UniqueConstraint("transaction_id", "budget_id", name="uq_impact_txn_budget"),
        Index("ix_budget_impacts_budget_category", "budget_id", "category_id"),
        CheckConstraint("amount_cents > 0", name="ck_impact_amount_positive"),
    )
