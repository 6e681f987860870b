"""
ORM model for expenses (templates and generated instances).

Contract:
    One table holds both recurring templates (``is_recurring=True``,
    ``parent_expense_id IS NULL``) and the instances generated from them
    (``is_recurring=False``, ``parent_expense_id`` set).  Only the columns
    the recurring expense generator reads or writes are mapped here.

Invariants enforced:
    - ``next_occurrence`` is NULL iff generation has permanently stopped.
    - Instances point at exactly one template through ``parent_expense_id``.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, Boolean, Date, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backoffice_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from backoffice_batch.domain.types import Expense


class ExpenseModel(TrackedBase):
    """Expense row; a template when ``is_recurring`` and parentless."""

    __tablename__ = "expenses"

    __table_args__ = (
        Index("ix_expenses_recurring_due", "is_recurring", "next_occurrence"),
        Index("ix_expenses_parent", "parent_expense_id"),
    )

    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    project_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    net_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    tax_rate: Mapped[Decimal | None] = mapped_column(nullable=True)
    tax_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_billable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_reimbursable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurrence_frequency: Mapped[str | None] = mapped_column(String(20), nullable=True)
    recurrence_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    recurrence_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_occurrence: Mapped[date | None] = mapped_column(Date, nullable=True)
    parent_expense_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("expenses.id", ondelete="SET NULL"),
        nullable=True,
    )

    def to_dto(self) -> Expense:
        from backoffice_batch.domain.types import Expense, ExpenseStatus

        return Expense(
            expense_id=self.id,
            user_id=self.user_id,
            description=self.description,
            category=self.category,
            amount=self.amount,
            currency=self.currency,
            expense_date=self.expense_date,
            status=ExpenseStatus(self.status),
            net_amount=self.net_amount,
            tax_rate=self.tax_rate,
            tax_amount=self.tax_amount,
            project_id=self.project_id,
            is_billable=self.is_billable,
            is_reimbursable=self.is_reimbursable,
            tags=tuple(self.tags or ()),
            notes=self.notes,
            is_recurring=self.is_recurring,
            recurrence_frequency=self.recurrence_frequency,
            recurrence_start_date=self.recurrence_start_date,
            recurrence_end_date=self.recurrence_end_date,
            next_occurrence=self.next_occurrence,
            parent_expense_id=self.parent_expense_id,
        )
