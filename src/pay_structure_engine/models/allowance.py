"""Allowance definitions and per-employee usage counters."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from pay_structure_engine.models.base import Base, TimestampMixin


class Allowance(Base, TimestampMixin):
    """Tax-free allowance for a jurisdiction and date range."""

    __tablename__ = "allowance"

    allowance_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID | None] = mapped_column()
    allowance_type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    is_percentage: Mapped[bool] = mapped_column(nullable=False, default=False)
    country: Mapped[str] = mapped_column(String(2), nullable=False)
    state: Mapped[str | None] = mapped_column(String)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)


class EmployeeAllowanceUsage(Base):
    """Running yearly total for one usage key (allowance type, capped tax or deduction).

    ``version`` is bumped on every write; the commit service compares it to
    the snapshot the paycheck was computed from.
    """

    __tablename__ = "employee_allowance_usage"

    usage_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    usage_key: Mapped[str] = mapped_column(String, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_used: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "employee_id",
            "usage_key",
            "year",
            name="employee_allowance_usage_unique",
        ),
        CheckConstraint("amount_used >= 0", name="employee_allowance_usage_non_negative"),
    )
