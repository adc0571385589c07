"""Committed paycheck records."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Date, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pay_structure_engine.models.base import Base, TimestampMixin


class PaycheckRecord(Base, TimestampMixin):
    """A computed paycheck, written in the same transaction as its usage changes.

    One record per employee and period; ``calculation_id`` makes retries of
    the same computation idempotent.
    """

    __tablename__ = "paycheck_record"

    paycheck_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    calculation_id: Mapped[UUID] = mapped_column(nullable=False, unique=True)
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    pay_date: Mapped[date] = mapped_column(Date, nullable=False)
    template_code: Mapped[str] = mapped_column(String, nullable=False)
    template_version: Mapped[str] = mapped_column(String, nullable=False)
    gross_pay: Mapped[Decimal] = mapped_column(nullable=False)
    net_pay: Mapped[Decimal] = mapped_column(nullable=False)
    components_json: Mapped[dict[str, Any]] = mapped_column(nullable=False)
    inputs_fingerprint: Mapped[str] = mapped_column(String, nullable=False)
    rules_fingerprint: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "employee_id",
            "period_start",
            "period_end",
            name="paycheck_record_period_unique",
        ),
    )
