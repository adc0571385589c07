"""Tax rule set and bracket models."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pay_structure_engine.models.base import Base, TimestampMixin


class TaxRuleSet(Base, TimestampMixin):
    """Tax rules for one tax type in a jurisdiction.

    ``organization_id`` is null for statutory rule sets shared by every
    organization.
    """

    __tablename__ = "tax_rule_set"

    rule_set_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID | None] = mapped_column()
    tax_type: Mapped[str] = mapped_column(String, nullable=False)
    tax_name: Mapped[str] = mapped_column(String, nullable=False)
    calculation_method: Mapped[str] = mapped_column(String, nullable=False)
    calculation_mode: Mapped[str | None] = mapped_column(String)
    annual_cap: Mapped[Decimal | None] = mapped_column()
    country: Mapped[str] = mapped_column(String(2), nullable=False)
    state: Mapped[str | None] = mapped_column(String)
    locality: Mapped[str | None] = mapped_column(String)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "calculation_method IN ('bracket', 'flat')",
            name="tax_rule_set_method_check",
        ),
    )

    brackets: Mapped[list[TaxBracket]] = relationship(
        back_populates="rule_set",
        order_by="TaxBracket.bracket_order",
    )


class TaxBracket(Base):
    """One bracket of a rule set; ``income_max`` null marks the top bracket."""

    __tablename__ = "tax_bracket"

    bracket_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    rule_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("tax_rule_set.rule_set_id", ondelete="CASCADE"),
        nullable=False,
    )
    bracket_order: Mapped[int] = mapped_column(Integer, nullable=False)
    income_min: Mapped[Decimal] = mapped_column(nullable=False)
    income_max: Mapped[Decimal | None] = mapped_column()
    rate_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    fixed_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    __table_args__ = (
        UniqueConstraint("rule_set_id", "bracket_order", name="tax_bracket_order_unique"),
    )

    rule_set: Mapped[TaxRuleSet] = relationship(back_populates="brackets")
