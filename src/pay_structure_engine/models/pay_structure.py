"""Pay structure template, component, assignment and override models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pay_structure_engine.models.base import Base, TimestampMixin


class PayStructureTemplate(Base, TimestampMixin):
    """Versioned pay structure template."""

    __tablename__ = "pay_structure_template"

    template_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    template_code: Mapped[str] = mapped_column(String, nullable=False)
    template_name: Mapped[str] = mapped_column(String, nullable=False)
    version_major: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    version_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version_patch: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SRD")
    pay_frequency: Mapped[str] = mapped_column(String, nullable=False, default="monthly")
    is_organization_default: Mapped[bool] = mapped_column(nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "template_code",
            "version_major",
            "version_minor",
            "version_patch",
            name="pay_structure_template_version_unique",
        ),
        CheckConstraint(
            "status IN ('draft', 'active', 'deprecated')",
            name="pay_structure_template_status_check",
        ),
    )

    components: Mapped[list[PayStructureComponent]] = relationship(
        back_populates="template",
        order_by="PayStructureComponent.sequence_order",
    )

    @property
    def version_string(self) -> str:
        return f"{self.version_major}.{self.version_minor}.{self.version_patch}"


class PayStructureComponent(Base, TimestampMixin):
    """One component of a template version.

    ``configuration`` holds the calculation-type specific settings (amount,
    percentage and base, formula and constants, tier table).
    """

    __tablename__ = "pay_structure_component"

    component_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    template_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_structure_template.template_id", ondelete="CASCADE"),
        nullable=False,
    )
    component_code: Mapped[str] = mapped_column(String, nullable=False)
    component_name: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    calculation_type: Mapped[str] = mapped_column(String, nullable=False)
    sequence_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    depends_on_components: Mapped[list[Any]] = mapped_column(nullable=False, default=list)
    optional_dependencies: Mapped[list[Any]] = mapped_column(nullable=False, default=list)
    is_taxable: Mapped[bool] = mapped_column(nullable=False, default=True)
    allowance_type: Mapped[str | None] = mapped_column(String)
    min_amount: Mapped[Decimal | None] = mapped_column()
    max_amount: Mapped[Decimal | None] = mapped_column()
    max_per_payroll: Mapped[Decimal | None] = mapped_column()
    max_annual: Mapped[Decimal | None] = mapped_column()
    is_pre_tax: Mapped[bool] = mapped_column(nullable=False, default=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    allow_override: Mapped[bool] = mapped_column(nullable=False, default=True)
    configuration: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint(
            "template_id", "component_code", name="pay_structure_component_code_unique"
        ),
        CheckConstraint(
            "category IN ('earning', 'deduction')",
            name="pay_structure_component_category_check",
        ),
        CheckConstraint(
            "calculation_type IN ('fixed', 'percentage', 'formula', 'tiered')",
            name="pay_structure_component_type_check",
        ),
    )

    template: Mapped[PayStructureTemplate] = relationship(back_populates="components")


class WorkerPayStructure(Base, TimestampMixin):
    """Assignment of an employee to a template version for a date range."""

    __tablename__ = "worker_pay_structure"

    worker_structure_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    template_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_structure_template.template_id"),
        nullable=False,
    )
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)
    is_current: Mapped[bool] = mapped_column(nullable=False, default=False)

    __table_args__ = (
        Index("worker_pay_structure_employee_idx", "organization_id", "employee_id"),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="worker_pay_structure_range_check",
        ),
    )

    overrides: Mapped[list[WorkerComponentOverride]] = relationship(
        back_populates="worker_structure",
    )


class WorkerComponentOverride(Base, TimestampMixin):
    """Worker-specific override of one template component."""

    __tablename__ = "component_override"

    override_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    worker_structure_id: Mapped[UUID] = mapped_column(
        ForeignKey("worker_pay_structure.worker_structure_id", ondelete="CASCADE"),
        nullable=False,
    )
    component_code: Mapped[str] = mapped_column(String, nullable=False)
    override_amount: Mapped[Decimal | None] = mapped_column()
    override_percentage: Mapped[Decimal | None] = mapped_column(Numeric(9, 4))
    override_formula: Mapped[str | None] = mapped_column(String)
    override_rate: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    is_disabled: Mapped[bool] = mapped_column(nullable=False, default=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)
    approval_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    approved_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        CheckConstraint(
            "approval_status IN ('pending', 'approved', 'rejected')",
            name="component_override_approval_check",
        ),
    )

    worker_structure: Mapped[WorkerPayStructure] = relationship(back_populates="overrides")
