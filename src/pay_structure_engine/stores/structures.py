"""SQLAlchemy structure store."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from pay_structure_engine.calculators.components import (
    ComponentDefinition,
    TemplateVersion,
    component_from_config,
)
from pay_structure_engine.calculators.types import (
    ApprovalStatus,
    ComponentOverride,
    DateRange,
    DeductionPolicy,
    SemanticVersion,
    TemplateStatus,
    WorkerStructureAssignment,
)
from pay_structure_engine.errors import ConfigurationError, require_organization
from pay_structure_engine.models import (
    PayStructureComponent,
    PayStructureTemplate,
    WorkerComponentOverride,
    WorkerPayStructure,
)


class SqlStructureStore:
    """Reads templates, assignments and overrides; one session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_effective_structure(
        self, employee_id: UUID, organization_id: UUID, as_of: date
    ) -> list[WorkerStructureAssignment]:
        require_organization(organization_id)
        async with self.session_factory() as session:
            result = await session.execute(
                select(WorkerPayStructure)
                .where(
                    WorkerPayStructure.organization_id == organization_id,
                    WorkerPayStructure.employee_id == employee_id,
                    WorkerPayStructure.effective_from <= as_of,
                    or_(
                        WorkerPayStructure.effective_to.is_(None),
                        WorkerPayStructure.effective_to >= as_of,
                    ),
                )
                .options(selectinload(WorkerPayStructure.overrides))
                .order_by(WorkerPayStructure.effective_from)
            )
            return [_assignment_from_row(row) for row in result.scalars().all()]

    async def get_template(
        self, template_id: UUID, organization_id: UUID
    ) -> TemplateVersion | None:
        require_organization(organization_id)
        async with self.session_factory() as session:
            result = await session.execute(
                select(PayStructureTemplate)
                .where(
                    PayStructureTemplate.template_id == template_id,
                    PayStructureTemplate.organization_id == organization_id,
                )
                .options(selectinload(PayStructureTemplate.components))
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return _template_from_row(row)


def _assignment_from_row(row: WorkerPayStructure) -> WorkerStructureAssignment:
    return WorkerStructureAssignment(
        worker_structure_id=row.worker_structure_id,
        employee_id=row.employee_id,
        organization_id=row.organization_id,
        template_id=row.template_id,
        validity=DateRange(row.effective_from, row.effective_to),
        is_current=row.is_current,
        overrides=tuple(_override_from_row(o) for o in row.overrides),
    )


def _override_from_row(row: WorkerComponentOverride) -> ComponentOverride:
    return ComponentOverride(
        override_id=row.override_id,
        component_code=row.component_code,
        validity=DateRange(row.effective_from, row.effective_to),
        approval_status=ApprovalStatus(row.approval_status),
        override_amount=row.override_amount,
        override_percentage=row.override_percentage,
        override_formula=row.override_formula,
        override_rate=row.override_rate,
        is_disabled=row.is_disabled,
        approved_at=row.approved_at,
    )


def _template_from_row(row: PayStructureTemplate) -> TemplateVersion:
    try:
        status = TemplateStatus(row.status)
    except ValueError as e:
        raise ConfigurationError(
            f"Template {row.template_code} has unknown status {row.status!r}"
        ) from e
    return TemplateVersion(
        template_id=row.template_id,
        organization_id=row.organization_id,
        template_code=row.template_code,
        version=SemanticVersion(row.version_major, row.version_minor, row.version_patch),
        components=tuple(_component_from_row(c) for c in row.components),
        status=status,
        validity=DateRange(row.effective_from, row.effective_to),
        currency=row.currency,
        pay_frequency=row.pay_frequency,
        is_organization_default=row.is_organization_default,
    )


def _component_from_row(row: PayStructureComponent) -> ComponentDefinition:
    return component_from_config(
        code=row.component_code,
        name=row.component_name,
        category=row.category,
        calculation_type=row.calculation_type,
        configuration=row.configuration,
        sequence_order=row.sequence_order,
        depends_on=tuple(row.depends_on_components or ()),
        optional_dependencies=frozenset(row.optional_dependencies or ()),
        is_taxable=row.is_taxable,
        allowance_type=row.allowance_type,
        min_amount=row.min_amount,
        max_amount=row.max_amount,
        deduction=DeductionPolicy(
            is_pre_tax=row.is_pre_tax,
            priority=row.priority,
            max_per_payroll=row.max_per_payroll,
            max_annual=row.max_annual,
        ),
        allow_override=row.allow_override,
    )
