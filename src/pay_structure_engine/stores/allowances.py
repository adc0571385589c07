"""SQLAlchemy allowance and usage store."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pay_structure_engine.calculators.types import (
    AllowanceDefinition,
    DateRange,
    UsageSnapshot,
)
from pay_structure_engine.errors import ValidationError, require_organization
from pay_structure_engine.models import Allowance, EmployeeAllowanceUsage


class SqlAllowanceStore:
    """Allowance definitions and usage counters.

    ``record_usage`` is for administrative corrections; paychecks update
    usage through the commit service.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_allowance(
        self,
        allowance_type: str,
        country: str,
        state: str | None,
        as_of: date,
        organization_id: UUID,
    ) -> AllowanceDefinition | None:
        require_organization(organization_id)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Allowance).where(
                    Allowance.is_active.is_(True),
                    Allowance.allowance_type == allowance_type,
                    Allowance.country == country,
                    or_(
                        Allowance.organization_id.is_(None),
                        Allowance.organization_id == organization_id,
                    ),
                    or_(Allowance.state.is_(None), Allowance.state == state),
                    Allowance.effective_from <= as_of,
                    or_(Allowance.effective_to.is_(None), Allowance.effective_to >= as_of),
                )
            )
            rows = list(result.scalars().all())
        if not rows:
            return None
        # State-specific definitions win over country-wide ones
        rows.sort(key=lambda r: (r.state is None, str(r.allowance_id)))
        row = rows[0]
        return AllowanceDefinition(
            allowance_id=row.allowance_id,
            allowance_type=row.allowance_type,
            amount=row.amount,
            is_percentage=row.is_percentage,
            country=row.country,
            state=row.state,
            validity=DateRange(row.effective_from, row.effective_to),
        )

    async def get_usage(
        self, employee_id: UUID, usage_key: str, year: int, organization_id: UUID
    ) -> UsageSnapshot:
        require_organization(organization_id)
        async with self.session_factory() as session:
            row = await _usage_row(session, employee_id, usage_key, year, organization_id)
        if row is None:
            return UsageSnapshot(employee_id=employee_id, usage_key=usage_key, year=year)
        return _snapshot(row)

    async def record_usage(
        self,
        employee_id: UUID,
        usage_key: str,
        year: int,
        amount_used: Decimal,
        organization_id: UUID,
    ) -> UsageSnapshot:
        require_organization(organization_id)
        async with self.session_factory() as session:
            async with session.begin():
                row = await _usage_row(
                    session, employee_id, usage_key, year, organization_id, for_update=True
                )
                if row is None:
                    row = EmployeeAllowanceUsage(
                        organization_id=organization_id,
                        employee_id=employee_id,
                        usage_key=usage_key,
                        year=year,
                        amount_used=Decimal("0"),
                        version=0,
                    )
                    session.add(row)
                if amount_used < row.amount_used:
                    raise ValidationError(
                        f"Usage for {usage_key} cannot decrease within {year} "
                        f"({row.amount_used} -> {amount_used})",
                        employee_id=employee_id,
                    )
                row.amount_used = amount_used
                row.version = row.version + 1
                await session.flush()
                return _snapshot(row)


async def _usage_row(
    session: AsyncSession,
    employee_id: UUID,
    usage_key: str,
    year: int,
    organization_id: UUID,
    for_update: bool = False,
) -> EmployeeAllowanceUsage | None:
    query = select(EmployeeAllowanceUsage).where(
        EmployeeAllowanceUsage.organization_id == organization_id,
        EmployeeAllowanceUsage.employee_id == employee_id,
        EmployeeAllowanceUsage.usage_key == usage_key,
        EmployeeAllowanceUsage.year == year,
    )
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


def _snapshot(row: EmployeeAllowanceUsage) -> UsageSnapshot:
    return UsageSnapshot(
        employee_id=row.employee_id,
        usage_key=row.usage_key,
        year=row.year,
        amount_used=row.amount_used,
        version=row.version,
    )
