"""SQLAlchemy tax rule store."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from pay_structure_engine.calculators.types import (
    DateRange,
    TaxBracket,
    TaxCalculationMethod,
    TaxCalculationMode,
    TaxRuleSet,
)
from pay_structure_engine.errors import ConfigurationError, require_organization
from pay_structure_engine.models import TaxRuleSet as TaxRuleSetRow


class SqlTaxRuleStore:
    """Statutory rule sets (no organization) plus the organization's own."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_applicable_rule_sets(
        self,
        country: str,
        state: str | None,
        locality: str | None,
        as_of: date,
        organization_id: UUID,
    ) -> list[TaxRuleSet]:
        require_organization(organization_id)
        async with self.session_factory() as session:
            result = await session.execute(
                select(TaxRuleSetRow)
                .where(
                    TaxRuleSetRow.is_active.is_(True),
                    TaxRuleSetRow.country == country,
                    or_(
                        TaxRuleSetRow.organization_id.is_(None),
                        TaxRuleSetRow.organization_id == organization_id,
                    ),
                    or_(TaxRuleSetRow.state.is_(None), TaxRuleSetRow.state == state),
                    or_(TaxRuleSetRow.locality.is_(None), TaxRuleSetRow.locality == locality),
                    TaxRuleSetRow.effective_from <= as_of,
                    or_(
                        TaxRuleSetRow.effective_to.is_(None),
                        TaxRuleSetRow.effective_to >= as_of,
                    ),
                )
                .options(selectinload(TaxRuleSetRow.brackets))
            )
            return [_rule_set_from_row(row) for row in result.scalars().all()]


def _rule_set_from_row(row: TaxRuleSetRow) -> TaxRuleSet:
    try:
        method = TaxCalculationMethod(row.calculation_method)
        mode = TaxCalculationMode(row.calculation_mode) if row.calculation_mode else None
    except ValueError as e:
        raise ConfigurationError(f"Tax rule set {row.tax_name}: {e}") from e
    return TaxRuleSet(
        rule_set_id=row.rule_set_id,
        tax_type=row.tax_type,
        tax_name=row.tax_name,
        calculation_method=method,
        calculation_mode=mode,
        brackets=tuple(
            TaxBracket(
                bracket_order=b.bracket_order,
                income_min=b.income_min,
                income_max=b.income_max,
                rate_percentage=b.rate_percentage,
                fixed_amount=b.fixed_amount,
            )
            for b in row.brackets
        ),
        annual_cap=row.annual_cap,
        country=row.country,
        state=row.state,
        locality=row.locality,
        validity=DateRange(row.effective_from, row.effective_to),
    )
