"""Seed script for statutory Suriname tax rules and allowances.

Run with:
    python scripts/seed_tax_rules.py

This creates the schema if needed, then the statutory (organization-less)
monthly wage tax, AOV and allowance rows the engine needs to compute a
paycheck. Existing rows with the same name are left alone.
"""

from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pay_structure_engine.database import create_schema, dispose_db, get_session, init_db
from pay_structure_engine.models import Allowance, TaxBracket, TaxRuleSet

# Monthly wage tax brackets (income_min, income_max, rate %)
MONTHLY_WAGE_TAX = [
    (Decimal("0"), Decimal("3500"), Decimal("8")),
    (Decimal("3500"), Decimal("7000"), Decimal("18")),
    (Decimal("7000"), Decimal("10500"), Decimal("28")),
    (Decimal("10500"), None, Decimal("38")),
]

# (allowance_type, amount, effective_from, effective_to)
ALLOWANCES = [
    ("tax_free_sum_monthly", Decimal("7500"), date(2023, 1, 1), date(2024, 12, 31)),
    ("tax_free_sum_monthly", Decimal("9000"), date(2025, 1, 1), date(2025, 12, 31)),
    ("tax_free_sum_annual", Decimal("90000"), date(2023, 1, 1), date(2024, 12, 31)),
    ("tax_free_sum_annual", Decimal("108000"), date(2025, 1, 1), date(2025, 12, 31)),
    ("holiday_allowance", Decimal("10016"), date(2023, 1, 1), date(2024, 12, 31)),
    ("holiday_allowance", Decimal("19500"), date(2025, 1, 1), date(2025, 12, 31)),
    ("bonus_gratuity", Decimal("10016"), date(2023, 1, 1), date(2024, 12, 31)),
    ("bonus_gratuity", Decimal("19500"), date(2025, 1, 1), date(2025, 12, 31)),
]


async def rule_set_exists(session: AsyncSession, tax_name: str) -> bool:
    result = await session.execute(select(TaxRuleSet).where(TaxRuleSet.tax_name == tax_name))
    return result.scalar_one_or_none() is not None


async def seed_wage_tax(session: AsyncSession, year: int) -> None:
    """Create the progressive monthly wage tax for one year."""
    tax_name = f"Suriname Wage Tax {year} (Monthly)"
    if await rule_set_exists(session, tax_name):
        print(f"{tax_name} already exists, skipping...")
        return

    rule_set = TaxRuleSet(
        tax_type="wage_tax",
        tax_name=tax_name,
        calculation_method="bracket",
        calculation_mode="proportional_distribution",
        country="SR",
        effective_from=date(year, 1, 1),
        effective_to=date(year, 12, 31),
    )
    rule_set.brackets = [
        TaxBracket(
            bracket_order=order,
            income_min=income_min,
            income_max=income_max,
            rate_percentage=rate,
        )
        for order, (income_min, income_max, rate) in enumerate(MONTHLY_WAGE_TAX, start=1)
    ]
    session.add(rule_set)
    print(f"Created {tax_name}")


async def seed_aov(session: AsyncSession, year: int) -> None:
    """Create the 4% old age pension contribution for one year."""
    tax_name = f"Suriname AOV {year}"
    if await rule_set_exists(session, tax_name):
        print(f"{tax_name} already exists, skipping...")
        return

    rule_set = TaxRuleSet(
        tax_type="aov",
        tax_name=tax_name,
        calculation_method="flat",
        calculation_mode="component_based",
        country="SR",
        effective_from=date(year, 1, 1),
        effective_to=date(year, 12, 31),
    )
    rule_set.brackets = [
        TaxBracket(
            bracket_order=1,
            income_min=Decimal("0"),
            income_max=None,
            rate_percentage=Decimal("4"),
        )
    ]
    session.add(rule_set)
    print(f"Created {tax_name}")


async def seed_allowances(session: AsyncSession) -> None:
    """Create tax-free sum, holiday allowance and bonus/gratuity limits."""
    for allowance_type, amount, effective_from, effective_to in ALLOWANCES:
        result = await session.execute(
            select(Allowance).where(
                Allowance.allowance_type == allowance_type,
                Allowance.country == "SR",
                Allowance.effective_from == effective_from,
            )
        )
        if result.scalar_one_or_none():
            print(f"{allowance_type} from {effective_from} already exists, skipping...")
            continue
        session.add(
            Allowance(
                allowance_type=allowance_type,
                amount=amount,
                country="SR",
                effective_from=effective_from,
                effective_to=effective_to,
            )
        )
        print(f"Created {allowance_type} SRD {amount} from {effective_from}")


async def main():
    """Run seed script."""
    print("Seeding tax rules...")

    engine, _ = init_db()
    await create_schema(engine)

    async with get_session() as session:
        for year in (2024, 2025):
            await seed_wage_tax(session, year)
            await seed_aov(session, year)
        await seed_allowances(session)

    await dispose_db()

    print("\nDone! Tax rules seeded successfully.")


if __name__ == "__main__":
    asyncio.run(main())
