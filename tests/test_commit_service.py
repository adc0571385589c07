"""Tests for committing paychecks together with their usage changes."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from pay_structure_engine.calculators.components import FixedComponent
from pay_structure_engine.calculators.types import (
    ComponentCategory,
    DeductionPolicy,
    PayInputs,
    UsageSnapshot,
)
from pay_structure_engine.errors import ConcurrencyError
from pay_structure_engine.models import EmployeeAllowanceUsage, PaycheckRecord
from pay_structure_engine.services.commit_service import (
    CalculationMismatchError,
    UsageCommitService,
)

PENSION = FixedComponent(
    code="PENSION",
    name="Pension",
    category=ComponentCategory.DEDUCTION,
    amount=Decimal("50"),
    deduction=DeductionPolicy(is_pre_tax=True, max_annual=Decimal("500")),
)


@pytest.fixture
async def pension_usage(session_factory, allowance_store, employee_id, organization_id):
    """Pension year-to-date of 480 at version 3, in the database and the engine's view."""
    async with session_factory() as session, session.begin():
        session.add(
            EmployeeAllowanceUsage(
                organization_id=organization_id,
                employee_id=employee_id,
                usage_key="deduction:PENSION",
                year=2024,
                amount_used=Decimal("480"),
                version=3,
            )
        )
    allowance_store.set_usage(
        organization_id,
        UsageSnapshot(
            employee_id=employee_id,
            usage_key="deduction:PENSION",
            year=2024,
            amount_used=Decimal("480"),
            version=3,
        ),
    )


@pytest.fixture
def compute(paycheck_engine, assign_structure, employee_id, organization_id, pay_period):
    assign_structure(employee_id, [PENSION])

    async def _compute(base_salary="3000"):
        return await paycheck_engine.compute_paycheck(
            employee_id,
            organization_id,
            pay_period,
            PayInputs(base_salary=Decimal(base_salary)),
        )

    return _compute


async def usage_row(session_factory, employee_id) -> EmployeeAllowanceUsage:
    async with session_factory() as session:
        return (
            await session.execute(
                select(EmployeeAllowanceUsage).where(
                    EmployeeAllowanceUsage.employee_id == employee_id
                )
            )
        ).scalar_one()


async def paycheck_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(PaycheckRecord))).scalar()


class TestUsageCommitService:
    async def test_commit_writes_paycheck_and_usage(
        self, session_factory, pension_usage, compute, employee_id
    ):
        result = await compute()

        written = await UsageCommitService(session_factory).commit(result)

        assert written is True
        row = await usage_row(session_factory, employee_id)
        assert row.amount_used == Decimal("500")
        assert row.version == 4

        async with session_factory() as session:
            record = (await session.execute(select(PaycheckRecord))).scalar_one()
        assert record.calculation_id == result.calculation_id
        assert record.net_pay == result.net_pay
        assert record.components_json["summary"]["netPay"] == str(result.net_pay)

    async def test_recommit_is_a_no_op(
        self, session_factory, pension_usage, compute, employee_id
    ):
        result = await compute()
        service = UsageCommitService(session_factory)

        assert await service.commit(result) is True
        assert await service.commit(result) is False

        assert await paycheck_count(session_factory) == 1
        row = await usage_row(session_factory, employee_id)
        assert row.version == 4

    async def test_different_calculation_for_same_period(
        self, session_factory, pension_usage, compute
    ):
        service = UsageCommitService(session_factory)
        await service.commit(await compute("3000"))
        recomputed = await compute("3100")

        with pytest.raises(CalculationMismatchError) as exc_info:
            await service.commit(recomputed)

        assert exc_info.value.new_calc_id == recomputed.calculation_id
        assert exc_info.value.stage == "commit"

    async def test_usage_changed_since_computation(
        self, session_factory, pension_usage, compute, employee_id
    ):
        result = await compute()
        async with session_factory() as session, session.begin():
            row = (
                await session.execute(
                    select(EmployeeAllowanceUsage).where(
                        EmployeeAllowanceUsage.employee_id == employee_id
                    )
                )
            ).scalar_one()
            row.amount_used = Decimal("490")
            row.version = 4

        with pytest.raises(ConcurrencyError):
            await UsageCommitService(session_factory).commit(result)

        # Nothing written: the paycheck and its usage go together
        assert await paycheck_count(session_factory) == 0
        row = await usage_row(session_factory, employee_id)
        assert row.amount_used == Decimal("490")

    async def test_first_usage_row_is_inserted(
        self, session_factory, compute, employee_id
    ):
        result = await compute()
        [increment] = result.usage_increments
        assert increment.previous.version == 0

        await UsageCommitService(session_factory).commit(result)

        row = await usage_row(session_factory, employee_id)
        assert row.amount_used == Decimal("50")
        assert row.version == 1

    async def test_commit_in_callers_transaction(
        self, session_factory, pension_usage, compute
    ):
        result = await compute()
        async with session_factory() as session:
            await UsageCommitService(session_factory).commit_in_session(session, result)
            await session.rollback()

        assert await paycheck_count(session_factory) == 0
