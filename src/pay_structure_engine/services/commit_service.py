"""Idempotent commit of a computed paycheck and its usage increments."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pay_structure_engine.errors import ConcurrencyError, IntegrityError
from pay_structure_engine.models import EmployeeAllowanceUsage, PaycheckRecord

if TYPE_CHECKING:
    from pay_structure_engine.calculators.types import PayPeriod, PaycheckResult, UsageIncrement

logger = logging.getLogger(__name__)


class CalculationMismatchError(IntegrityError):
    """Raised when the period already has a paycheck with a different calculation ID."""

    kind = "calculation_mismatch"

    def __init__(self, employee_id: UUID, existing_calc_id: UUID, new_calc_id: UUID):
        self.existing_calc_id = existing_calc_id
        self.new_calc_id = new_calc_id
        super().__init__(
            f"Paycheck for this period exists with calculation_id {existing_calc_id}, "
            f"but attempted to write {new_calc_id}. Requires a void/recompute path.",
            employee_id=employee_id,
            stage="commit",
        )


class UsageCommitService:
    """Persists a paycheck and its usage changes in one transaction.

    Key invariants:
    1. One paycheck record per employee and period (unique constraint)
    2. Re-committing the same calculation_id is a no-op, so retries are safe
    3. Usage rows must still match the snapshots the paycheck was computed
       from; otherwise the employee must be recomputed (ConcurrencyError)
    4. Usage and paycheck are written together or not at all
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def commit(self, result: PaycheckResult) -> bool:
        """Commit a paycheck.

        Returns True if a new record was written, False if this exact
        calculation was already committed.

        Raises:
            CalculationMismatchError: period already committed with other inputs
            ConcurrencyError: usage changed since the paycheck was computed
        """
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    return await self.commit_in_session(session, result)
            except ConcurrencyError:
                logger.info(
                    "Usage changed for employee %s; paycheck %s not committed",
                    result.employee_id,
                    result.calculation_id,
                )
                raise

    async def committed_employees(
        self, employee_ids: Iterable[UUID], organization_id: UUID, pay_period: PayPeriod
    ) -> set[UUID]:
        """Employees that already have a paycheck record for the period.

        Their usage counters have moved on since that paycheck was computed, so
        recomputing them would yield a different calculation_id. Runs check
        this first and leave them alone.
        """
        ids = list(employee_ids)
        if not ids:
            return set()
        async with self.session_factory() as session:
            rows = await session.execute(
                select(PaycheckRecord.employee_id).where(
                    PaycheckRecord.organization_id == organization_id,
                    PaycheckRecord.employee_id.in_(ids),
                    PaycheckRecord.period_start == pay_period.period_start,
                    PaycheckRecord.period_end == pay_period.period_end,
                )
            )
            return set(rows.scalars())

    async def commit_in_session(self, session: AsyncSession, result: PaycheckResult) -> bool:
        """Commit within a transaction owned by the caller."""
        existing = await self._find_existing(session, result)
        if existing is not None:
            if existing.calculation_id != result.calculation_id:
                raise CalculationMismatchError(
                    result.employee_id, existing.calculation_id, result.calculation_id
                )
            return False

        for increment in result.usage_increments:
            await self._apply_increment(session, result, increment)

        summary = result.components.summary
        session.add(
            PaycheckRecord(
                calculation_id=result.calculation_id,
                organization_id=result.organization_id,
                employee_id=result.employee_id,
                period_start=result.pay_period.period_start,
                period_end=result.pay_period.period_end,
                pay_date=result.pay_period.pay_date,
                template_code=result.template_code,
                template_version=result.template_version,
                gross_pay=summary.total_earnings,
                net_pay=summary.net_pay,
                components_json=result.components.to_dict(),
                inputs_fingerprint=result.inputs_fingerprint,
                rules_fingerprint=result.rules_fingerprint,
            )
        )
        await session.flush()
        return True

    async def _find_existing(
        self, session: AsyncSession, result: PaycheckResult
    ) -> PaycheckRecord | None:
        by_calc = await session.execute(
            select(PaycheckRecord).where(PaycheckRecord.calculation_id == result.calculation_id)
        )
        record = by_calc.scalar_one_or_none()
        if record is not None:
            return record

        by_period = await session.execute(
            select(PaycheckRecord).where(
                PaycheckRecord.organization_id == result.organization_id,
                PaycheckRecord.employee_id == result.employee_id,
                PaycheckRecord.period_start == result.pay_period.period_start,
                PaycheckRecord.period_end == result.pay_period.period_end,
            )
        )
        return by_period.scalar_one_or_none()

    async def _apply_increment(
        self,
        session: AsyncSession,
        result: PaycheckResult,
        increment: UsageIncrement,
    ) -> None:
        previous = increment.previous
        row = (
            await session.execute(
                select(EmployeeAllowanceUsage).where(
                    EmployeeAllowanceUsage.organization_id == result.organization_id,
                    EmployeeAllowanceUsage.employee_id == result.employee_id,
                    EmployeeAllowanceUsage.usage_key == previous.usage_key,
                    EmployeeAllowanceUsage.year == previous.year,
                )
                .with_for_update()
            )
        ).scalar_one_or_none()

        current_version = row.version if row is not None else 0
        current_amount = row.amount_used if row is not None else previous.amount_used
        if current_version != previous.version or current_amount != previous.amount_used:
            raise ConcurrencyError(
                f"Usage {previous.usage_key} changed from version {previous.version} "
                f"to {current_version} since the paycheck was computed",
                employee_id=result.employee_id,
                stage="commit",
            )

        if increment.amount == 0:
            return
        if row is None:
            session.add(
                EmployeeAllowanceUsage(
                    organization_id=result.organization_id,
                    employee_id=result.employee_id,
                    usage_key=previous.usage_key,
                    year=previous.year,
                    amount_used=increment.new_amount_used,
                    version=1,
                )
            )
        else:
            row.amount_used = increment.new_amount_used
            row.version = current_version + 1
