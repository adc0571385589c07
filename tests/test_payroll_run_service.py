"""Tests for concurrent payroll runs."""

import asyncio
from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from pay_structure_engine.calculators.components import FixedComponent
from pay_structure_engine.calculators.engine import PaycheckEngine
from pay_structure_engine.calculators.types import ComponentCategory, DeductionPolicy, PayInputs
from pay_structure_engine.errors import ConcurrencyError
from pay_structure_engine.services.commit_service import UsageCommitService
from pay_structure_engine.services.payroll_run_service import PayrollRunService
from pay_structure_engine.stores import SqlAllowanceStore

BASE_SALARY = FixedComponent(
    code="BASE_SALARY",
    name="Base Salary",
    category=ComponentCategory.EARNING,
    is_taxable=True,
    amount=Decimal("3000"),
)
PENSION = FixedComponent(
    code="PENSION",
    name="Pension",
    category=ComponentCategory.DEDUCTION,
    amount=Decimal("50"),
    deduction=DeductionPolicy(is_pre_tax=True, max_annual=Decimal("500")),
)


class SlowEngine:
    """Wraps a real engine, adding a delay and tracking parallelism."""

    def __init__(self, engine, delay=0.01, error=None):
        self.engine = engine
        self.delay = delay
        self.error = error
        self.in_flight = 0
        self.max_in_flight = 0
        self.started = []

    async def compute_paycheck(self, employee_id, organization_id, pay_period, inputs=None):
        self.started.append(employee_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return await self.engine.compute_paycheck(
                employee_id, organization_id, pay_period, inputs
            )
        finally:
            self.in_flight -= 1


class RecordingCommitService:
    def __init__(self, error=None):
        self.error = error
        self.committed = []

    async def commit(self, result):
        if self.error is not None:
            raise self.error
        self.committed.append(result.calculation_id)
        return True

    async def committed_employees(self, employee_ids, organization_id, pay_period):
        return set()


@pytest.fixture
def employees(assign_structure):
    ids = [uuid4() for _ in range(10)]
    for employee_id in ids:
        assign_structure(employee_id, [BASE_SALARY])
    return ids


class TestPayrollRunService:
    async def test_computes_every_employee(
        self, paycheck_engine, settings, employees, organization_id, pay_period
    ):
        service = PayrollRunService(paycheck_engine, settings=settings)

        run = await service.run(employees, organization_id, pay_period)

        assert set(run.results) == set(employees)
        assert run.failures == {}
        assert run.skipped == []
        # 3000 - 8% wage tax, per employee
        assert run.total_gross == Decimal("30000.00")
        assert run.total_net == Decimal("27600.00")

    async def test_failures_do_not_stop_the_run(
        self, paycheck_engine, settings, employees, organization_id, pay_period
    ):
        stranger = uuid4()
        service = PayrollRunService(paycheck_engine, settings=settings)

        run = await service.run([*employees, stranger], organization_id, pay_period)

        assert len(run.results) == len(employees)
        failure = run.failures[stranger]
        assert failure.kind == "not_found"
        assert failure.stage == "resolving"

    async def test_per_employee_inputs(
        self, paycheck_engine, settings, assign_structure, organization_id, pay_period
    ):
        hourly = uuid4()
        assign_structure(hourly, [])
        service = PayrollRunService(paycheck_engine, settings=settings)

        run = await service.run(
            [hourly],
            organization_id,
            pay_period,
            {hourly: PayInputs(hourly_rate=Decimal("20"), hours_worked=Decimal("100"))},
        )

        assert run.results[hourly].gross_pay == Decimal("2000.00")

    async def test_concurrency_is_bounded(
        self, paycheck_engine, settings, employees, organization_id, pay_period
    ):
        slow = SlowEngine(paycheck_engine)
        service = PayrollRunService(slow, settings=settings)

        run = await service.run(employees, organization_id, pay_period)

        assert len(run.results) == len(employees)
        assert 1 < slow.max_in_flight <= settings.max_concurrency

    async def test_duplicate_ids_computed_once(
        self, paycheck_engine, settings, employees, organization_id, pay_period
    ):
        slow = SlowEngine(paycheck_engine, delay=0)
        service = PayrollRunService(slow, settings=settings)

        await service.run([employees[0], employees[0]], organization_id, pay_period)

        assert slow.started == [employees[0]]

    async def test_employee_timeout(
        self, paycheck_engine, settings, employees, organization_id, pay_period
    ):
        slow = SlowEngine(paycheck_engine, delay=1)
        service = PayrollRunService(
            slow, settings=replace(settings, employee_timeout_seconds=0.01)
        )

        run = await service.run(employees[:2], organization_id, pay_period)

        assert run.results == {}
        assert {f.kind for f in run.failures.values()} == {"timeout"}

    async def test_unexpected_error_is_internal_failure(
        self, paycheck_engine, settings, employees, organization_id, pay_period
    ):
        broken = SlowEngine(paycheck_engine, delay=0, error=RuntimeError("store unavailable"))
        service = PayrollRunService(broken, settings=settings)

        run = await service.run(employees[:1], organization_id, pay_period)

        failure = run.failures[employees[0]]
        assert failure.kind == "internal"
        assert failure.message == "store unavailable"

    async def test_cancelled_before_start_skips_everyone(
        self, paycheck_engine, settings, employees, organization_id, pay_period
    ):
        cancel = asyncio.Event()
        cancel.set()
        service = PayrollRunService(paycheck_engine, settings=settings)

        run = await service.run(employees, organization_id, pay_period, cancel_event=cancel)

        assert run.cancelled is True
        assert sorted(run.skipped) == sorted(employees)
        assert run.results == {}

    async def test_cancel_lets_in_flight_employees_finish(
        self, paycheck_engine, settings, employees, organization_id, pay_period
    ):
        cancel = asyncio.Event()
        slow = SlowEngine(paycheck_engine, delay=0.05)
        service = PayrollRunService(slow, settings=replace(settings, max_concurrency=2))

        async def cancel_soon():
            await asyncio.sleep(0.01)
            cancel.set()

        run, _ = await asyncio.gather(
            service.run(employees, organization_id, pay_period, cancel_event=cancel),
            cancel_soon(),
        )

        assert run.cancelled is True
        assert len(run.results) == 2
        assert len(run.skipped) == len(employees) - 2
        assert set(run.results).isdisjoint(run.skipped)

    async def test_run_deadline_skips_unstarted(
        self, paycheck_engine, settings, employees, organization_id, pay_period
    ):
        service = PayrollRunService(
            paycheck_engine, settings=replace(settings, run_timeout_seconds=0)
        )

        run = await service.run(employees, organization_id, pay_period)

        assert run.timed_out is True
        assert len(run.skipped) == len(employees)

    async def test_results_committed(
        self, paycheck_engine, settings, employees, organization_id, pay_period
    ):
        commits = RecordingCommitService()
        service = PayrollRunService(paycheck_engine, commit_service=commits, settings=settings)

        run = await service.run(employees[:3], organization_id, pay_period)

        assert sorted(run.committed) == sorted(employees[:3])
        assert sorted(commits.committed) == sorted(r.calculation_id for r in run.results.values())

    async def test_commit_conflict_becomes_failure(
        self, paycheck_engine, settings, employees, organization_id, pay_period
    ):
        commits = RecordingCommitService(error=ConcurrencyError("usage changed", stage="commit"))
        service = PayrollRunService(paycheck_engine, commit_service=commits, settings=settings)

        run = await service.run(employees[:1], organization_id, pay_period)

        assert run.results == {}
        assert run.committed == []
        failure = run.failures[employees[0]]
        assert failure.kind == "concurrency_error"
        assert failure.stage == "commit"


class TestRunRetry:
    """Running the same period again after a successful commit."""

    @pytest.fixture
    def sql_engine(self, structure_store, tax_store, session_factory, settings):
        return PaycheckEngine(
            structure_store,
            tax_store,
            SqlAllowanceStore(session_factory),
            settings=settings,
            today=lambda: date(2024, 1, 15),
        )

    async def test_committed_employees_are_not_recomputed(
        self, sql_engine, session_factory, settings, assign_structure, organization_id, pay_period
    ):
        employee_id = uuid4()
        assign_structure(employee_id, [BASE_SALARY, PENSION])
        service = PayrollRunService(
            sql_engine, commit_service=UsageCommitService(session_factory), settings=settings
        )

        first = await service.run([employee_id], organization_id, pay_period)
        second = await service.run([employee_id], organization_id, pay_period)

        assert first.committed == [employee_id]
        assert second.failures == {}
        assert second.results == {}
        assert second.already_committed == [employee_id]
        usage = await SqlAllowanceStore(session_factory).get_usage(
            employee_id, "deduction:PENSION", 2024, organization_id
        )
        assert usage.amount_used == Decimal("50")
        assert usage.version == 1

    async def test_only_new_employees_are_computed(
        self, sql_engine, session_factory, settings, assign_structure, organization_id, pay_period
    ):
        paid, new = uuid4(), uuid4()
        assign_structure(paid, [BASE_SALARY, PENSION])
        assign_structure(new, [BASE_SALARY, PENSION])
        service = PayrollRunService(
            sql_engine, commit_service=UsageCommitService(session_factory), settings=settings
        )

        await service.run([paid], organization_id, pay_period)
        run = await service.run([paid, new], organization_id, pay_period)

        assert run.already_committed == [paid]
        assert list(run.results) == [new]
        assert run.committed == [new]
