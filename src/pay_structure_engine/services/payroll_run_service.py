"""Payroll run service - computes a batch of employees concurrently."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Mapping, Sequence
from uuid import UUID

from pay_structure_engine.calculators.money import ZERO
from pay_structure_engine.calculators.types import (
    PayInputs,
    PayPeriod,
    PaycheckFailure,
    PaycheckResult,
)
from pay_structure_engine.config import Settings, get_settings
from pay_structure_engine.errors import ComputationError, ConfigurationError

if TYPE_CHECKING:
    from pay_structure_engine.calculators.engine import PaycheckEngine
    from pay_structure_engine.services.commit_service import UsageCommitService

logger = logging.getLogger(__name__)


@dataclass
class PayrollRunResult:
    """Outcome of a payroll run.

    Every requested employee ends up in exactly one of ``results``,
    ``failures``, ``skipped`` or ``already_committed``.
    """

    results: dict[UUID, PaycheckResult] = field(default_factory=dict)
    failures: dict[UUID, PaycheckFailure] = field(default_factory=dict)
    skipped: list[UUID] = field(default_factory=list)
    committed: list[UUID] = field(default_factory=list)
    already_committed: list[UUID] = field(default_factory=list)
    cancelled: bool = False
    timed_out: bool = False

    @property
    def total_gross(self) -> Decimal:
        return sum((r.gross_pay for r in self.results.values()), ZERO)

    @property
    def total_net(self) -> Decimal:
        return sum((r.net_pay for r in self.results.values()), ZERO)


class PayrollRunService:
    """Runs the paycheck pipeline for many employees.

    Concurrency is bounded by ``max_concurrency``. Each employee gets
    ``employee_timeout_seconds``; the run as a whole gets
    ``run_timeout_seconds``. Once the run deadline passes or ``cancel_event``
    is set, employees that have not started are skipped while in-flight ones
    finish. When a commit service is given, each successful paycheck is
    committed as soon as it is computed, and employees whose period is
    already committed are not recomputed, so a run can be retried.

    The per-employee timeout can only fire at an ``await``: it bounds store
    I/O, not the synchronous component evaluation between awaits.
    """

    def __init__(
        self,
        engine: PaycheckEngine,
        commit_service: UsageCommitService | None = None,
        settings: Settings | None = None,
    ):
        self.engine = engine
        self.commit_service = commit_service
        self.settings = settings or get_settings()

    async def run(
        self,
        employee_ids: Sequence[UUID],
        organization_id: UUID,
        pay_period: PayPeriod,
        inputs_by_employee: Mapping[UUID, PayInputs] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> PayrollRunResult:
        inputs_by_employee = inputs_by_employee or {}
        run = PayrollRunResult()
        semaphore = asyncio.Semaphore(self.settings.max_concurrency)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.run_timeout_seconds
        pending = list(dict.fromkeys(employee_ids))
        if self.commit_service is not None:
            done = await self.commit_service.committed_employees(
                pending, organization_id, pay_period
            )
            run.already_committed = [e for e in pending if e in done]
            pending = [e for e in pending if e not in done]

        async def worker(employee_id: UUID) -> None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    run.cancelled = True
                    run.skipped.append(employee_id)
                    return
                if loop.time() >= deadline:
                    run.timed_out = True
                    run.skipped.append(employee_id)
                    return
                await self._process_employee(
                    run,
                    employee_id,
                    organization_id,
                    pay_period,
                    inputs_by_employee.get(employee_id),
                )

        # Shielded so an outer cancellation never interrupts a paycheck mid-pipeline
        await asyncio.shield(
            asyncio.gather(*(worker(employee_id) for employee_id in pending))
        )

        logger.info(
            "Payroll run for organization %s period %s..%s: %d computed, %d failed, "
            "%d skipped, %d already committed, gross %s, net %s",
            organization_id,
            pay_period.period_start,
            pay_period.period_end,
            len(run.results),
            len(run.failures),
            len(run.skipped),
            len(run.already_committed),
            run.total_gross,
            run.total_net,
        )
        return run

    async def _process_employee(
        self,
        run: PayrollRunResult,
        employee_id: UUID,
        organization_id: UUID,
        pay_period: PayPeriod,
        inputs: PayInputs | None,
    ) -> None:
        try:
            result = await asyncio.wait_for(
                self.engine.compute_paycheck(employee_id, organization_id, pay_period, inputs),
                timeout=self.settings.employee_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Paycheck for employee %s timed out after %ss",
                employee_id,
                self.settings.employee_timeout_seconds,
            )
            run.failures[employee_id] = PaycheckFailure(
                employee_id=employee_id,
                kind="timeout",
                message=(
                    f"Computation exceeded {self.settings.employee_timeout_seconds}s"
                ),
            )
            return
        except ConfigurationError as e:
            logger.warning(
                "Configuration error for employee %s in template %s: %s",
                employee_id,
                e.template or "<unresolved>",
                e.message,
            )
            run.failures[employee_id] = _failure(employee_id, e)
            return
        except ComputationError as e:
            logger.info("Paycheck failed for employee %s: %s", employee_id, e)
            run.failures[employee_id] = _failure(employee_id, e)
            return
        except Exception as e:
            logger.exception("Unexpected error computing paycheck for employee %s", employee_id)
            run.failures[employee_id] = PaycheckFailure(
                employee_id=employee_id, kind="internal", message=str(e)
            )
            return

        if self.commit_service is not None:
            try:
                written = await asyncio.shield(self.commit_service.commit(result))
            except ComputationError as e:
                run.failures[employee_id] = _failure(employee_id, e)
                return
            except Exception as e:
                logger.exception("Commit failed for employee %s", employee_id)
                run.failures[employee_id] = PaycheckFailure(
                    employee_id=employee_id, kind="internal", message=str(e), stage="commit"
                )
                return
            if written:
                run.committed.append(employee_id)

        run.results[employee_id] = result


def _failure(employee_id: UUID, error: ComputationError) -> PaycheckFailure:
    return PaycheckFailure(
        employee_id=employee_id,
        kind=error.kind,
        message=error.message,
        stage=error.stage,
        component_code=error.component_code,
    )
