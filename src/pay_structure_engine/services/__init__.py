"""Paycheck services."""

from pay_structure_engine.services.commit_service import (
    CalculationMismatchError,
    UsageCommitService,
)
from pay_structure_engine.services.payroll_run_service import PayrollRunResult, PayrollRunService
from pay_structure_engine.services.state_machine import (
    InvalidTransitionError,
    PaycheckStage,
    PaycheckStateMachine,
)

__all__ = [
    "CalculationMismatchError",
    "InvalidTransitionError",
    "PaycheckStage",
    "PaycheckStateMachine",
    "PayrollRunResult",
    "PayrollRunService",
    "UsageCommitService",
]
