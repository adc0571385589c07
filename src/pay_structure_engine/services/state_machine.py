"""Paycheck computation lifecycle with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TypeVar

from pay_structure_engine.errors import ComputationError

E = TypeVar("E", bound=Exception)


class PaycheckStage(str, Enum):
    """Paycheck computation stages."""

    PENDING = "pending"
    RESOLVING = "resolving"
    EVALUATING = "evaluating"
    TAX_APPLYING = "tax_applying"
    DEDUCTION_APPLYING = "deduction_applying"
    AGGREGATED = "aggregated"
    FAILED = "failed"


class InvalidTransitionError(Exception):
    """Raised when an invalid stage transition is attempted."""

    def __init__(self, from_stage: str, to_stage: str, reason: str | None = None):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.reason = reason
        msg = f"Invalid transition from '{from_stage}' to '{to_stage}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PaycheckStateMachine:
    """State machine for one employee's paycheck computation.

    Allowed transitions:
    - pending → resolving
    - resolving → evaluating
    - evaluating → tax_applying
    - tax_applying → deduction_applying
    - deduction_applying → aggregated
    - any non-terminal stage → failed

    Stages never repeat; a failed or aggregated paycheck is recomputed from
    a new machine.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PaycheckStage.PENDING: [PaycheckStage.RESOLVING, PaycheckStage.FAILED],
        PaycheckStage.RESOLVING: [PaycheckStage.EVALUATING, PaycheckStage.FAILED],
        PaycheckStage.EVALUATING: [PaycheckStage.TAX_APPLYING, PaycheckStage.FAILED],
        PaycheckStage.TAX_APPLYING: [PaycheckStage.DEDUCTION_APPLYING, PaycheckStage.FAILED],
        PaycheckStage.DEDUCTION_APPLYING: [PaycheckStage.AGGREGATED, PaycheckStage.FAILED],
        PaycheckStage.AGGREGATED: [],  # Terminal
        PaycheckStage.FAILED: [],  # Terminal
    }

    TERMINAL = {PaycheckStage.AGGREGATED, PaycheckStage.FAILED}

    def __init__(self, stage: PaycheckStage = PaycheckStage.PENDING):
        self.stage = stage
        self.history: list[PaycheckStage] = [stage]
        self.error: Exception | None = None

    @classmethod
    def can_transition(cls, from_stage: str, to_stage: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_stage, [])
        return to_stage in allowed

    @classmethod
    def validate_transition(cls, from_stage: str, to_stage: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_stage, to_stage):
            raise InvalidTransitionError(from_stage, to_stage)

    @classmethod
    def get_next_stages(cls, current_stage: str) -> list[str]:
        """Get list of valid next stages from current stage."""
        return cls.VALID_TRANSITIONS.get(current_stage, [])

    @classmethod
    def is_terminal(cls, stage: str) -> bool:
        return stage in cls.TERMINAL

    def advance(self, to_stage: PaycheckStage) -> None:
        """Move to the next stage."""
        if to_stage == PaycheckStage.FAILED:
            raise InvalidTransitionError(
                self.stage, to_stage, "use fail() so the error is recorded"
            )
        self.validate_transition(self.stage, to_stage)
        self.stage = to_stage
        self.history.append(to_stage)

    def fail(self, error: E) -> E:
        """Record a failure at the current stage.

        The error keeps its original kind; for computation errors the stage
        it happened in is attached if the raiser did not set one.
        """
        failed_in = self.stage
        self.validate_transition(failed_in, PaycheckStage.FAILED)
        if isinstance(error, ComputationError):
            error.with_context(stage=failed_in.value)
        self.stage = PaycheckStage.FAILED
        self.history.append(PaycheckStage.FAILED)
        self.error = error
        return error
