"""Tests for the paycheck computation state machine."""

import pytest

from pay_structure_engine.errors import EvaluationError
from pay_structure_engine.services.state_machine import (
    InvalidTransitionError,
    PaycheckStage,
    PaycheckStateMachine,
)

PIPELINE = [
    PaycheckStage.RESOLVING,
    PaycheckStage.EVALUATING,
    PaycheckStage.TAX_APPLYING,
    PaycheckStage.DEDUCTION_APPLYING,
    PaycheckStage.AGGREGATED,
]


class TestPaycheckStateMachine:
    """Test state machine transitions."""

    def test_valid_transitions(self):
        """Each stage leads to the next one."""
        assert PaycheckStateMachine.can_transition("pending", "resolving") is True
        assert PaycheckStateMachine.can_transition("resolving", "evaluating") is True
        assert PaycheckStateMachine.can_transition("evaluating", "tax_applying") is True
        assert PaycheckStateMachine.can_transition("tax_applying", "deduction_applying") is True
        assert PaycheckStateMachine.can_transition("deduction_applying", "aggregated") is True

    def test_invalid_transitions(self):
        """Stages are never skipped or repeated."""
        # Can't skip evaluation
        assert PaycheckStateMachine.can_transition("resolving", "tax_applying") is False

        # Can't go backwards
        assert PaycheckStateMachine.can_transition("tax_applying", "evaluating") is False

        # Terminal stages
        assert PaycheckStateMachine.can_transition("aggregated", "resolving") is False
        assert PaycheckStateMachine.can_transition("failed", "pending") is False

    def test_any_active_stage_can_fail(self):
        for stage in [PaycheckStage.PENDING, *PIPELINE[:-1]]:
            assert PaycheckStateMachine.can_transition(stage, PaycheckStage.FAILED) is True

    def test_validate_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            PaycheckStateMachine.validate_transition("pending", "aggregated")

        assert exc_info.value.from_stage == "pending"
        assert exc_info.value.to_stage == "aggregated"

    def test_get_next_stages(self):
        assert PaycheckStateMachine.get_next_stages("evaluating") == [
            PaycheckStage.TAX_APPLYING,
            PaycheckStage.FAILED,
        ]
        assert PaycheckStateMachine.get_next_stages("aggregated") == []

    def test_is_terminal(self):
        assert PaycheckStateMachine.is_terminal(PaycheckStage.AGGREGATED)
        assert PaycheckStateMachine.is_terminal(PaycheckStage.FAILED)
        assert not PaycheckStateMachine.is_terminal(PaycheckStage.EVALUATING)


class TestMachineInstance:
    def test_full_pipeline_history(self):
        machine = PaycheckStateMachine()
        for stage in PIPELINE:
            machine.advance(stage)
        assert machine.stage == PaycheckStage.AGGREGATED
        assert machine.history == [PaycheckStage.PENDING, *PIPELINE]

    def test_advance_out_of_order(self):
        machine = PaycheckStateMachine()
        with pytest.raises(InvalidTransitionError):
            machine.advance(PaycheckStage.EVALUATING)
        assert machine.stage == PaycheckStage.PENDING

    def test_failure_must_go_through_fail(self):
        machine = PaycheckStateMachine()
        with pytest.raises(InvalidTransitionError, match="use fail"):
            machine.advance(PaycheckStage.FAILED)

    def test_fail_records_stage_on_error(self):
        machine = PaycheckStateMachine()
        machine.advance(PaycheckStage.RESOLVING)
        machine.advance(PaycheckStage.EVALUATING)

        error = machine.fail(EvaluationError("Division by zero", component_code="RATIO"))

        assert error.stage == "evaluating"
        assert error.component_code == "RATIO"
        assert machine.stage == PaycheckStage.FAILED
        assert machine.error is error

    def test_fail_keeps_stage_set_by_raiser(self):
        machine = PaycheckStateMachine()
        machine.advance(PaycheckStage.RESOLVING)
        error = machine.fail(EvaluationError("boom", stage="custom"))
        assert error.stage == "custom"

    def test_fail_passes_other_exceptions_through(self):
        machine = PaycheckStateMachine()
        error = machine.fail(RuntimeError("store unavailable"))
        assert isinstance(error, RuntimeError)
        assert machine.stage == PaycheckStage.FAILED

    def test_cannot_fail_twice(self):
        machine = PaycheckStateMachine()
        machine.fail(RuntimeError("first"))
        with pytest.raises(InvalidTransitionError):
            machine.fail(RuntimeError("second"))
