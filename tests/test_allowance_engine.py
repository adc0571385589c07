"""Tests for tax-free allowances and deduction caps."""

from decimal import Decimal
from uuid import uuid4

import pytest

from pay_structure_engine.calculators.allowance_engine import (
    DeductionEngine,
    PendingDeduction,
    apply_deduction,
    deduction_usage_key,
    non_taxable_earning,
    split_taxable_earning,
)
from pay_structure_engine.calculators.types import (
    AllowanceDefinition,
    ComponentCategory,
    DeductionPolicy,
    EvaluatedComponentResult,
    UsageSnapshot,
)
from pay_structure_engine.errors import IntegrityError

EMPLOYEE_ID = uuid4()


def allowance(allowance_type="holiday_allowance", amount="1000", **kwargs) -> AllowanceDefinition:
    return AllowanceDefinition(
        allowance_id=uuid4(),
        allowance_type=allowance_type,
        amount=Decimal(amount),
        country="SR",
        **kwargs,
    )


def usage(key: str, used: str = "0", version: int = 0) -> UsageSnapshot:
    return UsageSnapshot(
        employee_id=EMPLOYEE_ID,
        usage_key=key,
        year=2024,
        amount_used=Decimal(used),
        version=version,
    )


def deduction(code: str, amount: str, **policy) -> PendingDeduction:
    return PendingDeduction(
        result=EvaluatedComponentResult(
            component_code=code,
            component_name=code.title(),
            category=ComponentCategory.DEDUCTION,
            amount=Decimal(amount),
        ),
        policy=DeductionPolicy(**policy),
    )


class TestAllowanceSplit:
    """Splitting a taxable earning into tax-free and taxable parts."""

    def test_partially_used_allowance(self):
        """950 of 1000 already used: only 50 of a 100 earning is tax-free."""
        split = split_taxable_earning(
            Decimal("100"), allowance(), usage("holiday_allowance", "950", version=3)
        )
        assert split.tax_free == Decimal("50.00")
        assert split.taxable == Decimal("50.00")
        assert split.capped is True
        assert split.new_usage.amount_used == Decimal("1000.00")
        assert split.new_usage.version == 3

    def test_exhausted_allowance(self):
        split = split_taxable_earning(
            Decimal("100"), allowance(), usage("holiday_allowance", "1000")
        )
        assert split.tax_free == Decimal("0.00")
        assert split.taxable == Decimal("100")

    def test_earning_within_allowance(self):
        split = split_taxable_earning(Decimal("400"), allowance(), usage("holiday_allowance"))
        assert split.tax_free == Decimal("400.00")
        assert split.taxable == Decimal("0.00")
        assert split.capped is False
        assert split.metadata() == {"tax_free_amount": "400.00", "taxable_amount": "0.00"}

    def test_percentage_allowance(self):
        split = split_taxable_earning(
            Decimal("400"), allowance("bonus_gratuity", "25", is_percentage=True), None
        )
        assert split.tax_free == Decimal("100.00")
        assert split.taxable == Decimal("300.00")
        assert split.new_usage is None

    def test_no_allowance_means_fully_taxable(self):
        split = split_taxable_earning(Decimal("250"), None, None)
        assert split.tax_free == Decimal("0")
        assert split.taxable == Decimal("250")

    def test_tax_free_sum_only_for_residents(self):
        snapshot = usage("tax_free_sum_monthly")
        split = split_taxable_earning(
            Decimal("300"),
            allowance("tax_free_sum_monthly", "250"),
            snapshot,
            is_resident=False,
        )
        assert split.tax_free == Decimal("0")
        assert split.new_usage is snapshot

    def test_holiday_allowance_applies_to_non_residents(self):
        split = split_taxable_earning(
            Decimal("300"), allowance(), usage("holiday_allowance"), is_resident=False
        )
        assert split.tax_free == Decimal("300.00")

    def test_fixed_allowance_needs_usage(self):
        with pytest.raises(IntegrityError):
            split_taxable_earning(Decimal("100"), allowance(), None)

    def test_non_taxable_earning(self):
        split = non_taxable_earning(Decimal("75"))
        assert split.tax_free == Decimal("75")
        assert split.taxable == Decimal("0")


class TestDeductionCaps:
    """Clipping order: per payroll, then annual headroom, then pay left."""

    def test_uncapped(self):
        applied = apply_deduction(deduction("UNION", "25"), Decimal("1000"), None)
        assert applied.amount == Decimal("25.00")
        assert applied.capped is False
        assert applied.metadata() == {}

    def test_max_per_payroll(self):
        applied = apply_deduction(
            deduction("LOAN", "150", max_per_payroll=Decimal("100")), Decimal("1000"), None
        )
        assert applied.amount == Decimal("100.00")
        assert applied.cap_reason == "max_per_payroll"

    def test_annual_headroom(self):
        applied = apply_deduction(
            deduction("PENSION", "50", max_annual=Decimal("500")),
            Decimal("3000"),
            usage("deduction:PENSION", "480"),
        )
        assert applied.amount == Decimal("20.00")
        assert applied.cap_reason == "max_annual"
        assert applied.new_ytd_usage.amount_used == Decimal("500.00")
        assert applied.metadata() == {
            "capped": True,
            "cap_reason": "max_annual",
            "requested_amount": "50",
        }

    def test_annual_cap_clips_to_remaining_headroom(self):
        """maxAnnual 1000 with 950 used leaves 50 of a configured 100."""
        applied = apply_deduction(
            deduction("SAVINGS", "100", max_annual=Decimal("1000")),
            Decimal("3000"),
            usage("deduction:SAVINGS", "950", version=2),
        )
        assert applied.amount == Decimal("50.00")
        assert applied.cap_reason == "max_annual"
        assert applied.new_ytd_usage.amount_used == Decimal("1000.00")
        assert applied.new_ytd_usage.version == 2

    def test_insufficient_pay_applied_last(self):
        applied = apply_deduction(
            deduction("LOAN", "150", max_per_payroll=Decimal("100")), Decimal("30"), None
        )
        assert applied.amount == Decimal("30.00")
        assert applied.cap_reason == "insufficient_pay"

    def test_never_negative(self):
        applied = apply_deduction(deduction("REFUND", "-40"), Decimal("1000"), None)
        assert applied.amount == Decimal("0.00")

    def test_annual_cap_needs_usage(self):
        with pytest.raises(IntegrityError):
            apply_deduction(
                deduction("PENSION", "50", max_annual=Decimal("500")), Decimal("3000"), None
            )


class TestDeductionEngine:
    def test_priority_order_against_available_pay(self):
        outcome = DeductionEngine().apply(
            [
                deduction("SAVINGS", "50", priority=2),
                deduction("GARNISHMENT", "80", priority=1),
            ],
            Decimal("100"),
            {},
        )
        assert [r.component_code for r in outcome.results] == ["GARNISHMENT", "SAVINGS"]
        garnishment, savings = outcome.results
        assert garnishment.amount == Decimal("80.00")
        assert savings.amount == Decimal("20.00")
        assert savings.metadata["cap_reason"] == "insufficient_pay"
        assert outcome.total == Decimal("100.00")

    def test_usage_returned_by_key(self):
        key = deduction_usage_key("PENSION")
        outcome = DeductionEngine().apply(
            [deduction("PENSION", "50", is_pre_tax=True, max_annual=Decimal("500"))],
            Decimal("3000"),
            {key: usage(key, "100")},
        )
        assert outcome.usage[key].amount_used == Decimal("150.00")
        [line] = outcome.results
        assert line.metadata["is_pre_tax"] is True
        assert line.metadata["priority"] == 100

    def test_nothing_available(self):
        outcome = DeductionEngine().apply([deduction("UNION", "25")], Decimal("-10"), {})
        assert outcome.total == Decimal("0.00")
