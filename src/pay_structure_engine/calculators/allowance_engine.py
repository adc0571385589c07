"""Tax-free allowances and deduction caps.

Everything here takes immutable usage snapshots and returns new ones. The
caller collects the new snapshots and commits them only once the whole
paycheck has been computed.

Caps are never errors: amounts are clipped and the clipping is recorded in
the result metadata so audit screens can show "capped".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Sequence

from pay_structure_engine.calculators.money import ZERO, percent_of, round_money
from pay_structure_engine.calculators.types import (
    AllowanceDefinition,
    DeductionPolicy,
    EvaluatedComponentResult,
    UsageSnapshot,
)
from pay_structure_engine.errors import IntegrityError

# Allowance types whose limit applies per pay period rather than per year
PERIODIC_ALLOWANCE_TYPES = frozenset({"tax_free_sum_monthly"})
# Tax-free sums are only granted to residents
RESIDENT_ONLY_PREFIX = "tax_free_sum"

KNOWN_ALLOWANCE_TYPES = frozenset(
    {"tax_free_sum_monthly", "tax_free_sum_annual", "holiday_allowance", "bonus_gratuity"}
)


def deduction_usage_key(component_code: str) -> str:
    return f"deduction:{component_code}"


def is_periodic_allowance(allowance_type: str) -> bool:
    return allowance_type in PERIODIC_ALLOWANCE_TYPES


# ===== Allowances =====


@dataclass(frozen=True)
class AllowanceApplication:
    """Tax-free / taxable split of one earning."""

    tax_free: Decimal
    taxable: Decimal
    new_usage: UsageSnapshot | None = None
    capped: bool = False

    def metadata(self) -> dict[str, object]:
        meta: dict[str, object] = {
            "tax_free_amount": str(self.tax_free),
            "taxable_amount": str(self.taxable),
        }
        if self.capped:
            meta["allowance_capped"] = True
        return meta


def split_taxable_earning(
    amount: Decimal,
    allowance: AllowanceDefinition | None,
    usage: UsageSnapshot | None,
    is_resident: bool = True,
) -> AllowanceApplication:
    """Split an earning into tax-free and taxable portions.

    A fixed allowance is a limit shared through ``usage``: the tax-free part
    is ``min(amount, allowance - used)``. A percentage allowance makes that
    share of the amount tax-free. Without an applicable allowance everything
    is taxable.
    """
    amount = max(amount, ZERO)
    if allowance is None:
        return AllowanceApplication(tax_free=ZERO, taxable=amount, new_usage=usage)

    if not is_resident and allowance.allowance_type.startswith(RESIDENT_ONLY_PREFIX):
        return AllowanceApplication(tax_free=ZERO, taxable=amount, new_usage=usage)

    if allowance.is_percentage:
        limit = percent_of(amount, allowance.amount)
    else:
        if usage is None:
            raise IntegrityError(
                f"No usage snapshot loaded for allowance {allowance.allowance_type}"
            )
        limit = max(allowance.amount - usage.amount_used, ZERO)

    tax_free = round_money(min(amount, limit))
    capped = not allowance.is_percentage and tax_free < amount
    new_usage = usage.with_increment(tax_free) if usage is not None else None
    return AllowanceApplication(
        tax_free=tax_free,
        taxable=amount - tax_free,
        new_usage=new_usage,
        capped=capped,
    )


def non_taxable_earning(amount: Decimal) -> AllowanceApplication:
    """Earnings flagged non-taxable are wholly tax-free."""
    return AllowanceApplication(tax_free=amount, taxable=ZERO)


# ===== Deductions =====


@dataclass(frozen=True)
class PendingDeduction:
    """An evaluated deduction line waiting for its caps to be applied."""

    result: EvaluatedComponentResult
    policy: DeductionPolicy
    sequence_order: int = 0

    @property
    def code(self) -> str:
        return self.result.component_code

    @property
    def usage_key(self) -> str:
        return deduction_usage_key(self.code)

    def sort_key(self) -> tuple[int, int, str]:
        return (self.policy.priority, self.sequence_order, self.code)


@dataclass(frozen=True)
class DeductionApplication:
    amount: Decimal
    new_ytd_usage: UsageSnapshot | None
    capped: bool = False
    cap_reason: str | None = None
    requested: Decimal = ZERO

    def metadata(self) -> dict[str, object]:
        if not self.capped:
            return {}
        return {
            "capped": True,
            "cap_reason": self.cap_reason,
            "requested_amount": str(self.requested),
        }


def apply_deduction(
    deduction: PendingDeduction,
    gross_pay: Decimal,
    ytd_usage: UsageSnapshot | None,
) -> DeductionApplication:
    """Clip a deduction to its caps.

    Order of clipping: ``max_per_payroll``, then the annual headroom
    ``max_annual - ytd_usage``, then the pay still available. The result is
    never negative.
    """
    policy = deduction.policy
    requested = max(deduction.result.amount, ZERO)
    amount = requested
    reason = None

    if policy.max_per_payroll is not None and amount > policy.max_per_payroll:
        amount = policy.max_per_payroll
        reason = "max_per_payroll"

    if policy.max_annual is not None:
        if ytd_usage is None:
            raise IntegrityError(
                f"No year-to-date usage loaded for deduction {deduction.code}"
            )
        headroom = max(policy.max_annual - ytd_usage.amount_used, ZERO)
        if amount > headroom:
            amount = headroom
            reason = "max_annual"

    available = max(gross_pay, ZERO)
    if amount > available:
        amount = available
        reason = "insufficient_pay"

    amount = round_money(amount)
    new_usage = ytd_usage.with_increment(amount) if ytd_usage is not None else None
    return DeductionApplication(
        amount=amount,
        new_ytd_usage=new_usage,
        capped=reason is not None,
        cap_reason=reason,
        requested=requested,
    )


@dataclass
class DeductionOutcome:
    results: list[EvaluatedComponentResult] = field(default_factory=list)
    usage: dict[str, UsageSnapshot] = field(default_factory=dict)

    @property
    def total(self) -> Decimal:
        return sum((r.amount for r in self.results), ZERO)


class DeductionEngine:
    """Applies a group of deductions in priority order against available pay."""

    def apply(
        self,
        deductions: Sequence[PendingDeduction],
        available: Decimal,
        usage: Mapping[str, UsageSnapshot],
    ) -> DeductionOutcome:
        outcome = DeductionOutcome()
        remaining = max(available, ZERO)

        for deduction in sorted(deductions, key=PendingDeduction.sort_key):
            applied = apply_deduction(deduction, remaining, usage.get(deduction.usage_key))
            remaining -= applied.amount
            if applied.new_ytd_usage is not None:
                outcome.usage[deduction.usage_key] = applied.new_ytd_usage
            outcome.results.append(
                deduction.result.with_amount(
                    applied.amount,
                    is_pre_tax=deduction.policy.is_pre_tax,
                    priority=deduction.policy.priority,
                    **applied.metadata(),
                )
            )
        return outcome
