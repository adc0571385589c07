"""Bracket and flat-rate tax arithmetic.

The module-level functions are pure and never touch rule-set state.
TaxCalculator applies a jurisdiction's rule sets to one paycheck's taxable
income and returns tax lines plus the usage snapshots for annually capped
taxes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Mapping, Sequence

from pay_structure_engine.calculators.money import ZERO, percent_of, round_money
from pay_structure_engine.calculators.types import (
    BracketSlice,
    ComponentCategory,
    EvaluatedComponentResult,
    ResultSource,
    TaxBracket,
    TaxCalculationMethod,
    TaxCalculationMode,
    TaxRuleSet,
    UsageSnapshot,
)
from pay_structure_engine.errors import ConfigurationError, IntegrityError, ValidationError

logger = logging.getLogger(__name__)


def _ordered(brackets: Iterable[TaxBracket]) -> list[TaxBracket]:
    return sorted(brackets, key=lambda b: b.bracket_order)


def validate_brackets(brackets: Sequence[TaxBracket]) -> None:
    """Check a bracket table is usable.

    Sorted by order, brackets must be contiguous (each starts where the
    previous ended), non-empty in width, and exactly the last one unbounded.
    """
    if not brackets:
        raise ConfigurationError("Bracket table is empty")

    ordered = _ordered(brackets)
    orders = [b.bracket_order for b in ordered]
    if len(set(orders)) != len(orders):
        raise ConfigurationError("Bracket table has duplicate bracket_order values")

    unbounded = [b for b in ordered if b.income_max is None]
    if len(unbounded) != 1:
        raise ConfigurationError(
            f"Bracket table must have exactly one unbounded bracket, found {len(unbounded)}"
        )
    if ordered[-1].income_max is not None:
        raise ConfigurationError("Only the last bracket may be unbounded")

    for bracket in ordered:
        if bracket.rate_percentage < 0 or bracket.fixed_amount < 0:
            raise ConfigurationError(
                f"Bracket {bracket.bracket_order} has a negative rate or fixed amount"
            )
        if bracket.income_max is not None and bracket.income_max <= bracket.income_min:
            raise ConfigurationError(
                f"Bracket {bracket.bracket_order} has income_max <= income_min"
            )

    for previous, current in zip(ordered, ordered[1:]):
        if current.income_min < previous.income_max:
            raise ConfigurationError(
                f"Brackets {previous.bracket_order} and {current.bracket_order} overlap"
            )
        if current.income_min > previous.income_max:
            raise ConfigurationError(
                f"Gap between brackets {previous.bracket_order} and {current.bracket_order}"
            )


def calculate_bracket_breakdown(
    income: Decimal, brackets: Sequence[TaxBracket]
) -> list[BracketSlice]:
    """Per-bracket slices of ``income``, unrounded.

    Each bracket taxes ``min(remaining, income_max - income_min)`` (all of the
    remainder when unbounded) at ``rate / 100`` plus its fixed amount.
    """
    if income < 0:
        raise ValidationError(f"Taxable income cannot be negative: {income}")
    if not brackets:
        logger.warning("Empty bracket table; no tax computed on income %s", income)
        return []

    slices: list[BracketSlice] = []
    remaining = income
    for bracket in _ordered(brackets):
        if remaining <= 0:
            break
        if bracket.income_max is None:
            taxable = remaining
        else:
            taxable = min(remaining, bracket.income_max - bracket.income_min)
        if taxable <= 0:
            continue
        tax = percent_of(taxable, bracket.rate_percentage) + bracket.fixed_amount
        slices.append(
            BracketSlice(
                bracket_order=bracket.bracket_order,
                taxable_amount=taxable,
                rate_percentage=bracket.rate_percentage,
                fixed_amount=bracket.fixed_amount,
                tax=tax,
            )
        )
        remaining -= taxable
    return slices


def calculate_bracket_tax(income: Decimal, brackets: Sequence[TaxBracket]) -> Decimal:
    """Progressive tax on ``income``, rounded once at the end."""
    breakdown = calculate_bracket_breakdown(income, brackets)
    return round_money(sum((s.tax for s in breakdown), ZERO))


def calculate_flat_rate_tax(
    income: Decimal, rate_percentage: Decimal, cap: Decimal | None = None
) -> Decimal:
    """``income * rate / 100``, clipped at ``cap`` when given."""
    if income < 0:
        raise ValidationError(f"Taxable income cannot be negative: {income}")
    tax = percent_of(income, rate_percentage)
    if cap is not None:
        tax = min(tax, max(cap, ZERO))
    return round_money(tax)


# ===== Paycheck-level calculation =====


@dataclass
class TaxApplication:
    """Tax lines for one paycheck and the updated annual-cap usage."""

    results: list[EvaluatedComponentResult] = field(default_factory=list)
    usage: dict[str, UsageSnapshot] = field(default_factory=dict)

    @property
    def total(self) -> Decimal:
        return sum((r.amount for r in self.results), ZERO)


def reduce_pro_rata(parts: Mapping[str, Decimal], reduction: Decimal) -> dict[str, Decimal]:
    """Spread ``reduction`` over ``parts`` in proportion to their size.

    Values are left unrounded; the reduction never pushes a part below zero.
    """
    total = sum(parts.values(), ZERO)
    if reduction <= 0 or total <= 0:
        return dict(parts)
    if reduction >= total:
        return {code: ZERO for code in parts}
    remaining_share = (total - reduction) / total
    return {code: amount * remaining_share for code, amount in parts.items()}


class TaxCalculator:
    """Applies tax rule sets to taxable income.

    ``taxable_parts`` maps earning component codes to their taxable portion
    (after allowances). Pre-tax deductions reduce those parts pro rata
    before any tax is computed.
    """

    def calculate(
        self,
        taxable_parts: Mapping[str, Decimal],
        rule_sets: Sequence[TaxRuleSet],
        ytd_usage: Mapping[str, UsageSnapshot] | None = None,
        pre_tax_deductions: Decimal = ZERO,
    ) -> TaxApplication:
        ytd_usage = ytd_usage or {}
        parts = reduce_pro_rata(taxable_parts, pre_tax_deductions)
        # Exact total; the pro-rata parts may carry division residue
        reduction = max(pre_tax_deductions, ZERO)
        total_income = max(sum(taxable_parts.values(), ZERO) - reduction, ZERO)

        application = TaxApplication()
        for rule_set in sorted(rule_sets, key=lambda r: (r.tax_type, str(r.rule_set_id))):
            application.results.append(
                self._apply_rule_set(rule_set, parts, total_income, ytd_usage, application)
            )
        return application

    def _apply_rule_set(
        self,
        rule_set: TaxRuleSet,
        parts: Mapping[str, Decimal],
        total_income: Decimal,
        ytd_usage: Mapping[str, UsageSnapshot],
        application: TaxApplication,
    ) -> EvaluatedComponentResult:
        mode = rule_set.effective_mode
        metadata: dict = {
            "rule_set_id": str(rule_set.rule_set_id),
            "calculation_method": rule_set.calculation_method.value,
            "calculation_mode": mode.value,
            "taxable_income": str(round_money(total_income)),
        }

        if rule_set.calculation_method == TaxCalculationMethod.BRACKET:
            validate_brackets(rule_set.brackets)
        elif rule_set.flat_rate is None:
            raise ConfigurationError(f"Flat tax rule set {rule_set.tax_name} has no rate")

        if mode == TaxCalculationMode.COMPONENT_BASED:
            if rule_set.calculation_method == TaxCalculationMethod.BRACKET:
                logger.warning(
                    "Tax %s uses bracket method with component_based mode; "
                    "each component is taxed from the lowest bracket",
                    rule_set.tax_type,
                )
            per_component = {
                code: self._tax_on(rule_set, amount) for code, amount in sorted(parts.items())
            }
            tax = sum(per_component.values(), ZERO)
            metadata["component_taxes"] = {code: str(t) for code, t in per_component.items()}
        else:
            tax = self._tax_on(rule_set, total_income)
            if rule_set.calculation_method == TaxCalculationMethod.BRACKET:
                slices = calculate_bracket_breakdown(total_income, rule_set.brackets)
                metadata["bracket_breakdown"] = [s.to_dict() for s in slices]
            if mode == TaxCalculationMode.PROPORTIONAL_DISTRIBUTION:
                metadata["distribution"] = _distribute(tax, parts, total_income)

        if rule_set.annual_cap is not None:
            tax = self._clip_to_annual_cap(rule_set, tax, ytd_usage, application, metadata)

        return EvaluatedComponentResult(
            component_code=rule_set.tax_type.upper(),
            component_name=rule_set.tax_name,
            category=ComponentCategory.TAX,
            amount=tax,
            source=ResultSource.SYSTEM,
            metadata=metadata,
        )

    def _tax_on(self, rule_set: TaxRuleSet, income: Decimal) -> Decimal:
        if rule_set.calculation_method == TaxCalculationMethod.BRACKET:
            return calculate_bracket_tax(income, rule_set.brackets)
        return calculate_flat_rate_tax(income, rule_set.flat_rate)

    def _clip_to_annual_cap(
        self,
        rule_set: TaxRuleSet,
        tax: Decimal,
        ytd_usage: Mapping[str, UsageSnapshot],
        application: TaxApplication,
        metadata: dict,
    ) -> Decimal:
        snapshot = ytd_usage.get(rule_set.usage_key)
        if snapshot is None:
            raise IntegrityError(
                f"No year-to-date usage loaded for capped tax {rule_set.tax_type}"
            )
        headroom = max(rule_set.annual_cap - snapshot.amount_used, ZERO)
        if tax > headroom:
            metadata["capped"] = True
            metadata["cap_reason"] = "annual_cap"
            metadata["uncapped_amount"] = str(tax)
            tax = round_money(headroom)
        application.usage[rule_set.usage_key] = snapshot.with_increment(tax)
        return tax


def _distribute(
    tax: Decimal, parts: Mapping[str, Decimal], total_income: Decimal
) -> dict[str, str]:
    """Attribute ``tax`` to taxable parts pro rata; the last part absorbs rounding."""
    if total_income <= 0 or not parts:
        return {}
    codes = sorted(parts)
    shares: dict[str, str] = {}
    allocated = ZERO
    for code in codes[:-1]:
        share = round_money(tax * parts[code] / total_income)
        shares[code] = str(share)
        allocated += share
    shares[codes[-1]] = str(tax - allocated)
    return shares
