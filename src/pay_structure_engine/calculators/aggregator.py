"""Gross-to-net aggregation.

The summary built here is the only source of paycheck totals. Reporting and
the API read it instead of summing lines themselves.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from pay_structure_engine.calculators.money import ZERO, round_money
from pay_structure_engine.calculators.types import (
    ComponentCategory,
    EvaluatedComponentResult,
    PaycheckComponents,
    PaycheckSummary,
)


def _total(results: Iterable[EvaluatedComponentResult]) -> Decimal:
    return round_money(sum((r.amount for r in results), ZERO))


def _split_total(earnings: Iterable[EvaluatedComponentResult], key: str) -> Decimal:
    total = ZERO
    for result in earnings:
        value = result.metadata.get(key)
        if value is not None:
            total += Decimal(str(value))
    return round_money(total)


class PaycheckAggregator:
    """Groups evaluated lines by category and computes the summary."""

    def aggregate(self, results: Iterable[EvaluatedComponentResult]) -> PaycheckComponents:
        earnings: list[EvaluatedComponentResult] = []
        taxes: list[EvaluatedComponentResult] = []
        deductions: list[EvaluatedComponentResult] = []

        for result in results:
            if result.category == ComponentCategory.EARNING:
                earnings.append(result)
            elif result.category == ComponentCategory.TAX:
                taxes.append(result)
            else:
                deductions.append(result)

        total_earnings = _total(earnings)
        total_taxes = _total(taxes)
        total_deductions = _total(deductions)

        summary = PaycheckSummary(
            total_earnings=total_earnings,
            total_tax_free=_split_total(earnings, "tax_free_amount"),
            total_taxable=_split_total(earnings, "taxable_amount"),
            total_taxes=total_taxes,
            total_deductions=total_deductions,
            net_pay=total_earnings - total_taxes - total_deductions,
        )
        return PaycheckComponents(
            earnings=tuple(earnings),
            taxes=tuple(taxes),
            deductions=tuple(deductions),
            summary=summary,
        )


def effective_tax_rate(summary: PaycheckSummary) -> Decimal:
    """Taxes as a percentage of total earnings, 0 when nothing was earned."""
    if summary.total_earnings <= 0:
        return ZERO
    return round_money(summary.total_taxes / summary.total_earnings * 100)
