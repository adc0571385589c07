"""Paycheck calculation engine - per-employee orchestrator."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Sequence
from uuid import UUID

from pay_structure_engine.calculators.aggregator import PaycheckAggregator
from pay_structure_engine.calculators.allowance_engine import (
    KNOWN_ALLOWANCE_TYPES,
    DeductionEngine,
    PendingDeduction,
    is_periodic_allowance,
    non_taxable_earning,
    split_taxable_earning,
)
from pay_structure_engine.calculators.components import FixedComponent, ResolvedComponent
from pay_structure_engine.calculators.evaluator import ComponentEvaluator, order_components
from pay_structure_engine.calculators.money import ZERO
from pay_structure_engine.calculators.resolver import ResolvedStructure, StructureResolver
from pay_structure_engine.calculators.tax_calculator import TaxCalculator
from pay_structure_engine.calculators.types import (
    AllowanceDefinition,
    ComponentCategory,
    EvaluatedComponentResult,
    PayInputs,
    PayPeriod,
    PaycheckResult,
    TaxRuleSet,
    UsageIncrement,
    UsageSnapshot,
)
from pay_structure_engine.config import Settings, get_settings
from pay_structure_engine.errors import (
    ComputationError,
    ConfigurationError,
    NotFoundError,
    require_organization,
)
from pay_structure_engine.services.state_machine import PaycheckStage, PaycheckStateMachine
from pay_structure_engine.stores.base import AllowanceStore, StructureStore, TaxRuleStore

logger = logging.getLogger(__name__)

BASE_COMPENSATION_CODES = frozenset({"BASE_SALARY", "REGULAR_PAY"})


@dataclass
class _UsageLedger:
    """Usage snapshots read for one paycheck and their running values.

    Periodic allowance pools live here too but are never committed.
    """

    loaded: dict[str, UsageSnapshot] = field(default_factory=dict)
    current: dict[str, UsageSnapshot] = field(default_factory=dict)
    periodic: dict[str, UsageSnapshot] = field(default_factory=dict)

    def update(self, snapshots: dict[str, UsageSnapshot]) -> None:
        self.current.update(snapshots)

    def increments(self) -> tuple[UsageIncrement, ...]:
        return tuple(
            UsageIncrement(previous=self.loaded[key], new_amount_used=self.current[key].amount_used)
            for key in sorted(self.loaded)
        )


class PaycheckEngine:
    """Computes one employee's paycheck.

    Pipeline (strict order, each stage uses the previous stage's results):
    1) Resolve the template version and overrides for the pay date
    2) Evaluate components in dependency order
    3) Split earnings into tax-free / taxable, apply pre-tax deductions,
       compute taxes
    4) Apply post-tax deductions against what is left
    5) Aggregate into the gross-to-net breakdown

    Nothing is written: usage changes are returned as increments for the
    caller to commit together with the paycheck.
    """

    def __init__(
        self,
        structure_store: StructureStore,
        tax_store: TaxRuleStore,
        allowance_store: AllowanceStore,
        settings: Settings | None = None,
        today: Callable[[], date] = date.today,
    ):
        self.structure_store = structure_store
        self.tax_store = tax_store
        self.allowance_store = allowance_store
        self.settings = settings or get_settings()
        self.resolver = StructureResolver(structure_store, today=today)
        self.evaluator = ComponentEvaluator()
        self.tax_calculator = TaxCalculator()
        self.deduction_engine = DeductionEngine()
        self.aggregator = PaycheckAggregator()

    async def compute_paycheck(
        self,
        employee_id: UUID,
        organization_id: UUID,
        pay_period: PayPeriod,
        inputs: PayInputs | None = None,
    ) -> PaycheckResult:
        """Run the full pipeline, raising a ComputationError on failure.

        The raised error carries the employee, the stage and, where known,
        the component that failed. No partial result is ever returned.
        """
        inputs = inputs or PayInputs()
        machine = PaycheckStateMachine()
        try:
            require_organization(organization_id)
            return await self._run(machine, employee_id, organization_id, pay_period, inputs)
        except ComputationError as e:
            raise machine.fail(e.with_context(employee_id=employee_id))
        except Exception as e:
            machine.fail(e)
            raise

    async def _run(
        self,
        machine: PaycheckStateMachine,
        employee_id: UUID,
        organization_id: UUID,
        pay_period: PayPeriod,
        inputs: PayInputs,
    ) -> PaycheckResult:
        as_of = pay_period.pay_date

        machine.advance(PaycheckStage.RESOLVING)
        structure = await self.resolver.resolve(employee_id, organization_id, as_of)

        machine.advance(PaycheckStage.EVALUATING)
        components = with_base_compensation(structure.components, inputs)
        try:
            ordered = order_components(components)
            evaluated = self.evaluator.evaluate(ordered, inputs)
        except ConfigurationError as e:
            e.template = structure.template.label
            raise
        definitions = {c.code: c.definition for c in ordered}

        machine.advance(PaycheckStage.TAX_APPLYING)
        country = inputs.country or self.settings.default_country
        ledger = _UsageLedger()
        allowances_used: dict[str, AllowanceDefinition | None] = {}

        earnings: list[EvaluatedComponentResult] = []
        taxable_parts: dict[str, Decimal] = {}
        for result in evaluated:
            if result.category != ComponentCategory.EARNING:
                continue
            split = await self._split_earning(
                result,
                definitions[result.component_code].allowance_type,
                employee_id,
                organization_id,
                pay_period,
                inputs,
                country,
                ledger,
                allowances_used,
            )
            earnings.append(split)
            if split.is_taxable:
                taxable_parts[result.component_code] = Decimal(split.metadata["taxable_amount"])

        gross = sum((r.amount for r in earnings), ZERO)
        pending = [
            PendingDeduction(
                result=r,
                policy=definitions[r.component_code].deduction,
                sequence_order=definitions[r.component_code].sequence_order,
            )
            for r in evaluated
            if r.category == ComponentCategory.DEDUCTION
        ]
        await self._load_deduction_usage(pending, employee_id, organization_id, pay_period, ledger)

        pre_tax = self.deduction_engine.apply(
            [d for d in pending if d.policy.is_pre_tax], gross, ledger.current
        )
        ledger.update(pre_tax.usage)

        rule_sets = await self.tax_store.get_applicable_rule_sets(
            country, inputs.state, inputs.locality, as_of, organization_id
        )
        taxable_income = sum(taxable_parts.values(), ZERO) - pre_tax.total
        if not rule_sets and taxable_income > 0:
            raise NotFoundError(
                f"No tax rule set applies to {country}"
                f"{'/' + inputs.state if inputs.state else ''} on {as_of}"
            )
        await self._load_tax_usage(rule_sets, employee_id, organization_id, pay_period, ledger)
        taxes = self.tax_calculator.calculate(
            taxable_parts, rule_sets, ledger.current, pre_tax_deductions=pre_tax.total
        )
        ledger.update(taxes.usage)

        machine.advance(PaycheckStage.DEDUCTION_APPLYING)
        available = gross - pre_tax.total - taxes.total
        post_tax = self.deduction_engine.apply(
            [d for d in pending if not d.policy.is_pre_tax], available, ledger.current
        )
        ledger.update(post_tax.usage)

        paycheck = self.aggregator.aggregate(
            [*earnings, *taxes.results, *pre_tax.results, *post_tax.results]
        )

        inputs_fingerprint = self._compute_inputs_fingerprint(pay_period, inputs, ledger)
        rules_fingerprint = self._compute_rules_fingerprint(
            structure, rule_sets, allowances_used
        )
        calculation_id = self._generate_calculation_id(
            employee_id, organization_id, pay_period, inputs_fingerprint, rules_fingerprint
        )
        logger.debug(
            "Computed paycheck for employee %s (%s): net %s",
            employee_id,
            structure.template.label,
            paycheck.summary.net_pay,
        )
        machine.advance(PaycheckStage.AGGREGATED)
        return PaycheckResult(
            employee_id=employee_id,
            organization_id=organization_id,
            pay_period=pay_period,
            calculation_id=calculation_id,
            components=paycheck,
            usage_increments=ledger.increments(),
            template_code=structure.template.template_code,
            template_version=structure.template.version_string,
            inputs_fingerprint=inputs_fingerprint,
            rules_fingerprint=rules_fingerprint,
        )

    async def _split_earning(
        self,
        result: EvaluatedComponentResult,
        allowance_type: str | None,
        employee_id: UUID,
        organization_id: UUID,
        pay_period: PayPeriod,
        inputs: PayInputs,
        country: str,
        ledger: _UsageLedger,
        allowances_used: dict[str, AllowanceDefinition | None],
    ) -> EvaluatedComponentResult:
        if not result.is_taxable:
            return result.with_metadata(**non_taxable_earning(result.amount).metadata())
        if allowance_type is None:
            split = split_taxable_earning(result.amount, None, None)
            return result.with_metadata(**split.metadata())

        if allowance_type not in allowances_used:
            if allowance_type not in KNOWN_ALLOWANCE_TYPES:
                logger.warning(
                    "Component %s uses unknown allowance type %s",
                    result.component_code,
                    allowance_type,
                )
            allowances_used[allowance_type] = await self.allowance_store.get_allowance(
                allowance_type, country, inputs.state, pay_period.pay_date, organization_id
            )
        allowance = allowances_used[allowance_type]

        usage = None
        if allowance is not None and not allowance.is_percentage:
            if is_periodic_allowance(allowance_type):
                usage = ledger.periodic.get(allowance_type) or UsageSnapshot(
                    employee_id=employee_id, usage_key=allowance_type, year=pay_period.year
                )
            else:
                await self._load_usage(
                    allowance_type, employee_id, organization_id, pay_period, ledger
                )
                usage = ledger.current[allowance_type]

        split = split_taxable_earning(result.amount, allowance, usage, inputs.is_resident)
        if split.new_usage is not None:
            if is_periodic_allowance(allowance_type):
                ledger.periodic[allowance_type] = split.new_usage
            else:
                ledger.current[allowance_type] = split.new_usage
        return result.with_metadata(allowance_type=allowance_type, **split.metadata())

    async def _load_usage(
        self,
        usage_key: str,
        employee_id: UUID,
        organization_id: UUID,
        pay_period: PayPeriod,
        ledger: _UsageLedger,
    ) -> None:
        if usage_key in ledger.loaded:
            return
        snapshot = await self.allowance_store.get_usage(
            employee_id, usage_key, pay_period.year, organization_id
        )
        ledger.loaded[usage_key] = snapshot
        ledger.current[usage_key] = snapshot

    async def _load_deduction_usage(
        self,
        deductions: Sequence[PendingDeduction],
        employee_id: UUID,
        organization_id: UUID,
        pay_period: PayPeriod,
        ledger: _UsageLedger,
    ) -> None:
        for deduction in deductions:
            if deduction.policy.max_annual is not None:
                await self._load_usage(
                    deduction.usage_key, employee_id, organization_id, pay_period, ledger
                )

    async def _load_tax_usage(
        self,
        rule_sets: Sequence[TaxRuleSet],
        employee_id: UUID,
        organization_id: UUID,
        pay_period: PayPeriod,
        ledger: _UsageLedger,
    ) -> None:
        for rule_set in rule_sets:
            if rule_set.annual_cap is not None:
                await self._load_usage(
                    rule_set.usage_key, employee_id, organization_id, pay_period, ledger
                )

    def _generate_calculation_id(
        self,
        employee_id: UUID,
        organization_id: UUID,
        pay_period: PayPeriod,
        inputs_fingerprint: str,
        rules_fingerprint: str,
    ) -> UUID:
        """Generate deterministic calculation ID."""
        data = {
            "employee_id": str(employee_id),
            "organization_id": str(organization_id),
            "period_start": str(pay_period.period_start),
            "period_end": str(pay_period.period_end),
            "pay_date": str(pay_period.pay_date),
            "engine_version": self.settings.engine_version,
            "inputs_fingerprint": inputs_fingerprint,
            "rules_fingerprint": rules_fingerprint,
        }
        json_str = json.dumps(data, sort_keys=True)
        hash_bytes = hashlib.sha256(json_str.encode()).digest()
        return UUID(bytes=hash_bytes[:16])

    def _compute_inputs_fingerprint(
        self, pay_period: PayPeriod, inputs: PayInputs, ledger: _UsageLedger
    ) -> str:
        """Compute fingerprint of inputs and the usage snapshots read."""
        data: dict[str, Any] = {
            "frequency": pay_period.frequency,
            "inputs": inputs.to_canonical_dict(),
            "usage": [ledger.loaded[key].to_canonical_dict() for key in sorted(ledger.loaded)],
        }
        json_str = json.dumps(data, sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]

    def _compute_rules_fingerprint(
        self,
        structure: ResolvedStructure,
        rule_sets: Sequence[TaxRuleSet],
        allowances: dict[str, AllowanceDefinition | None],
    ) -> str:
        """Compute fingerprint of the template, overrides and rules applied."""
        data = {
            "template_id": str(structure.template.template_id),
            "template": structure.template.label,
            "overrides": structure.override_ids,
            "rule_sets": sorted(str(r.rule_set_id) for r in rule_sets),
            "allowances": sorted(str(a.allowance_id) for a in allowances.values() if a),
        }
        json_str = json.dumps(data, sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]


def with_base_compensation(
    components: Sequence[ResolvedComponent], inputs: PayInputs
) -> list[ResolvedComponent]:
    """Prepend a system base pay line when the template has none.

    A salary from the inputs becomes BASE_SALARY; otherwise hourly rate times
    hours worked becomes REGULAR_PAY.
    """
    if any(c.code in BASE_COMPENSATION_CODES for c in components):
        return list(components)

    if inputs.base_salary is not None:
        definition = FixedComponent(
            code="BASE_SALARY",
            name="Base Salary",
            category=ComponentCategory.EARNING,
            is_taxable=True,
            amount=inputs.base_salary,
        )
    elif inputs.hourly_rate is not None and inputs.hours_worked > 0:
        definition = FixedComponent(
            code="REGULAR_PAY",
            name="Regular Pay",
            category=ComponentCategory.EARNING,
            is_taxable=True,
            amount=inputs.hourly_rate,
            quantity_of="hoursWorked",
        )
    else:
        return list(components)

    return [ResolvedComponent(definition=definition, is_system=True), *components]
