"""Dependency-ordered evaluation of pay components."""

from __future__ import annotations

import heapq
from decimal import Decimal
from typing import Any, Sequence

from pay_structure_engine.calculators.components import (
    FixedComponent,
    FormulaComponent,
    PercentageComponent,
    ResolvedComponent,
    TieredComponent,
)
from pay_structure_engine.calculators.money import ZERO, percent_of, round_money
from pay_structure_engine.calculators.tax_calculator import calculate_bracket_breakdown
from pay_structure_engine.calculators.types import (
    EvaluatedComponentResult,
    PayInputs,
    ResultSource,
)
from pay_structure_engine.errors import ComputationError, ConfigurationError, EvaluationError

# Names that resolve to the running sum of evaluated earnings. A component
# referencing one of these is ordered after every other earning.
GROSS_PAY_NAMES = frozenset({"grossPay", "gross_pay"})
# Running sum without the ordering constraint
GROSS_SO_FAR_NAMES = frozenset({"grossSoFar", "gross_so_far"})


def order_components(components: Sequence[ResolvedComponent]) -> list[ResolvedComponent]:
    """Topologically sort active components.

    Edges come from ``depends_on`` and from names the component reads
    (percentage base, tier basis, formula variables) that match another
    component's code. Ready components are emitted by
    ``(sequence_order, code)``. Disabled components are dropped; depending on
    one is a ConfigurationError unless the dependency is declared optional.
    """
    by_code: dict[str, ResolvedComponent] = {}
    for component in components:
        if component.code in by_code:
            raise ConfigurationError(
                f"Duplicate component code {component.code}",
                component_codes=(component.code,),
            )
        by_code[component.code] = component

    disabled = {code for code, c in by_code.items() if c.is_disabled}
    active = {code: c for code, c in by_code.items() if code not in disabled}
    earnings = [code for code, c in active.items() if c.definition.is_earning]

    predecessors: dict[str, set[str]] = {code: set() for code in active}

    for code, component in active.items():
        definition = component.definition
        optional = definition.optional_dependencies

        for dep in definition.depends_on:
            if dep not in by_code:
                if dep in optional:
                    continue
                raise ConfigurationError(
                    f"Component {code} depends on unknown component {dep}",
                    component_codes=(code,),
                )
            if dep in disabled:
                if dep in optional:
                    continue
                raise ConfigurationError(
                    f"Component {code} depends on disabled component {dep}",
                    component_codes=(code, dep),
                )
            predecessors[code].add(dep)

        for name in component.references():
            if name == code:
                raise ConfigurationError(
                    f"Component {code} references itself", component_codes=(code,)
                )
            if name in active:
                predecessors[code].add(name)
            elif name in disabled:
                if name not in optional:
                    raise ConfigurationError(
                        f"Component {code} references disabled component {name}",
                        component_codes=(code, name),
                    )
            elif name in GROSS_PAY_NAMES:
                predecessors[code].update(e for e in earnings if e != code)

        for name in optional:
            if name in active and name != code:
                predecessors[code].add(name)

    return _topological_sort(active, predecessors)


def _sort_key(component: ResolvedComponent) -> tuple[int, str]:
    return (component.definition.sequence_order, component.code)


def _topological_sort(
    active: dict[str, ResolvedComponent], predecessors: dict[str, set[str]]
) -> list[ResolvedComponent]:
    in_degree = {code: len(preds) for code, preds in predecessors.items()}
    successors: dict[str, list[str]] = {code: [] for code in active}
    for code, preds in predecessors.items():
        for pred in preds:
            successors[pred].append(code)

    ready = [(_sort_key(active[code]), code) for code, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)

    ordered: list[ResolvedComponent] = []
    while ready:
        _, code = heapq.heappop(ready)
        ordered.append(active[code])
        for succ in successors[code]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(ready, (_sort_key(active[succ]), succ))

    if len(ordered) != len(active):
        remaining = {code for code, deg in in_degree.items() if deg > 0}
        cycle = _find_cycle(remaining, predecessors)
        raise ConfigurationError(
            f"Dependency cycle between components: {' -> '.join(cycle + cycle[:1])}",
            component_codes=cycle,
        )
    return ordered


def _find_cycle(remaining: set[str], predecessors: dict[str, set[str]]) -> list[str]:
    """Walk predecessors inside the unsorted remainder until a node repeats.

    Every node left after Kahn's algorithm has a predecessor in the
    remainder, so the walk always closes a cycle.
    """
    node = min(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = min(p for p in predecessors[node] if p in remaining)
    cycle = path[seen[node]:]
    cycle.reverse()
    return cycle


class ComponentEvaluator:
    """Computes amounts for components that are already in dependency order.

    The environment starts with the pay period inputs and grows with each
    component's result, keyed by component code. Amounts are rounded once per
    component after bounds are applied.
    """

    def evaluate(
        self, ordered: Sequence[ResolvedComponent], inputs: PayInputs
    ) -> list[EvaluatedComponentResult]:
        env = build_environment(inputs)
        gross = ZERO
        _set_gross(env, gross)

        results: list[EvaluatedComponentResult] = []
        for component in ordered:
            try:
                result = self._evaluate_one(component, env)
            except ComputationError as e:
                raise e.with_context(component_code=component.code)

            results.append(result)
            env[component.code] = result.amount
            if component.definition.is_earning:
                gross += result.amount
                _set_gross(env, gross)
        return results

    def _evaluate_one(
        self, component: ResolvedComponent, env: dict[str, Decimal]
    ) -> EvaluatedComponentResult:
        definition = component.definition
        override = component.override if component.has_value_override else None
        metadata: dict[str, Any] = {"calculation_type": definition.calculation_type.value}

        local_env = dict(env)
        for name in definition.optional_dependencies:
            local_env.setdefault(name, ZERO)

        if isinstance(definition, FixedComponent):
            amount = self._fixed(definition, override, local_env, metadata)
        elif isinstance(definition, PercentageComponent):
            amount = self._percentage(definition, override, local_env, metadata)
        elif isinstance(definition, FormulaComponent):
            local_env.update(definition.formula_variables)
            expression = component.override_expression or definition.expression
            metadata["formula"] = expression.source
            amount = expression.evaluate(local_env)
        elif isinstance(definition, TieredComponent):
            basis = _lookup(local_env, definition.tier_basis, "tier basis")
            slices = calculate_bracket_breakdown(max(basis, ZERO), definition.tiers)
            amount = sum((s.tax for s in slices), ZERO)
            metadata["tier_basis"] = definition.tier_basis
            metadata["tier_breakdown"] = [s.to_dict() for s in slices]
        else:
            raise ConfigurationError(
                f"Unsupported component type {type(definition).__name__}"
            )

        amount = _apply_bounds(definition.min_amount, definition.max_amount, amount, metadata)

        if override is not None:
            metadata["override_id"] = str(override.override_id)
            source = ResultSource.OVERRIDE
        elif component.is_system:
            source = ResultSource.SYSTEM
        else:
            source = ResultSource.TEMPLATE

        return EvaluatedComponentResult(
            component_code=definition.code,
            component_name=definition.name,
            category=definition.category,
            amount=round_money(amount),
            is_taxable=definition.is_earning and definition.is_taxable,
            source=source,
            metadata=metadata,
        )

    def _fixed(self, definition, override, env, metadata) -> Decimal:
        if override is not None and override.override_amount is not None:
            return override.override_amount
        if definition.quantity_of is None:
            return definition.amount

        rate = definition.amount
        if override is not None and override.override_rate is not None:
            rate = override.override_rate
        quantity = _lookup(env, definition.quantity_of, "quantity")
        metadata["rate"] = str(rate)
        metadata["quantity"] = str(quantity)
        return rate * quantity

    def _percentage(self, definition, override, env, metadata) -> Decimal:
        percentage = definition.percentage
        if override is not None and override.override_percentage is not None:
            percentage = override.override_percentage
        base = _lookup(env, definition.percentage_of, "percentage base")
        metadata["percentage"] = str(percentage)
        metadata["percentage_of"] = definition.percentage_of
        metadata["base_amount"] = str(base)
        return percent_of(base, percentage)


def build_environment(inputs: PayInputs) -> dict[str, Decimal]:
    """Variable environment from the pay period inputs."""
    env: dict[str, Decimal] = {
        "hoursWorked": inputs.hours_worked,
        "hours_worked": inputs.hours_worked,
        "hours": inputs.hours_worked,
        "overtimeHours": inputs.overtime_hours,
        "overtime_hours": inputs.overtime_hours,
    }
    if inputs.base_salary is not None:
        env["baseSalary"] = env["base_salary"] = inputs.base_salary
    if inputs.hourly_rate is not None:
        env["hourlyRate"] = env["hourly_rate"] = env["rate"] = inputs.hourly_rate
    env.update(inputs.variables)
    return env


def _set_gross(env: dict[str, Decimal], gross: Decimal) -> None:
    for name in GROSS_PAY_NAMES | GROSS_SO_FAR_NAMES:
        env[name] = gross


def _lookup(env: dict[str, Decimal], name: str, role: str) -> Decimal:
    if name not in env or env[name] is None:
        raise EvaluationError(f"{role.capitalize()} '{name}' has not been evaluated")
    return env[name]


def _apply_bounds(
    min_amount: Decimal | None,
    max_amount: Decimal | None,
    amount: Decimal,
    metadata: dict[str, Any],
) -> Decimal:
    if min_amount is not None and amount < min_amount:
        metadata["bounded"] = "min_amount"
        metadata["unbounded_amount"] = str(round_money(amount))
        return min_amount
    if max_amount is not None and amount > max_amount:
        metadata["bounded"] = "max_amount"
        metadata["unbounded_amount"] = str(round_money(amount))
        return max_amount
    return amount
