"""Pay component definitions.

One frozen dataclass per calculation type. Each variant checks its own
configuration when constructed, so a percentage component without a base or
a formula that does not parse cannot exist past this module.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Any, ClassVar, Mapping
from uuid import UUID

from pay_structure_engine.calculators.expression import Expression, parse_formula
from pay_structure_engine.calculators.money import ZERO, optional_decimal, to_decimal
from pay_structure_engine.calculators.tax_calculator import validate_brackets
from pay_structure_engine.calculators.types import (
    CalculationType,
    ComponentCategory,
    ComponentOverride,
    DateRange,
    DeductionPolicy,
    SemanticVersion,
    TaxBracket,
    TemplateStatus,
)
from pay_structure_engine.errors import ConfigurationError


@dataclass(frozen=True, kw_only=True)
class ComponentDefinition:
    """Fields shared by every calculation type."""

    calculation_type: ClassVar[CalculationType]
    # Override fields this variant accepts besides disabling
    override_fields: ClassVar[frozenset[str]] = frozenset()

    code: str
    name: str
    category: ComponentCategory
    sequence_order: int = 0
    depends_on: tuple[str, ...] = ()
    optional_dependencies: frozenset[str] = frozenset()
    is_taxable: bool = False
    allowance_type: str | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    deduction: DeductionPolicy = field(default_factory=DeductionPolicy)
    allow_override: bool = True

    def __post_init__(self) -> None:
        if not self.code:
            raise ConfigurationError("Component code is required")
        if self.code in self.depends_on:
            raise ConfigurationError(
                f"Component {self.code} depends on itself", component_codes=(self.code,)
            )
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise ConfigurationError(
                f"Component {self.code} has min_amount above max_amount",
                component_codes=(self.code,),
            )
        if self.category == ComponentCategory.TAX:
            raise ConfigurationError(
                f"Component {self.code}: tax lines come from tax rule sets, "
                "not template components",
                component_codes=(self.code,),
            )

    @property
    def is_earning(self) -> bool:
        return self.category == ComponentCategory.EARNING

    @property
    def is_deduction(self) -> bool:
        return self.category == ComponentCategory.DEDUCTION

    def references(self) -> frozenset[str]:
        """Names this component reads while computing, besides ``depends_on``."""
        return frozenset()

    def validate_override(self, override: ComponentOverride) -> None:
        """Reject override values that make no sense for this calculation type."""
        if not self.allow_override:
            raise ConfigurationError(
                f"Component {self.code} does not allow overrides",
                component_codes=(self.code,),
            )
        supplied = override.supplied_fields()
        if override.is_disabled:
            return
        if not supplied:
            raise ConfigurationError(
                f"Override {override.override_id} for {self.code} supplies no value",
                component_codes=(self.code,),
            )
        unexpected = supplied - self.override_fields
        if unexpected:
            raise ConfigurationError(
                f"Override field(s) {', '.join(sorted(unexpected))} not valid for "
                f"{self.calculation_type.value} component {self.code}",
                component_codes=(self.code,),
            )
        if override.override_formula is not None:
            try:
                parse_formula(override.override_formula)
            except ConfigurationError as e:
                raise e.with_context(component_code=self.code)

    def configuration(self) -> dict[str, Any]:
        """Variant-specific configuration, used for version comparison."""
        base = {f.name for f in fields(ComponentDefinition)}
        config = {}
        for f in fields(self):
            if f.name in base:
                continue
            value = getattr(self, f.name)
            if isinstance(value, Expression):
                continue
            config[f.name] = value
        return config


@dataclass(frozen=True, kw_only=True)
class FixedComponent(ComponentDefinition):
    """Fixed amount, or a rate multiplied by a quantity such as hours worked.

    When ``quantity_of`` is set, ``amount`` is the rate per unit and a ``rate``
    override replaces it.
    """

    calculation_type: ClassVar[CalculationType] = CalculationType.FIXED
    override_fields: ClassVar[frozenset[str]] = frozenset({"amount", "rate"})

    amount: Decimal = ZERO
    quantity_of: str | None = None

    def references(self) -> frozenset[str]:
        return frozenset({self.quantity_of}) if self.quantity_of else frozenset()

    def validate_override(self, override: ComponentOverride) -> None:
        super().validate_override(override)
        if override.override_rate is not None and self.quantity_of is None:
            raise ConfigurationError(
                f"Rate override on {self.code} requires a quantity-based component",
                component_codes=(self.code,),
            )


@dataclass(frozen=True, kw_only=True)
class PercentageComponent(ComponentDefinition):
    """``base * percentage / 100``; the base is a component code or well-known base."""

    calculation_type: ClassVar[CalculationType] = CalculationType.PERCENTAGE
    override_fields: ClassVar[frozenset[str]] = frozenset({"percentage"})

    percentage: Decimal
    percentage_of: str

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.percentage_of:
            raise ConfigurationError(
                f"Percentage component {self.code} has no base",
                component_codes=(self.code,),
            )
        if self.percentage < 0:
            raise ConfigurationError(
                f"Percentage component {self.code} has a negative rate",
                component_codes=(self.code,),
            )

    def references(self) -> frozenset[str]:
        return frozenset({self.percentage_of})


@dataclass(frozen=True, kw_only=True)
class FormulaComponent(ComponentDefinition):
    """Arithmetic/conditional expression over inputs and prior results."""

    calculation_type: ClassVar[CalculationType] = CalculationType.FORMULA
    override_fields: ClassVar[frozenset[str]] = frozenset({"formula"})

    formula: str
    formula_variables: Mapping[str, Decimal] = field(default_factory=dict)
    expression: Expression = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        super().__post_init__()
        try:
            parsed = parse_formula(self.formula)
        except ConfigurationError as e:
            raise e.with_context(component_code=self.code)
        object.__setattr__(self, "expression", parsed)

    def references(self) -> frozenset[str]:
        # Constants declared on the component shadow everything else
        return self.expression.variables - frozenset(self.formula_variables)


@dataclass(frozen=True, kw_only=True)
class TieredComponent(ComponentDefinition):
    """Tier table over a basis, sliced the same way as bracket tax."""

    calculation_type: ClassVar[CalculationType] = CalculationType.TIERED

    tiers: tuple[TaxBracket, ...]
    tier_basis: str

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.tier_basis:
            raise ConfigurationError(
                f"Tiered component {self.code} has no basis",
                component_codes=(self.code,),
            )
        try:
            validate_brackets(self.tiers)
        except ConfigurationError as e:
            raise e.with_context(component_code=self.code)

    def references(self) -> frozenset[str]:
        return frozenset({self.tier_basis})


_VARIANTS: dict[CalculationType, type[ComponentDefinition]] = {
    CalculationType.FIXED: FixedComponent,
    CalculationType.PERCENTAGE: PercentageComponent,
    CalculationType.FORMULA: FormulaComponent,
    CalculationType.TIERED: TieredComponent,
}


def _tiers_from_config(raw_tiers: Any, code: str) -> tuple[TaxBracket, ...]:
    if not isinstance(raw_tiers, list) or not raw_tiers:
        raise ConfigurationError(
            f"Tiered component {code} needs a non-empty 'tiers' list",
            component_codes=(code,),
        )
    tiers = []
    for index, tier in enumerate(raw_tiers, start=1):
        tiers.append(
            TaxBracket(
                bracket_order=int(tier.get("order", index)),
                income_min=to_decimal(tier.get("min", 0)),
                income_max=optional_decimal(tier.get("max")),
                rate_percentage=to_decimal(tier.get("rate", 0)),
                fixed_amount=to_decimal(tier.get("fixed_amount", 0)),
            )
        )
    return tuple(tiers)


def component_from_config(
    *,
    code: str,
    name: str,
    category: ComponentCategory | str,
    calculation_type: CalculationType | str,
    configuration: Mapping[str, Any] | None = None,
    **common: Any,
) -> ComponentDefinition:
    """Build the right variant from a stored component row.

    ``configuration`` holds the variant-specific keys (``amount``,
    ``quantity_of``, ``percentage``, ``percentage_of``, ``formula``,
    ``formula_variables``, ``tiers``, ``tier_basis``). Anything malformed
    becomes a ConfigurationError naming the component.
    """
    configuration = dict(configuration or {})
    try:
        calc_type = CalculationType(calculation_type)
        cat = ComponentCategory(category)
    except ValueError as e:
        raise ConfigurationError(
            f"Component {code}: {e}", component_codes=(code,)
        ) from e

    try:
        if calc_type == CalculationType.FIXED:
            specific = {
                "amount": to_decimal(configuration.get("amount", 0)),
                "quantity_of": configuration.get("quantity_of"),
            }
        elif calc_type == CalculationType.PERCENTAGE:
            specific = {
                "percentage": to_decimal(configuration["percentage"]),
                "percentage_of": configuration["percentage_of"],
            }
        elif calc_type == CalculationType.FORMULA:
            specific = {
                "formula": configuration["formula"],
                "formula_variables": {
                    str(k): to_decimal(v)
                    for k, v in configuration.get("formula_variables", {}).items()
                },
            }
        else:
            specific = {
                "tiers": _tiers_from_config(configuration.get("tiers"), code),
                "tier_basis": configuration["tier_basis"],
            }
    except KeyError as e:
        raise ConfigurationError(
            f"{calc_type.value} component {code} is missing configuration key {e.args[0]!r}",
            component_codes=(code,),
        ) from e
    except TypeError as e:
        raise ConfigurationError(
            f"Component {code} has an invalid value: {e}", component_codes=(code,)
        ) from e

    return _VARIANTS[calc_type](code=code, name=name, category=cat, **specific, **common)


@dataclass(frozen=True)
class ComponentDiff:
    """Differences between two template versions, by component code."""

    added: tuple[str, ...]
    removed: tuple[str, ...]
    modified: tuple[str, ...]

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)


def _comparable(component: ComponentDefinition) -> tuple:
    return (
        component.calculation_type,
        component.category,
        component.sequence_order,
        component.depends_on,
        component.optional_dependencies,
        component.is_taxable,
        component.allowance_type,
        component.min_amount,
        component.max_amount,
        component.deduction,
        component.allow_override,
        sorted(component.configuration().items(), key=lambda item: item[0]),
    )


def compare_components(
    old: list[ComponentDefinition] | tuple[ComponentDefinition, ...],
    new: list[ComponentDefinition] | tuple[ComponentDefinition, ...],
) -> ComponentDiff:
    """Compare the component sets of two template versions."""
    old_by_code = {c.code: c for c in old}
    new_by_code = {c.code: c for c in new}

    added = sorted(set(new_by_code) - set(old_by_code))
    removed = sorted(set(old_by_code) - set(new_by_code))
    modified = sorted(
        code
        for code in set(old_by_code) & set(new_by_code)
        if _comparable(old_by_code[code]) != _comparable(new_by_code[code])
    )
    return ComponentDiff(tuple(added), tuple(removed), tuple(modified))


@dataclass(frozen=True)
class ResolvedComponent:
    """A component definition paired with the override in effect, if any."""

    definition: ComponentDefinition
    override: ComponentOverride | None = None
    is_system: bool = False
    override_expression: Expression | None = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if self.override is None:
            return
        self.definition.validate_override(self.override)
        if self.override.override_formula is not None and not self.override.is_disabled:
            object.__setattr__(
                self, "override_expression", parse_formula(self.override.override_formula)
            )

    @property
    def code(self) -> str:
        return self.definition.code

    @property
    def is_disabled(self) -> bool:
        return self.override is not None and self.override.is_disabled

    @property
    def has_value_override(self) -> bool:
        return (
            self.override is not None
            and not self.override.is_disabled
            and bool(self.override.supplied_fields())
        )

    def references(self) -> frozenset[str]:
        if self.override_expression is not None:
            return self.override_expression.variables - frozenset(
                getattr(self.definition, "formula_variables", {})
            )
        return self.definition.references()


@dataclass(frozen=True)
class TemplateVersion:
    """One version of a pay structure template with its components."""

    template_id: UUID
    organization_id: UUID
    template_code: str
    version: SemanticVersion
    components: tuple[ComponentDefinition, ...]
    status: TemplateStatus = TemplateStatus.ACTIVE
    validity: DateRange | None = None
    currency: str = "SRD"
    pay_frequency: str = "monthly"
    is_organization_default: bool = False

    @property
    def version_string(self) -> str:
        return str(self.version)

    @property
    def label(self) -> str:
        return f"{self.template_code}@{self.version}"
