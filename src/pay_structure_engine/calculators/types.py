"""Type definitions for the calculation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from functools import total_ordering
from typing import Any, Iterable, Mapping
from uuid import UUID

from pay_structure_engine.calculators.money import ZERO
from pay_structure_engine.errors import ConfigurationError, ValidationError


class ComponentCategory(str, Enum):
    """Pay component groups."""

    EARNING = "earning"
    DEDUCTION = "deduction"
    TAX = "tax"


class CalculationType(str, Enum):
    """How a component's amount is computed."""

    FIXED = "fixed"
    PERCENTAGE = "percentage"
    FORMULA = "formula"
    TIERED = "tiered"


class ResultSource(str, Enum):
    """Where an evaluated amount came from."""

    TEMPLATE = "template"
    OVERRIDE = "override"
    SYSTEM = "system"


class TemplateStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaxCalculationMethod(str, Enum):
    BRACKET = "bracket"
    FLAT = "flat"


class TaxCalculationMode(str, Enum):
    """How a rule set's tax relates to individual taxable components.

    - AGGREGATED: one tax on total taxable income
    - PROPORTIONAL_DISTRIBUTION: tax on the total, attributed pro rata
    - COMPONENT_BASED: each taxable component taxed on its own
    """

    AGGREGATED = "aggregated"
    PROPORTIONAL_DISTRIBUTION = "proportional_distribution"
    COMPONENT_BASED = "component_based"


# ===== Effective dating =====


@total_ordering
@dataclass(frozen=True)
class DateRange:
    """Closed date interval; ``end=None`` is open-ended.

    Ordered by start date, then end date with open-ended ranges last.
    """

    start: date
    end: date | None = None

    def __post_init__(self) -> None:
        if self.end is not None and self.end < self.start:
            raise ValidationError(
                f"Date range ends ({self.end}) before it starts ({self.start})"
            )

    def covers(self, on: date) -> bool:
        return self.start <= on and (self.end is None or on <= self.end)

    def overlaps(self, other: DateRange) -> bool:
        if self.end is not None and self.end < other.start:
            return False
        if other.end is not None and other.end < self.start:
            return False
        return True

    def _sort_key(self) -> tuple[date, date]:
        return (self.start, self.end or date.max)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, DateRange):
            return NotImplemented
        return self._sort_key() < other._sort_key()


def assert_no_overlap(ranges: Iterable[tuple[str, DateRange]]) -> None:
    """Raise ConfigurationError if any two labelled ranges overlap."""
    ordered = sorted(ranges, key=lambda item: item[1])
    for (label_a, range_a), (label_b, range_b) in zip(ordered, ordered[1:]):
        if range_a.overlaps(range_b):
            raise ConfigurationError(
                f"Effective ranges of {label_a} and {label_b} overlap",
                component_codes=(label_a, label_b),
            )


@total_ordering
@dataclass(frozen=True)
class SemanticVersion:
    """Template version in major.minor.patch form."""

    major: int
    minor: int = 0
    patch: int = 0

    @classmethod
    def parse(cls, text: str) -> SemanticVersion:
        parts = text.strip().split(".")
        if len(parts) != 3 or not all(p.isdigit() for p in parts):
            raise ValidationError(f"Invalid semantic version '{text}'")
        return cls(int(parts[0]), int(parts[1]), int(parts[2]))

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return (self.major, self.minor, self.patch) < (other.major, other.minor, other.patch)


# ===== Pay period inputs =====


@dataclass(frozen=True)
class PayPeriod:
    """Pay period being computed. ``pay_date`` is the evaluation date."""

    period_start: date
    period_end: date
    pay_date: date
    frequency: str = "monthly"

    def __post_init__(self) -> None:
        if self.period_end < self.period_start:
            raise ValidationError("Pay period ends before it starts")

    @property
    def year(self) -> int:
        return self.pay_date.year


@dataclass(frozen=True)
class PayInputs:
    """Per-employee inputs for a pay period.

    ``variables`` holds extra named values (sales, shifts, ...) that formulas
    may reference.
    """

    base_salary: Decimal | None = None
    hourly_rate: Decimal | None = None
    hours_worked: Decimal = ZERO
    overtime_hours: Decimal = ZERO
    variables: Mapping[str, Decimal] = field(default_factory=dict)
    country: str | None = None
    state: str | None = None
    locality: str | None = None
    is_resident: bool = True

    def __post_init__(self) -> None:
        for name, value in (
            ("base_salary", self.base_salary),
            ("hourly_rate", self.hourly_rate),
            ("hours_worked", self.hours_worked),
            ("overtime_hours", self.overtime_hours),
        ):
            if value is not None and value < 0:
                raise ValidationError(f"{name} cannot be negative")

    def to_canonical_dict(self) -> dict[str, Any]:
        """Return canonical dict for hashing (deterministic ordering)."""
        return {
            "base_salary": str(self.base_salary) if self.base_salary is not None else None,
            "hourly_rate": str(self.hourly_rate) if self.hourly_rate is not None else None,
            "hours_worked": str(self.hours_worked),
            "overtime_hours": str(self.overtime_hours),
            "variables": {k: str(v) for k, v in sorted(self.variables.items())},
            "country": self.country,
            "state": self.state,
            "locality": self.locality,
            "is_resident": self.is_resident,
        }


# ===== Overrides and assignments =====


@dataclass(frozen=True)
class ComponentOverride:
    """Worker-specific replacement of a component's default behaviour."""

    override_id: UUID
    component_code: str
    validity: DateRange
    approval_status: ApprovalStatus = ApprovalStatus.APPROVED
    override_amount: Decimal | None = None
    override_percentage: Decimal | None = None
    override_formula: str | None = None
    override_rate: Decimal | None = None
    is_disabled: bool = False
    approved_at: datetime | None = None

    @property
    def is_approved(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED

    def supplied_fields(self) -> set[str]:
        """Names of the override values that are set."""
        supplied = set()
        if self.override_amount is not None:
            supplied.add("amount")
        if self.override_percentage is not None:
            supplied.add("percentage")
        if self.override_formula is not None:
            supplied.add("formula")
        if self.override_rate is not None:
            supplied.add("rate")
        return supplied


@dataclass(frozen=True)
class WorkerStructureAssignment:
    """Binding of one employee to one template version for a date range."""

    worker_structure_id: UUID
    employee_id: UUID
    organization_id: UUID
    template_id: UUID
    validity: DateRange
    is_current: bool = False
    overrides: tuple[ComponentOverride, ...] = ()


# ===== Tax rules =====


@dataclass(frozen=True)
class TaxBracket:
    """One row of a progressive tax table. ``income_max=None`` is unbounded."""

    bracket_order: int
    income_min: Decimal
    income_max: Decimal | None
    rate_percentage: Decimal
    fixed_amount: Decimal = ZERO


@dataclass(frozen=True)
class BracketSlice:
    """Audit record of the income taxed in one bracket."""

    bracket_order: int
    taxable_amount: Decimal
    rate_percentage: Decimal
    fixed_amount: Decimal
    tax: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "bracket_order": self.bracket_order,
            "taxable_amount": str(self.taxable_amount),
            "rate_percentage": str(self.rate_percentage),
            "fixed_amount": str(self.fixed_amount),
            "tax": str(self.tax),
        }


@dataclass(frozen=True)
class TaxRuleSet:
    """Tax rule set for one tax type within a jurisdiction."""

    rule_set_id: UUID
    tax_type: str
    tax_name: str
    calculation_method: TaxCalculationMethod
    brackets: tuple[TaxBracket, ...] = ()
    annual_cap: Decimal | None = None
    calculation_mode: TaxCalculationMode | None = None
    country: str | None = None
    state: str | None = None
    locality: str | None = None
    validity: DateRange | None = None

    @property
    def flat_rate(self) -> Decimal | None:
        """Flat rate taken from the first bracket, as configured upstream."""
        if not self.brackets:
            return None
        return sorted(self.brackets, key=lambda b: b.bracket_order)[0].rate_percentage

    @property
    def effective_mode(self) -> TaxCalculationMode:
        if self.calculation_mode is not None:
            return self.calculation_mode
        if self.calculation_method == TaxCalculationMethod.FLAT:
            return TaxCalculationMode.COMPONENT_BASED
        return TaxCalculationMode.PROPORTIONAL_DISTRIBUTION

    @property
    def usage_key(self) -> str:
        return f"tax:{self.tax_type}"


# ===== Allowances and usage =====


@dataclass(frozen=True)
class AllowanceDefinition:
    """Tax-free allowance for a jurisdiction and date range."""

    allowance_id: UUID
    allowance_type: str
    amount: Decimal
    is_percentage: bool = False
    country: str | None = None
    state: str | None = None
    validity: DateRange | None = None


@dataclass(frozen=True)
class UsageSnapshot:
    """Immutable view of one employee's usage counter for a year."""

    employee_id: UUID
    usage_key: str
    year: int
    amount_used: Decimal = ZERO
    version: int = 0

    def __post_init__(self) -> None:
        if self.amount_used < 0:
            raise ValidationError(f"Usage for {self.usage_key} cannot be negative")

    def with_increment(self, amount: Decimal) -> UsageSnapshot:
        """Return a new snapshot with ``amount`` added."""
        if amount < 0:
            raise ValidationError(f"Usage increment for {self.usage_key} cannot be negative")
        return UsageSnapshot(
            employee_id=self.employee_id,
            usage_key=self.usage_key,
            year=self.year,
            amount_used=self.amount_used + amount,
            version=self.version,
        )

    def to_canonical_dict(self) -> dict[str, Any]:
        return {
            "usage_key": self.usage_key,
            "year": self.year,
            "amount_used": str(self.amount_used),
            "version": self.version,
        }


@dataclass(frozen=True)
class UsageIncrement:
    """Pending usage change, committed only with the paycheck."""

    previous: UsageSnapshot
    new_amount_used: Decimal

    @property
    def usage_key(self) -> str:
        return self.previous.usage_key

    @property
    def amount(self) -> Decimal:
        return self.new_amount_used - self.previous.amount_used


@dataclass(frozen=True)
class DeductionPolicy:
    """Ordering and caps for a deduction component."""

    is_pre_tax: bool = False
    priority: int = 100
    max_per_payroll: Decimal | None = None
    max_annual: Decimal | None = None


# ===== Results =====


@dataclass(frozen=True)
class EvaluatedComponentResult:
    """One line of the audit trail for a paycheck."""

    component_code: str
    component_name: str
    category: ComponentCategory
    amount: Decimal
    is_taxable: bool = False
    source: ResultSource = ResultSource.TEMPLATE
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def with_amount(
        self, amount: Decimal, **metadata: Any
    ) -> EvaluatedComponentResult:
        return EvaluatedComponentResult(
            component_code=self.component_code,
            component_name=self.component_name,
            category=self.category,
            amount=amount,
            is_taxable=self.is_taxable,
            source=self.source,
            metadata={**self.metadata, **metadata},
        )

    def with_metadata(self, **metadata: Any) -> EvaluatedComponentResult:
        return self.with_amount(self.amount, **metadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "component_code": self.component_code,
            "component_name": self.component_name,
            "category": self.category.value,
            "amount": str(self.amount),
            "is_taxable": self.is_taxable,
            "source": self.source.value,
            "metadata": dict(sorted(self.metadata.items())),
        }


@dataclass(frozen=True)
class PaycheckSummary:
    total_earnings: Decimal
    total_tax_free: Decimal
    total_taxable: Decimal
    total_taxes: Decimal
    total_deductions: Decimal
    net_pay: Decimal

    def to_dict(self) -> dict[str, str]:
        return {
            "totalEarnings": str(self.total_earnings),
            "totalTaxFree": str(self.total_tax_free),
            "totalTaxable": str(self.total_taxable),
            "totalTaxes": str(self.total_taxes),
            "totalDeductions": str(self.total_deductions),
            "netPay": str(self.net_pay),
        }


@dataclass(frozen=True)
class PaycheckComponents:
    """Itemized paycheck grouped the way the breakdown endpoint returns it."""

    earnings: tuple[EvaluatedComponentResult, ...]
    taxes: tuple[EvaluatedComponentResult, ...]
    deductions: tuple[EvaluatedComponentResult, ...]
    summary: PaycheckSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "earnings": [r.to_dict() for r in self.earnings],
            "taxes": [r.to_dict() for r in self.taxes],
            "deductions": [r.to_dict() for r in self.deductions],
            "summary": self.summary.to_dict(),
        }


@dataclass(frozen=True)
class PaycheckResult:
    """Successful computation for one employee."""

    employee_id: UUID
    organization_id: UUID
    pay_period: PayPeriod
    calculation_id: UUID
    components: PaycheckComponents
    usage_increments: tuple[UsageIncrement, ...]
    template_code: str
    template_version: str
    inputs_fingerprint: str
    rules_fingerprint: str

    @property
    def net_pay(self) -> Decimal:
        return self.components.summary.net_pay

    @property
    def gross_pay(self) -> Decimal:
        return self.components.summary.total_earnings


@dataclass(frozen=True)
class PaycheckFailure:
    """Reported reason an employee's paycheck is absent from a run."""

    employee_id: UUID
    kind: str
    message: str
    stage: str | None = None
    component_code: str | None = None
