"""Store protocols consumed by the calculation engine.

Every method takes ``organization_id`` and implementations must reject a
missing one (see ``require_organization``). The engine never trusts callers
to scope queries for it.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Protocol, Sequence
from uuid import UUID

from pay_structure_engine.calculators.components import TemplateVersion
from pay_structure_engine.calculators.types import (
    AllowanceDefinition,
    TaxRuleSet,
    UsageSnapshot,
    WorkerStructureAssignment,
)


class StructureStore(Protocol):
    """Read-only access to templates, worker assignments and overrides."""

    async def get_effective_structure(
        self, employee_id: UUID, organization_id: UUID, as_of: date
    ) -> Sequence[WorkerStructureAssignment]:
        """Return the employee's assignments whose range covers ``as_of``.

        Overrides are attached to each assignment regardless of their own
        approval status or range; the resolver filters them.
        """
        ...

    async def get_template(
        self, template_id: UUID, organization_id: UUID
    ) -> TemplateVersion | None:
        """Return the template version with its components, or None."""
        ...


class TaxRuleStore(Protocol):
    """Read-only access to tax rule sets."""

    async def get_applicable_rule_sets(
        self,
        country: str,
        state: str | None,
        locality: str | None,
        as_of: date,
        organization_id: UUID,
    ) -> Sequence[TaxRuleSet]:
        """Return active rule sets for the jurisdiction effective on ``as_of``.

        A rule set with ``state=None`` applies to every state of the country,
        likewise for locality.
        """
        ...


class AllowanceStore(Protocol):
    """Allowance definitions and per-employee usage counters."""

    async def get_allowance(
        self,
        allowance_type: str,
        country: str,
        state: str | None,
        as_of: date,
        organization_id: UUID,
    ) -> AllowanceDefinition | None:
        """Return the allowance in effect, preferring a state-specific one."""
        ...

    async def get_usage(
        self, employee_id: UUID, usage_key: str, year: int, organization_id: UUID
    ) -> UsageSnapshot:
        """Return the usage counter, a zero snapshot (version 0) if none exists."""
        ...

    async def record_usage(
        self,
        employee_id: UUID,
        usage_key: str,
        year: int,
        amount_used: Decimal,
        organization_id: UUID,
    ) -> UsageSnapshot:
        """Store a new running total and return it with the bumped version.

        Totals may only grow within a year.
        """
        ...
