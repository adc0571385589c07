"""In-memory stores.

Used by tests and by the preview API when no database is configured. They
follow the same tenant-scoping rules as the SQLAlchemy stores.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import UUID

from pay_structure_engine.calculators.components import TemplateVersion
from pay_structure_engine.calculators.types import (
    AllowanceDefinition,
    TaxRuleSet,
    UsageSnapshot,
    WorkerStructureAssignment,
)
from pay_structure_engine.errors import ValidationError, require_organization


def _in_jurisdiction(
    rule_value: str | None, wanted: str | None
) -> bool:
    return rule_value is None or rule_value == wanted


class InMemoryStructureStore:
    """Templates and assignments keyed by organization."""

    def __init__(self) -> None:
        self._templates: dict[tuple[UUID, UUID], TemplateVersion] = {}
        self._assignments: list[WorkerStructureAssignment] = []

    def add_template(self, template: TemplateVersion) -> TemplateVersion:
        self._templates[(template.organization_id, template.template_id)] = template
        return template

    def add_assignment(self, assignment: WorkerStructureAssignment) -> WorkerStructureAssignment:
        self._assignments.append(assignment)
        return assignment

    async def get_effective_structure(
        self, employee_id: UUID, organization_id: UUID, as_of: date
    ) -> list[WorkerStructureAssignment]:
        require_organization(organization_id)
        return [
            a
            for a in self._assignments
            if a.organization_id == organization_id
            and a.employee_id == employee_id
            and a.validity.covers(as_of)
        ]

    async def get_template(
        self, template_id: UUID, organization_id: UUID
    ) -> TemplateVersion | None:
        require_organization(organization_id)
        return self._templates.get((organization_id, template_id))


class InMemoryTaxRuleStore:
    """Tax rule sets; ``None`` organization means a statutory (shared) rule set."""

    def __init__(self) -> None:
        self._rule_sets: list[tuple[UUID | None, TaxRuleSet]] = []

    def add(self, rule_set: TaxRuleSet, organization_id: UUID | None = None) -> TaxRuleSet:
        self._rule_sets.append((organization_id, rule_set))
        return rule_set

    async def get_applicable_rule_sets(
        self,
        country: str,
        state: str | None,
        locality: str | None,
        as_of: date,
        organization_id: UUID,
    ) -> list[TaxRuleSet]:
        require_organization(organization_id)
        return [
            rule_set
            for owner, rule_set in self._rule_sets
            if owner in (None, organization_id)
            and rule_set.country == country
            and _in_jurisdiction(rule_set.state, state)
            and _in_jurisdiction(rule_set.locality, locality)
            and (rule_set.validity is None or rule_set.validity.covers(as_of))
        ]


class InMemoryAllowanceStore:
    """Allowance definitions and usage counters."""

    def __init__(self) -> None:
        self._allowances: list[tuple[UUID | None, AllowanceDefinition]] = []
        self._usage: dict[tuple[UUID, UUID, str, int], UsageSnapshot] = {}

    def add_allowance(
        self, allowance: AllowanceDefinition, organization_id: UUID | None = None
    ) -> AllowanceDefinition:
        self._allowances.append((organization_id, allowance))
        return allowance

    def set_usage(self, organization_id: UUID, snapshot: UsageSnapshot) -> None:
        key = (organization_id, snapshot.employee_id, snapshot.usage_key, snapshot.year)
        self._usage[key] = snapshot

    async def get_allowance(
        self,
        allowance_type: str,
        country: str,
        state: str | None,
        as_of: date,
        organization_id: UUID,
    ) -> AllowanceDefinition | None:
        require_organization(organization_id)
        candidates = [
            a
            for owner, a in self._allowances
            if owner in (None, organization_id)
            and a.allowance_type == allowance_type
            and a.country == country
            and _in_jurisdiction(a.state, state)
            and (a.validity is None or a.validity.covers(as_of))
        ]
        # State-specific definitions win over country-wide ones
        candidates.sort(key=lambda a: (a.state is None, str(a.allowance_id)))
        return candidates[0] if candidates else None

    async def get_usage(
        self, employee_id: UUID, usage_key: str, year: int, organization_id: UUID
    ) -> UsageSnapshot:
        require_organization(organization_id)
        existing = self._usage.get((organization_id, employee_id, usage_key, year))
        if existing is not None:
            return existing
        return UsageSnapshot(employee_id=employee_id, usage_key=usage_key, year=year)

    async def record_usage(
        self,
        employee_id: UUID,
        usage_key: str,
        year: int,
        amount_used: Decimal,
        organization_id: UUID,
    ) -> UsageSnapshot:
        current = await self.get_usage(employee_id, usage_key, year, organization_id)
        if amount_used < current.amount_used:
            raise ValidationError(
                f"Usage for {usage_key} cannot decrease within {year} "
                f"({current.amount_used} -> {amount_used})"
            )
        updated = replace(current, amount_used=amount_used, version=current.version + 1)
        self.set_usage(organization_id, updated)
        return updated
