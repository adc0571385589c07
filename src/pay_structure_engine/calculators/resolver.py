"""Pay structure resolution.

Determines which template version and which worker overrides apply to an
employee on a date. Selection rules live in plain functions; the resolver
class only loads data through the structure store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterable, Sequence
from uuid import UUID

from pay_structure_engine.calculators.components import ResolvedComponent, TemplateVersion
from pay_structure_engine.calculators.types import (
    ComponentOverride,
    TemplateStatus,
    WorkerStructureAssignment,
    assert_no_overlap,
)
from pay_structure_engine.errors import (
    ConfigurationError,
    IntegrityError,
    NotFoundError,
    require_organization,
)
from pay_structure_engine.stores.base import StructureStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedStructure:
    """Template version and per-component overrides in effect on a date."""

    assignment: WorkerStructureAssignment
    template: TemplateVersion
    components: tuple[ResolvedComponent, ...]
    as_of: date

    @property
    def override_ids(self) -> list[str]:
        return sorted(
            str(c.override.override_id) for c in self.components if c.override is not None
        )


def select_assignment(
    assignments: Iterable[WorkerStructureAssignment], as_of: date, today: date
) -> WorkerStructureAssignment | None:
    """Pick the assignment in effect on ``as_of``.

    For today or a future date the ``is_current`` row wins. Otherwise (or when
    no covering row is current) the single row covering the date is used;
    several covering rows break the no-overlap rule and are rejected.
    """
    covering = [a for a in assignments if a.validity.covers(as_of)]
    if not covering:
        return None

    if as_of >= today:
        current = [a for a in covering if a.is_current]
        if len(current) > 1:
            raise ConfigurationError(
                f"Employee {current[0].employee_id} has {len(current)} current pay structures"
            )
        if current:
            return current[0]

    if len(covering) > 1:
        assert_no_overlap((str(a.worker_structure_id), a.validity) for a in covering)
    return covering[0]


def _approval_key(override: ComponentOverride) -> tuple:
    return (
        override.approved_at is not None,
        override.approved_at or datetime.min,
        override.validity.start,
        str(override.override_id),
    )


def select_override(
    overrides: Iterable[ComponentOverride],
    as_of: date,
    assignment: WorkerStructureAssignment,
) -> ComponentOverride | None:
    """Pick the override for one component.

    Only approved overrides whose own range and whose assignment's range
    both cover ``as_of`` qualify. When several qualify the most recently
    approved wins.
    """
    if not assignment.validity.covers(as_of):
        return None
    candidates = [o for o in overrides if o.is_approved and o.validity.covers(as_of)]
    if not candidates:
        return None
    return max(candidates, key=_approval_key)


class StructureResolver:
    """Resolves an employee's effective pay structure."""

    def __init__(self, store: StructureStore, today: Callable[[], date] = date.today):
        self.store = store
        self._today = today

    async def resolve(
        self,
        employee_id: UUID,
        organization_id: UUID,
        as_of: date,
        today: date | None = None,
    ) -> ResolvedStructure:
        require_organization(organization_id)
        today = today or self._today()

        assignments = await self.store.get_effective_structure(employee_id, organization_id, as_of)
        assignment = select_assignment(assignments, as_of, today)
        if assignment is None:
            raise NotFoundError(
                f"No pay structure covers {as_of} for employee {employee_id}",
                employee_id=employee_id,
            )

        template = await self.store.get_template(assignment.template_id, organization_id)
        if template is None:
            raise IntegrityError(
                f"Pay structure {assignment.worker_structure_id} references missing "
                f"template {assignment.template_id}",
                employee_id=employee_id,
            )
        if template.status == TemplateStatus.DRAFT:
            raise ConfigurationError(
                f"Template {template.label} is a draft and cannot be used for payroll"
            )
        if template.status == TemplateStatus.DEPRECATED:
            logger.info(
                "Employee %s still assigned to deprecated template %s",
                employee_id,
                template.label,
            )

        components = self._pair_overrides(template.components, assignment, as_of)
        return ResolvedStructure(
            assignment=assignment,
            template=template,
            components=components,
            as_of=as_of,
        )

    def _pair_overrides(
        self,
        definitions: Sequence,
        assignment: WorkerStructureAssignment,
        as_of: date,
    ) -> tuple[ResolvedComponent, ...]:
        by_code: dict[str, list[ComponentOverride]] = {}
        for override in assignment.overrides:
            by_code.setdefault(override.component_code, []).append(override)

        known = {d.code for d in definitions}
        unknown = sorted(set(by_code) - known)
        if unknown:
            logger.warning(
                "Pay structure %s has overrides for components not in its template: %s",
                assignment.worker_structure_id,
                ", ".join(unknown),
            )

        return tuple(
            ResolvedComponent(
                definition=definition,
                override=select_override(by_code.get(definition.code, ()), as_of, assignment),
            )
            for definition in definitions
        )
