"""Error taxonomy for paycheck computation.

Every error carries enough context to reproduce an audit: the employee,
the component being evaluated (if any) and the pipeline stage where the
failure occurred. Caps are never errors; they are clipped and recorded in
calculation metadata.
"""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID


class ComputationError(Exception):
    """Base class for all paycheck computation failures."""

    kind = "computation_error"

    def __init__(
        self,
        message: str,
        *,
        employee_id: UUID | None = None,
        component_code: str | None = None,
        stage: str | None = None,
    ):
        self.message = message
        self.employee_id = employee_id
        self.component_code = component_code
        self.stage = stage
        super().__init__(message)

    def with_context(
        self,
        *,
        employee_id: UUID | None = None,
        component_code: str | None = None,
        stage: str | None = None,
    ) -> ComputationError:
        """Fill in context that was unknown where the error was raised.

        Context already present is kept; the innermost raiser knows best.
        """
        if self.employee_id is None:
            self.employee_id = employee_id
        if self.component_code is None:
            self.component_code = component_code
        if self.stage is None:
            self.stage = stage
        return self

    def to_dict(self) -> dict[str, str | None]:
        return {
            "kind": self.kind,
            "message": self.message,
            "employee_id": str(self.employee_id) if self.employee_id else None,
            "component_code": self.component_code,
            "stage": self.stage,
        }

    def __str__(self) -> str:
        parts = [self.message]
        if self.component_code:
            parts.append(f"component={self.component_code}")
        if self.stage:
            parts.append(f"stage={self.stage}")
        if self.employee_id:
            parts.append(f"employee={self.employee_id}")
        return " | ".join(parts)


class ValidationError(ComputationError):
    """Malformed or out-of-range input (negative income, missing tenant scope)."""

    kind = "validation_error"


class NotFoundError(ComputationError):
    """No effective pay structure or tax rule set for the requested date."""

    kind = "not_found"


class ConfigurationError(ComputationError):
    """Authoring mistake surfacing at evaluation time.

    Dependency cycles, overlapping brackets, references to missing
    components. Likely affects every employee on the same template.
    """

    kind = "configuration_error"

    def __init__(
        self,
        message: str,
        *,
        component_codes: Iterable[str] = (),
        employee_id: UUID | None = None,
        component_code: str | None = None,
        stage: str | None = None,
    ):
        self.component_codes = tuple(component_codes)
        # Template label, filled in by the engine once the structure is known
        self.template: str | None = None
        if component_code is None and len(self.component_codes) == 1:
            component_code = self.component_codes[0]
        super().__init__(
            message,
            employee_id=employee_id,
            component_code=component_code,
            stage=stage,
        )


class EvaluationError(ComputationError):
    """A formula referenced an undefined variable or divided by zero."""

    kind = "evaluation_error"


class IntegrityError(ComputationError):
    """Referential data is missing (e.g. an assignment's template version)."""

    kind = "integrity_error"


class ConcurrencyError(ComputationError):
    """Usage counters changed between computation and commit."""

    kind = "concurrency_error"


def require_organization(organization_id: UUID | None) -> UUID:
    """Fail fast when a call is missing its tenant scope."""
    if organization_id is None:
        raise ValidationError("organization_id is required for tenant isolation")
    return organization_id
