"""Pydantic schemas for API request/response models."""

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from pay_structure_engine.calculators.types import PayInputs, PayPeriod


# ============================================================================
# Paycheck schemas
# ============================================================================


class PayInputsSchema(BaseModel):
    """Per-employee inputs for the pay period."""

    base_salary: Decimal | None = Field(default=None, ge=0)
    hourly_rate: Decimal | None = Field(default=None, ge=0)
    hours_worked: Decimal = Field(default=Decimal("0"), ge=0)
    overtime_hours: Decimal = Field(default=Decimal("0"), ge=0)
    variables: dict[str, Decimal] = Field(default_factory=dict)
    country: str | None = None
    state: str | None = None
    locality: str | None = None
    is_resident: bool = True

    def to_inputs(self) -> PayInputs:
        return PayInputs(**self.model_dump())


class PaycheckPreviewRequest(BaseModel):
    """Schema for previewing one employee's paycheck."""

    employee_id: UUID
    period_start: date
    period_end: date
    pay_date: date
    frequency: str = "monthly"
    inputs: PayInputsSchema = Field(default_factory=PayInputsSchema)

    @model_validator(mode="after")
    def check_period(self) -> "PaycheckPreviewRequest":
        if self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start")
        return self

    def to_pay_period(self) -> PayPeriod:
        return PayPeriod(
            period_start=self.period_start,
            period_end=self.period_end,
            pay_date=self.pay_date,
            frequency=self.frequency,
        )


class PaycheckPreviewResponse(BaseModel):
    """Gross-to-net breakdown; amounts are decimal strings."""

    calculation_id: UUID
    employee_id: UUID
    template_code: str
    template_version: str
    inputs_fingerprint: str
    rules_fingerprint: str
    effective_tax_rate: str
    earnings: list[dict[str, Any]]
    taxes: list[dict[str, Any]]
    deductions: list[dict[str, Any]]
    summary: dict[str, str]


# ============================================================================
# Formula schemas
# ============================================================================


class FormulaTemplateResponse(BaseModel):
    name: str
    formula: str
    description: str
    variables: list[str]
    example: dict[str, str]


class FormulaValidateRequest(BaseModel):
    formula: str
    variables: dict[str, Decimal] | None = None


class FormulaValidateResponse(BaseModel):
    valid: bool
    message: str
    variables: list[str]
    result: str | None = None


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    code: str
    employee_id: UUID | None = None
    component_code: str | None = None
    stage: str | None = None
