"""Formula authoring endpoints."""

from fastapi import APIRouter

from pay_structure_engine.api.schemas import (
    FormulaTemplateResponse,
    FormulaValidateRequest,
    FormulaValidateResponse,
)
from pay_structure_engine.calculators.expression import FORMULA_TEMPLATES, validate_formula

router = APIRouter(prefix="/formulas", tags=["formulas"])


@router.get("/templates", response_model=list[FormulaTemplateResponse])
async def list_formula_templates() -> list[FormulaTemplateResponse]:
    """Starter formulas for common pay components."""
    return [
        FormulaTemplateResponse(
            name=t.name,
            formula=t.formula,
            description=t.description,
            variables=list(t.variables),
            example={k: str(v) for k, v in t.example.items()},
        )
        for t in FORMULA_TEMPLATES
    ]


@router.post("/validate", response_model=FormulaValidateResponse)
async def validate(payload: FormulaValidateRequest) -> FormulaValidateResponse:
    """Check a formula's syntax and optionally evaluate it with sample values."""
    outcome = validate_formula(payload.formula, payload.variables)
    return FormulaValidateResponse(
        valid=outcome.valid,
        message=outcome.message,
        variables=list(outcome.variables),
        result=str(outcome.result) if outcome.result is not None else None,
    )
