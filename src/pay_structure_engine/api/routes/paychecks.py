"""Paycheck API endpoints."""

from fastapi import APIRouter, status

from pay_structure_engine.api.dependencies import Engine, OrganizationId
from pay_structure_engine.api.schemas import (
    ErrorResponse,
    PaycheckPreviewRequest,
    PaycheckPreviewResponse,
)
from pay_structure_engine.calculators.aggregator import effective_tax_rate

router = APIRouter(prefix="/paychecks", tags=["paychecks"])


@router.post(
    "/preview",
    response_model=PaycheckPreviewResponse,
    status_code=status.HTTP_200_OK,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def preview_paycheck(
    engine: Engine,
    organization_id: OrganizationId,
    payload: PaycheckPreviewRequest,
) -> PaycheckPreviewResponse:
    """Compute a paycheck without committing usage or storing a record."""
    result = await engine.compute_paycheck(
        payload.employee_id,
        organization_id,
        payload.to_pay_period(),
        payload.inputs.to_inputs(),
    )
    breakdown = result.components.to_dict()
    return PaycheckPreviewResponse(
        calculation_id=result.calculation_id,
        employee_id=result.employee_id,
        template_code=result.template_code,
        template_version=result.template_version,
        inputs_fingerprint=result.inputs_fingerprint,
        rules_fingerprint=result.rules_fingerprint,
        effective_tax_rate=str(effective_tax_rate(result.components.summary)),
        **breakdown,
    )
