"""API routes."""

from pay_structure_engine.api.routes.formulas import router as formulas_router
from pay_structure_engine.api.routes.health import router as health_router
from pay_structure_engine.api.routes.paychecks import router as paychecks_router

__all__ = ["formulas_router", "health_router", "paychecks_router"]
