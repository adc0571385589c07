"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from pay_structure_engine.calculators.engine import PaycheckEngine
from pay_structure_engine.config import get_settings
from pay_structure_engine.database import get_session_factory
from pay_structure_engine.stores import SqlAllowanceStore, SqlStructureStore, SqlTaxRuleStore


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()


def get_paycheck_engine() -> PaycheckEngine:
    """Engine backed by the SQLAlchemy stores."""
    factory = get_session_factory()
    return PaycheckEngine(
        structure_store=SqlStructureStore(factory),
        tax_store=SqlTaxRuleStore(factory),
        allowance_store=SqlAllowanceStore(factory),
        settings=get_settings(),
    )


async def get_organization_id(
    x_organization_id: Annotated[str | None, Header()] = None
) -> UUID:
    """Extract organization ID from header."""
    if not x_organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Organization-ID header is required",
        )
    try:
        return UUID(x_organization_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Organization-ID format",
        )


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
OrganizationId = Annotated[UUID, Depends(get_organization_id)]
Engine = Annotated[PaycheckEngine, Depends(get_paycheck_engine)]
