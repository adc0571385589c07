"""Pytest fixtures for pay structure engine tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Callable
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from pay_structure_engine.calculators.components import ComponentDefinition, TemplateVersion
from pay_structure_engine.calculators.engine import PaycheckEngine
from pay_structure_engine.calculators.types import (
    ComponentOverride,
    DateRange,
    PayPeriod,
    SemanticVersion,
    TaxBracket,
    TaxCalculationMethod,
    TaxRuleSet,
    TemplateStatus,
    WorkerStructureAssignment,
)
from pay_structure_engine.config import Settings
from pay_structure_engine.database import create_schema, make_session_factory
from pay_structure_engine.stores.memory import (
    InMemoryAllowanceStore,
    InMemoryStructureStore,
    InMemoryTaxRuleStore,
)

# Use in-memory SQLite for tests (with async support)
# StaticPool keeps every session on the one in-memory database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TODAY = date(2024, 1, 15)


def brackets(*rows: tuple[str, str | None, str]) -> tuple[TaxBracket, ...]:
    """Build a bracket table from (min, max, rate) strings."""
    return tuple(
        TaxBracket(
            bracket_order=index,
            income_min=Decimal(low),
            income_max=Decimal(high) if high is not None else None,
            rate_percentage=Decimal(rate),
        )
        for index, (low, high, rate) in enumerate(rows, start=1)
    )


SURINAME_WAGE_TAX = brackets(
    ("0", "3500", "8"),
    ("3500", "7000", "18"),
    ("7000", "10500", "28"),
    ("10500", None, "38"),
)


@pytest.fixture
def settings() -> Settings:
    """Settings for tests; no environment lookups."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        database_url_sync="sqlite:///:memory:",
        engine_version="test",
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="DEBUG",
        max_concurrency=4,
        employee_timeout_seconds=5,
        run_timeout_seconds=60,
        default_country="SR",
    )


@pytest.fixture
def organization_id() -> UUID:
    return uuid4()


@pytest.fixture
def employee_id() -> UUID:
    return uuid4()


@pytest.fixture
def pay_period() -> PayPeriod:
    """January 2024, paid on the last day."""
    return PayPeriod(
        period_start=date(2024, 1, 1),
        period_end=date(2024, 1, 31),
        pay_date=date(2024, 1, 31),
    )


@pytest.fixture
def wage_tax() -> TaxRuleSet:
    """Progressive wage tax."""
    return TaxRuleSet(
        rule_set_id=UUID("00000000-0000-0000-0000-000000000001"),
        tax_type="wage_tax",
        tax_name="Wage Tax",
        calculation_method=TaxCalculationMethod.BRACKET,
        brackets=SURINAME_WAGE_TAX,
        country="SR",
    )


@pytest.fixture
def structure_store() -> InMemoryStructureStore:
    return InMemoryStructureStore()


@pytest.fixture
def tax_store(wage_tax: TaxRuleSet) -> InMemoryTaxRuleStore:
    store = InMemoryTaxRuleStore()
    store.add(wage_tax)
    return store


@pytest.fixture
def allowance_store() -> InMemoryAllowanceStore:
    return InMemoryAllowanceStore()


@pytest.fixture
def paycheck_engine(
    structure_store: InMemoryStructureStore,
    tax_store: InMemoryTaxRuleStore,
    allowance_store: InMemoryAllowanceStore,
    settings: Settings,
) -> PaycheckEngine:
    return PaycheckEngine(
        structure_store,
        tax_store,
        allowance_store,
        settings=settings,
        today=lambda: TODAY,
    )


@pytest.fixture
def assign_structure(
    structure_store: InMemoryStructureStore, organization_id: UUID
) -> Callable[..., TemplateVersion]:
    """Register a template version and assign it to an employee.

    Returns the template. The assignment starts on 2024-01-01, open ended.
    """

    def _assign(
        employee_id: UUID,
        components: list[ComponentDefinition],
        overrides: tuple[ComponentOverride, ...] = (),
        template_code: str = "STANDARD",
        version: str = "1.0.0",
        status: TemplateStatus = TemplateStatus.ACTIVE,
    ) -> TemplateVersion:
        template = structure_store.add_template(
            TemplateVersion(
                template_id=uuid4(),
                organization_id=organization_id,
                template_code=template_code,
                version=SemanticVersion.parse(version),
                components=tuple(components),
                status=status,
            )
        )
        structure_store.add_assignment(
            WorkerStructureAssignment(
                worker_structure_id=uuid4(),
                employee_id=employee_id,
                organization_id=organization_id,
                template_id=template.template_id,
                validity=DateRange(date(2024, 1, 1)),
                is_current=True,
                overrides=overrides,
            )
        )
        return template

    return _assign


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine with the schema in place."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()
