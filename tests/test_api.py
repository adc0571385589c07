"""API tests through the ASGI app with in-memory stores."""

from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from pay_structure_engine.api.app import create_app
from pay_structure_engine.api.dependencies import get_db_session, get_paycheck_engine
from pay_structure_engine.calculators.components import FixedComponent, FormulaComponent
from pay_structure_engine.calculators.types import ComponentCategory

BASE_SALARY = FixedComponent(
    code="BASE_SALARY",
    name="Base Salary",
    category=ComponentCategory.EARNING,
    is_taxable=True,
    amount=Decimal("3000"),
)


@pytest.fixture
async def client(paycheck_engine, session):
    app = create_app()

    async def override_session():
        yield session

    app.dependency_overrides[get_paycheck_engine] = lambda: paycheck_engine
    app.dependency_overrides[get_db_session] = override_session

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def headers(organization_id):
    return {"X-Organization-ID": str(organization_id)}


def preview_body(employee_id, **inputs):
    return {
        "employee_id": str(employee_id),
        "period_start": "2024-01-01",
        "period_end": "2024-01-31",
        "pay_date": "2024-01-31",
        "inputs": inputs,
    }


class TestPaycheckPreview:
    async def test_preview(self, client, headers, assign_structure, employee_id):
        assign_structure(employee_id, [BASE_SALARY])

        response = await client.post(
            "/api/v1/paychecks/preview", json=preview_body(employee_id), headers=headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["template_code"] == "STANDARD"
        assert body["template_version"] == "1.0.0"
        assert body["summary"]["totalEarnings"] == "3000.00"
        assert body["summary"]["netPay"] == "2760.00"
        assert body["effective_tax_rate"] == "8.00"
        assert [t["component_code"] for t in body["taxes"]] == ["WAGE_TAX"]
        assert body["earnings"][0]["amount"] == "3000.00"

    async def test_preview_is_deterministic(self, client, headers, assign_structure, employee_id):
        assign_structure(employee_id, [BASE_SALARY])
        body = preview_body(employee_id)

        first = await client.post("/api/v1/paychecks/preview", json=body, headers=headers)
        second = await client.post("/api/v1/paychecks/preview", json=body, headers=headers)

        assert first.json()["calculation_id"] == second.json()["calculation_id"]

    async def test_inputs_reach_the_engine(self, client, headers, assign_structure, employee_id):
        assign_structure(employee_id, [])

        response = await client.post(
            "/api/v1/paychecks/preview",
            json=preview_body(employee_id, hourly_rate="25", hours_worked="100"),
            headers=headers,
        )

        assert response.status_code == 200
        [regular] = response.json()["earnings"]
        assert regular["component_code"] == "REGULAR_PAY"
        assert regular["source"] == "system"

    async def test_missing_organization_header(self, client, employee_id):
        response = await client.post("/api/v1/paychecks/preview", json=preview_body(employee_id))
        assert response.status_code == 400
        assert "X-Organization-ID" in response.json()["detail"]

    async def test_invalid_organization_header(self, client, employee_id):
        response = await client.post(
            "/api/v1/paychecks/preview",
            json=preview_body(employee_id),
            headers={"X-Organization-ID": "not-a-uuid"},
        )
        assert response.status_code == 400

    async def test_period_ending_before_start(self, client, headers, employee_id):
        body = preview_body(employee_id)
        body["period_end"] = "2023-12-31"
        response = await client.post("/api/v1/paychecks/preview", json=body, headers=headers)
        assert response.status_code == 422

    async def test_negative_inputs_rejected(self, client, headers, employee_id):
        response = await client.post(
            "/api/v1/paychecks/preview",
            json=preview_body(employee_id, base_salary="-1"),
            headers=headers,
        )
        assert response.status_code == 422


class TestErrorMapping:
    async def test_no_structure_is_404(self, client, headers):
        employee_id = uuid4()
        response = await client.post(
            "/api/v1/paychecks/preview", json=preview_body(employee_id), headers=headers
        )

        assert response.status_code == 404
        body = response.json()
        assert body["code"] == "NOT_FOUND"
        assert body["stage"] == "resolving"
        assert body["employee_id"] == str(employee_id)

    async def test_configuration_error_is_422(
        self, client, headers, assign_structure, employee_id
    ):
        assign_structure(
            employee_id,
            [
                FormulaComponent(
                    code="A", name="A", category=ComponentCategory.EARNING, formula="{B} + 1"
                ),
                FormulaComponent(
                    code="B", name="B", category=ComponentCategory.EARNING, formula="{A} * 2"
                ),
            ],
        )

        response = await client.post(
            "/api/v1/paychecks/preview", json=preview_body(employee_id), headers=headers
        )

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "CONFIGURATION_ERROR"
        assert body["stage"] == "evaluating"

    async def test_evaluation_error_names_component(
        self, client, headers, assign_structure, employee_id
    ):
        assign_structure(
            employee_id,
            [
                FormulaComponent(
                    code="COMMISSION",
                    name="Commission",
                    category=ComponentCategory.EARNING,
                    formula="{sales} * 0.05",
                )
            ],
        )

        response = await client.post(
            "/api/v1/paychecks/preview", json=preview_body(employee_id), headers=headers
        )

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "EVALUATION_ERROR"
        assert body["component_code"] == "COMMISSION"


class TestFormulas:
    async def test_templates(self, client):
        response = await client.get("/api/v1/formulas/templates")
        assert response.status_code == 200
        names = [t["name"] for t in response.json()]
        assert "Capped Bonus" in names

    async def test_validate_with_values(self, client):
        response = await client.post(
            "/api/v1/formulas/validate",
            json={"formula": "{hours} * {rate}", "variables": {"hours": "10", "rate": "5"}},
        )
        body = response.json()
        assert body["valid"] is True
        assert body["variables"] == ["hours", "rate"]
        assert Decimal(body["result"]) == Decimal("50")

    async def test_validate_syntax_error(self, client):
        response = await client.post("/api/v1/formulas/validate", json={"formula": "2 +"})
        assert response.status_code == 200
        assert response.json()["valid"] is False


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "healthy"

    async def test_health_endpoints(self, client):
        assert (await client.get("/ready")).json() == {"status": "ready"}
        assert (await client.get("/live")).json() == {"status": "alive"}
