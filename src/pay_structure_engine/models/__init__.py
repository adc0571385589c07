"""ORM models."""

from pay_structure_engine.models.allowance import Allowance, EmployeeAllowanceUsage
from pay_structure_engine.models.base import Base
from pay_structure_engine.models.pay_structure import (
    PayStructureComponent,
    PayStructureTemplate,
    WorkerComponentOverride,
    WorkerPayStructure,
)
from pay_structure_engine.models.paycheck import PaycheckRecord
from pay_structure_engine.models.tax import TaxBracket, TaxRuleSet

__all__ = [
    "Allowance",
    "Base",
    "EmployeeAllowanceUsage",
    "PayStructureComponent",
    "PayStructureTemplate",
    "PaycheckRecord",
    "TaxBracket",
    "TaxRuleSet",
    "WorkerComponentOverride",
    "WorkerPayStructure",
]
