"""Data access for the calculation engine."""

from pay_structure_engine.stores.allowances import SqlAllowanceStore
from pay_structure_engine.stores.base import AllowanceStore, StructureStore, TaxRuleStore
from pay_structure_engine.stores.memory import (
    InMemoryAllowanceStore,
    InMemoryStructureStore,
    InMemoryTaxRuleStore,
)
from pay_structure_engine.stores.structures import SqlStructureStore
from pay_structure_engine.stores.tax_rules import SqlTaxRuleStore

__all__ = [
    "AllowanceStore",
    "InMemoryAllowanceStore",
    "InMemoryStructureStore",
    "InMemoryTaxRuleStore",
    "SqlAllowanceStore",
    "SqlStructureStore",
    "SqlTaxRuleStore",
    "StructureStore",
    "TaxRuleStore",
]
