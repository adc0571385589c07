"""Pay structure resolution and paycheck calculation."""

from pay_structure_engine.calculators.aggregator import PaycheckAggregator
from pay_structure_engine.calculators.engine import PaycheckEngine
from pay_structure_engine.calculators.evaluator import ComponentEvaluator, order_components
from pay_structure_engine.calculators.expression import parse_formula, validate_formula
from pay_structure_engine.calculators.resolver import StructureResolver
from pay_structure_engine.calculators.tax_calculator import TaxCalculator

__all__ = [
    "ComponentEvaluator",
    "PaycheckAggregator",
    "PaycheckEngine",
    "StructureResolver",
    "TaxCalculator",
    "order_components",
    "parse_formula",
    "validate_formula",
]
