"""Statutory payroll tax calculation."""

from disbursement_engine.calculators.tax_calculator import TaxCalculator
from disbursement_engine.calculators.tax_tables import (
    DEFAULT_TABLE_VERSION,
    bundled_table,
    load_table_file,
    resolve_table,
)
from disbursement_engine.calculators.types import (
    PERIODS_PER_YEAR,
    TaxBracket,
    TaxBreakdown,
    TaxTable,
)

__all__ = [
    "TaxCalculator",
    "DEFAULT_TABLE_VERSION",
    "bundled_table",
    "load_table_file",
    "resolve_table",
    "PERIODS_PER_YEAR",
    "TaxBracket",
    "TaxBreakdown",
    "TaxTable",
]
