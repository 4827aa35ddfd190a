"""Statutory payroll tax (PAYE, UIF, SDL).

Pure calculation over a versioned ``TaxTable``: no database access, no
clock, no configuration lookups. The same gross and table always give the
same breakdown.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from disbursement_engine.calculators.tax_tables import bundled_table
from disbursement_engine.calculators.types import (
    PERIODS_PER_YEAR,
    TaxBracket,
    TaxBreakdown,
    TaxTable,
)
from disbursement_engine.errors import ConfigurationError, ValidationError

CENTS = Decimal("0.01")
MONTHS_PER_YEAR = Decimal("12")


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class TaxCalculator:
    """Computes PAYE, UIF and SDL for one pay period's gross salary.

    Usage:
        calculator = TaxCalculator()            # bundled 2024/2025 table
        breakdown = calculator.calculate(Decimal("20000.00"))
        breakdown.net_salary
    """

    def __init__(self, table: TaxTable | None = None) -> None:
        self.table = table or bundled_table()

    def calculate(
        self,
        gross: Decimal,
        *,
        uif_exempt: bool = False,
        sdl_applicable: bool = True,
        frequency: str = "monthly",
    ) -> TaxBreakdown:
        """Calculate statutory deductions for ``gross`` earned in one period.

        ``sdl_applicable`` is decided by the caller from the business's annual
        payroll; SDL is reported but not withheld from the employee.
        """
        gross = Decimal(str(gross))
        if gross < 0:
            raise ValidationError("Gross salary cannot be negative", field="gross")
        periods = self._periods_per_year(frequency)

        paye = self._calculate_paye(gross, periods)
        if uif_exempt:
            uif_employee = uif_employer = Decimal("0.00")
        else:
            uif_employee = self._calculate_uif(gross, self.table.uif_employee_rate, periods)
            uif_employer = self._calculate_uif(gross, self.table.uif_employer_rate, periods)
        sdl = self._calculate_sdl(gross) if sdl_applicable else Decimal("0.00")

        notes = []
        if uif_exempt:
            notes.append("UIF exempt")
        if not sdl_applicable:
            notes.append("SDL not applicable")

        return TaxBreakdown(
            gross=_round(gross),
            paye=paye,
            uif_employee=uif_employee,
            uif_employer=uif_employer,
            sdl=sdl,
            net_salary=_round(gross) - paye - uif_employee,
            table_version=self.table.version,
            frequency=frequency,
            notes=notes,
        )

    def annual_tax(self, annual_income: Decimal) -> Decimal:
        """Annual PAYE after the primary rebate, unrounded."""
        if annual_income <= 0:
            return Decimal("0")
        bracket = self._bracket_for(annual_income)
        tax = bracket.base_tax + (annual_income - bracket.min_amount) * bracket.rate
        return max(Decimal("0"), tax - self.table.primary_rebate)

    def _calculate_paye(self, gross: Decimal, periods: int) -> Decimal:
        """Annualise, apply brackets and rebate, de-annualise."""
        if gross <= 0:
            return Decimal("0.00")
        annual_income = gross * periods
        return _round(self.annual_tax(annual_income) / periods)

    def _calculate_uif(self, gross: Decimal, rate: Decimal, periods: int) -> Decimal:
        """Rate applied to gross, capped at the ceiling scaled to the period."""
        if gross <= 0:
            return Decimal("0.00")
        ceiling = self.table.uif_monthly_ceiling * MONTHS_PER_YEAR / periods
        return _round(min(gross, ceiling) * rate)

    def _calculate_sdl(self, gross: Decimal) -> Decimal:
        if gross <= 0:
            return Decimal("0.00")
        return _round(gross * self.table.sdl_rate)

    def _bracket_for(self, annual_income: Decimal) -> TaxBracket:
        applicable = self.table.brackets[0]
        for bracket in self.table.brackets:
            if bracket.min_amount <= annual_income:
                applicable = bracket
            else:
                break
        return applicable

    @staticmethod
    def _periods_per_year(frequency: str) -> int:
        try:
            return PERIODS_PER_YEAR[frequency]
        except KeyError:
            raise ConfigurationError(f"Unsupported pay frequency '{frequency}'") from None
