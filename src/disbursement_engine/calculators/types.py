"""Type definitions for statutory tax calculation."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

# Pay periods per year for each schedule frequency. Daily pay counts working
# days only (52 weeks of five days); daily payroll runs on business days.
PERIODS_PER_YEAR: dict[str, int] = {
    "monthly": 12,
    "weekly": 52,
    "daily": 260,
}


@dataclass(frozen=True)
class TaxBracket:
    """Progressive PAYE bracket.

    Income above ``min_amount`` is taxed at ``rate`` on top of ``base_tax``,
    the cumulative tax owed on everything below the bracket.
    """

    min_amount: Decimal
    rate: Decimal  # As decimal, e.g., 0.26 for 26%
    base_tax: Decimal = Decimal("0")


@dataclass(frozen=True)
class TaxTable:
    """Versioned statutory table for one tax year."""

    version: str
    brackets: tuple[TaxBracket, ...]
    primary_rebate: Decimal
    uif_employee_rate: Decimal
    uif_employer_rate: Decimal
    uif_monthly_ceiling: Decimal
    sdl_rate: Decimal

    def __post_init__(self) -> None:
        """Validate table shape."""
        if not self.brackets:
            raise ValueError("Tax table needs at least one bracket")
        mins = [b.min_amount for b in self.brackets]
        if mins != sorted(mins) or len(set(mins)) != len(mins):
            raise ValueError("Bracket lower bounds must be strictly increasing")
        if mins[0] != Decimal("0"):
            raise ValueError("First bracket must start at 0")

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaxTable:
        """Parse a JSON payload.

        {
            "version": "2024/2025",
            "brackets": [{"min": 0, "rate": 0.18, "base": 0}, ...],
            "primary_rebate": 17235,
            "uif": {"employee_rate": 0.01, "employer_rate": 0.01, "monthly_ceiling": 17712},
            "sdl_rate": 0.01
        }
        """
        brackets = tuple(
            TaxBracket(
                min_amount=Decimal(str(b["min"])),
                rate=Decimal(str(b["rate"])),
                base_tax=Decimal(str(b.get("base", 0))),
            )
            for b in sorted(payload["brackets"], key=lambda b: Decimal(str(b["min"])))
        )
        uif = payload.get("uif", {})
        return cls(
            version=str(payload["version"]),
            brackets=brackets,
            primary_rebate=Decimal(str(payload.get("primary_rebate", 0))),
            uif_employee_rate=Decimal(str(uif.get("employee_rate", 0))),
            uif_employer_rate=Decimal(str(uif.get("employer_rate", 0))),
            uif_monthly_ceiling=Decimal(str(uif.get("monthly_ceiling", 0))),
            sdl_rate=Decimal(str(payload.get("sdl_rate", 0))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "brackets": [
                {"min": str(b.min_amount), "rate": str(b.rate), "base": str(b.base_tax)}
                for b in self.brackets
            ],
            "primary_rebate": str(self.primary_rebate),
            "uif": {
                "employee_rate": str(self.uif_employee_rate),
                "employer_rate": str(self.uif_employer_rate),
                "monthly_ceiling": str(self.uif_monthly_ceiling),
            },
            "sdl_rate": str(self.sdl_rate),
        }


@dataclass(frozen=True)
class TaxBreakdown:
    """Statutory deductions for one pay period."""

    gross: Decimal
    paye: Decimal
    uif_employee: Decimal
    uif_employer: Decimal
    sdl: Decimal
    net_salary: Decimal
    table_version: str
    frequency: str = "monthly"
    notes: list[str] = field(default_factory=list, compare=False)

    @property
    def total_deductions(self) -> Decimal:
        """Deductions withheld from the employee (SDL is an employer cost)."""
        return self.paye + self.uif_employee

    @property
    def employer_cost(self) -> Decimal:
        return self.gross + self.uif_employer + self.sdl

    def to_dict(self) -> dict[str, str]:
        return {
            "gross": str(self.gross),
            "paye": str(self.paye),
            "uif_employee": str(self.uif_employee),
            "uif_employer": str(self.uif_employer),
            "sdl": str(self.sdl),
            "total_deductions": str(self.total_deductions),
            "net_salary": str(self.net_salary),
            "table_version": self.table_version,
            "frequency": self.frequency,
        }
