"""Escrow-backed scheduled disbursement and payroll engine."""

__version__ = "0.1.0"
