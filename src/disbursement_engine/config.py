"""Configuration management for the disbursement engine.

Two layers:

* ``Settings`` - process settings loaded from the environment (and a ``.env``
  file) for the CLI and API entry points.
* ``EscrowConfig`` / ``DispatcherConfig`` - explicit, immutable configuration
  handed to engine components. Components never read the environment
  themselves.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache

from dotenv import load_dotenv


@dataclass(frozen=True)
class EscrowConfig:
    """
    Escrow ledger configuration.

    Attributes:
        deposit_fee_rate: Fraction of each deposit withheld as the platform
            fee. Default 1.5%.
        default_currency: Currency used when a deposit omits one.
    """

    deposit_fee_rate: Decimal = Decimal("0.015")
    default_currency: str = "ZAR"

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not (Decimal("0") <= self.deposit_fee_rate < Decimal("1")):
            raise ValueError("deposit_fee_rate must be in [0, 1)")
        if len(self.default_currency) != 3:
            raise ValueError("default_currency must be a 3-letter code")


@dataclass(frozen=True)
class DispatcherConfig:
    """
    Scheduler tick configuration.

    Attributes:
        max_workers: Size of the worker pool processing due schedules.
        queue_size: Bound on due schedule ids queued per tick.
        rail_timeout_seconds: Upper bound on a single rail execution. A
            timeout counts as a rail failure and releases the reservation.
        stuck_job_timeout: Age after which a processing or pending job is
            considered abandoned and released during recovery.
        max_job_attempts: Number of times a failed job slot may be retried
            by later ticks of the same schedule.
        sdl_payroll_threshold: Annual payroll above which the business pays
            the skills development levy.
        balance_warning_window: How far ahead the funding forecast looks
            for due schedules.
    """

    max_workers: int = 4
    queue_size: int = 100
    rail_timeout_seconds: float = 30.0
    stuck_job_timeout: timedelta = timedelta(hours=2)
    max_job_attempts: int = 3
    sdl_payroll_threshold: Decimal = Decimal("500000")
    balance_warning_window: timedelta = timedelta(days=7)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        if self.rail_timeout_seconds <= 0:
            raise ValueError("rail_timeout_seconds must be positive")
        if self.stuck_job_timeout <= timedelta(0):
            raise ValueError("stuck_job_timeout must be positive")
        if self.max_job_attempts < 1:
            raise ValueError("max_job_attempts must be at least 1")
        if self.balance_warning_window <= timedelta(0):
            raise ValueError("balance_warning_window must be positive")


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment."""

    database_url: str
    host: str
    port: int
    debug: bool
    log_level: str
    deposit_fee_rate: Decimal
    default_currency: str
    dispatcher_max_workers: int
    rail_timeout_seconds: float
    stuck_job_timeout_minutes: int
    max_job_attempts: int
    sdl_payroll_threshold: Decimal
    tax_table_path: str | None
    balance_warning_days: int
    payment_rail: str | None

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables."""
        load_dotenv()

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./disbursements.db"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            debug=os.getenv("DEBUG", "false").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            deposit_fee_rate=Decimal(os.getenv("DEPOSIT_FEE_RATE", "0.015")),
            default_currency=os.getenv("DEFAULT_CURRENCY", "ZAR"),
            dispatcher_max_workers=int(os.getenv("DISPATCHER_MAX_WORKERS", "4")),
            rail_timeout_seconds=float(os.getenv("RAIL_TIMEOUT_SECONDS", "30")),
            stuck_job_timeout_minutes=int(os.getenv("STUCK_JOB_TIMEOUT_MINUTES", "120")),
            max_job_attempts=int(os.getenv("MAX_JOB_ATTEMPTS", "3")),
            sdl_payroll_threshold=Decimal(os.getenv("SDL_PAYROLL_THRESHOLD", "500000")),
            tax_table_path=os.getenv("TAX_TABLE_PATH") or None,
            balance_warning_days=int(os.getenv("BALANCE_WARNING_DAYS", "7")),
            payment_rail=os.getenv("PAYMENT_RAIL") or None,
        )

    def escrow_config(self) -> EscrowConfig:
        return EscrowConfig(
            deposit_fee_rate=self.deposit_fee_rate,
            default_currency=self.default_currency,
        )

    def dispatcher_config(self) -> DispatcherConfig:
        return DispatcherConfig(
            max_workers=self.dispatcher_max_workers,
            rail_timeout_seconds=self.rail_timeout_seconds,
            stuck_job_timeout=timedelta(minutes=self.stuck_job_timeout_minutes),
            max_job_attempts=self.max_job_attempts,
            sdl_payroll_threshold=self.sdl_payroll_threshold,
            balance_warning_window=timedelta(days=self.balance_warning_days),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_env()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for the CLI and server entry points."""
    logging.basicConfig(
        level=level or get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
