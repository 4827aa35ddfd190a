"""Business services for the disbursement engine."""

from disbursement_engine.services.adjustment_resolver import (
    AdjustmentResolver,
    ResolvedAdjustment,
    ResolvedAdjustments,
)
from disbursement_engine.services.adjustment_service import AdjustmentService
from disbursement_engine.services.audit_log import AuditLog
from disbursement_engine.services.context import BusinessContext
from disbursement_engine.services.dispatcher import Dispatcher, ScheduleRunResult, TickResult
from disbursement_engine.services.escrow_ledger import (
    BalanceBreakdown,
    EscrowLedger,
    ReservationToken,
)
from disbursement_engine.services.funding_forecast import BalanceForecast, FundingForecast
from disbursement_engine.services.payout_calculator import PayeeAmount, PayoutCalculator
from disbursement_engine.services.schedule_service import ScheduleService
from disbursement_engine.services.state_machine import (
    DepositStateMachine,
    DepositStatus,
    JobStateMachine,
    JobStatus,
    ScheduleStateMachine,
    ScheduleStatus,
)

__all__ = [
    "AdjustmentResolver",
    "AdjustmentService",
    "AuditLog",
    "BalanceBreakdown",
    "BalanceForecast",
    "BusinessContext",
    "DepositStateMachine",
    "DepositStatus",
    "Dispatcher",
    "EscrowLedger",
    "FundingForecast",
    "JobStateMachine",
    "JobStatus",
    "PayeeAmount",
    "PayoutCalculator",
    "ReservationToken",
    "ResolvedAdjustment",
    "ResolvedAdjustments",
    "ScheduleRunResult",
    "ScheduleService",
    "ScheduleStateMachine",
    "ScheduleStatus",
    "TickResult",
]
