"""Disbursement engine command line interface.

Provides operational tools for:
- Schema creation
- Dispatcher ticks (once or on an interval)
- Escrow balance queries and upcoming shortfall warnings
- Pay period previews

Usage:
    python -m disbursement_engine.cli init-db
    python -m disbursement_engine.cli tick --rail stub --now 2025-03-25T09:00:00Z
    python -m disbursement_engine.cli tick --rail stub --interval 60
    python -m disbursement_engine.cli check-balances
    python -m disbursement_engine.cli balance --business-id X
    python -m disbursement_engine.cli preview-period --business-id X --schedule-id Y
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from disbursement_engine.calculators import TaxCalculator, resolve_table
from disbursement_engine.config import Settings, configure_logging, get_settings
from disbursement_engine.database import (
    create_schema,
    create_session_factory,
    get_engine,
    session_scope,
)
from disbursement_engine.errors import DisbursementError
from disbursement_engine.rails import RAILS, PaymentRail, rail_for
from disbursement_engine.services.context import BusinessContext
from disbursement_engine.services.dispatcher import Dispatcher
from disbursement_engine.services.escrow_ledger import EscrowLedger
from disbursement_engine.services.schedule_service import ScheduleService

CLI_ACTOR = "system:cli"


def parse_datetime(s: str) -> datetime:
    """Parse ISO datetime string; naive values are taken as UTC."""
    value = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


class DisbursementCli:
    """Disbursement engine command line interface."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m disbursement_engine.cli",
            description="Disbursement engine operational tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Database URL (default: DATABASE_URL from the environment)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # init-db command
        subparsers.add_parser("init-db", help="Create all tables")

        # tick command
        tick = subparsers.add_parser("tick", help="Run due schedules")
        tick.add_argument(
            "--now",
            type=parse_datetime,
            help="Treat this instant as now (ISO format, default: current time)",
        )
        tick.add_argument(
            "--interval",
            type=float,
            help="Keep ticking every N seconds until interrupted",
        )
        tick.add_argument(
            "--rail",
            choices=sorted(RAILS),
            help="Payment rail adapter (default: PAYMENT_RAIL from the environment)",
        )

        # balance command
        balance = subparsers.add_parser("balance", help="Show escrow balance")
        balance.add_argument(
            "--business-id",
            type=parse_uuid,
            required=True,
            help="Business to query",
        )
        balance.add_argument(
            "--format",
            choices=["text", "json"],
            default="text",
            help="Output format (default: text)",
        )

        # check-balances command
        check = subparsers.add_parser(
            "check-balances",
            help="Warn about escrow that cannot cover schedules due soon",
        )
        check.add_argument(
            "--now",
            type=parse_datetime,
            help="Treat this instant as now (ISO format, default: current time)",
        )
        check.add_argument(
            "--format",
            choices=["text", "json"],
            default="text",
            help="Output format (default: text)",
        )

        # preview-period command
        preview = subparsers.add_parser(
            "preview-period",
            help="Show the pay period of a schedule's next occurrence",
        )
        preview.add_argument(
            "--business-id",
            type=parse_uuid,
            required=True,
            help="Business owning the schedule",
        )
        preview.add_argument(
            "--schedule-id",
            type=parse_uuid,
            required=True,
            help="Schedule to preview",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        settings = self.settings or get_settings()
        self.settings = settings
        configure_logging(settings.log_level)

        # Dispatch to command handler
        handlers: dict[str, Callable[[argparse.Namespace, Settings], int]] = {
            "init-db": self._cmd_init_db,
            "tick": self._cmd_tick,
            "balance": self._cmd_balance,
            "check-balances": self._cmd_check_balances,
            "preview-period": self._cmd_preview_period,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1
        try:
            return handler(parsed, settings)
        except DisbursementError as e:
            print(f"ERROR [{e.code}]: {e.message}", file=sys.stderr)
            return 1

    @staticmethod
    def _session_factory(args: argparse.Namespace, settings: Settings) -> sessionmaker[Session]:
        engine = get_engine(args.database_url or settings.database_url)
        create_schema(engine)
        return create_session_factory(engine)

    def _cmd_init_db(self, args: argparse.Namespace, settings: Settings) -> int:
        """Create the schema."""
        self._session_factory(args, settings)
        print("Schema created")
        return 0

    def _cmd_tick(self, args: argparse.Namespace, settings: Settings) -> int:
        """Run the dispatcher once, or on an interval."""
        rail_name = args.rail or settings.payment_rail
        if rail_name is None:
            print(
                "ERROR: no payment rail selected; pass --rail or set PAYMENT_RAIL",
                file=sys.stderr,
            )
            return 1
        rail = rail_for(rail_name)
        factory = self._session_factory(args, settings)

        with self._dispatcher(factory, rail, settings) as dispatcher:
            while True:
                result = dispatcher.tick(args.now)
                print(json.dumps(result.to_dict(), indent=2))
                if args.interval is None:
                    return 1 if result.errors else 0
                try:
                    time.sleep(args.interval)
                except KeyboardInterrupt:
                    return 0

    def _cmd_balance(self, args: argparse.Namespace, settings: Settings) -> int:
        """Query escrow balance."""
        factory = self._session_factory(args, settings)
        with session_scope(factory) as session:
            breakdown = EscrowLedger(session, settings.escrow_config()).balance_breakdown(
                args.business_id
            )

        if args.format == "json":
            print(json.dumps(breakdown.to_dict(), indent=2))
            return 0

        print(f"Escrow balance for business: {args.business_id}")
        print(f"\n  Deposited:        {breakdown.deposited:>15,.2f}")
        print(f"  Reserved:         {breakdown.reserved:>15,.2f}")
        print(f"  Consumed:         {breakdown.consumed:>15,.2f}")
        print(f"  Available:        {breakdown.available:>15,.2f}")
        print(f"  Pending deposits: {breakdown.pending_deposits:>15,.2f}")
        return 0

    def _cmd_check_balances(self, args: argparse.Namespace, settings: Settings) -> int:
        """Forecast escrow against the schedules due in the warning window.

        Exits 2 when any business is short, so cron wrappers can alert.
        """
        factory = self._session_factory(args, settings)
        # Forecasting never touches the rail.
        with self._dispatcher(factory, rail_for("stub"), settings) as dispatcher:
            forecasts = dispatcher.check_upcoming_balances(args.now)
        short = [f for f in forecasts if f.is_short]

        if args.format == "json":
            print(json.dumps([f.to_dict() for f in forecasts], indent=2))
        elif not short:
            print(f"All {len(forecasts)} business(es) with upcoming schedules are funded")
        else:
            for forecast in short:
                print(
                    f"Business {forecast.business_id}: short {forecast.shortfall:,.2f} "
                    f"(required {forecast.required:,.2f}, available {forecast.available:,.2f}, "
                    f"{len(forecast.schedule_ids)} schedule(s))"
                )
        return 2 if short else 0

    def _cmd_preview_period(self, args: argparse.Namespace, settings: Settings) -> int:
        """Show the next pay period of a schedule."""
        factory = self._session_factory(args, settings)
        ctx = BusinessContext(business_id=args.business_id, actor=CLI_ACTOR)
        with session_scope(factory) as session:
            period = ScheduleService(session).preview_pay_period(ctx, args.schedule_id)
        print(f"Schedule {args.schedule_id}: {period.start.isoformat()} .. {period.end.isoformat()}")
        return 0

    @staticmethod
    def _dispatcher(
        factory: sessionmaker[Session],
        rail: PaymentRail,
        settings: Settings,
    ) -> Dispatcher:
        return Dispatcher(
            factory,
            rail,
            config=settings.dispatcher_config(),
            tax_calculator=TaxCalculator(resolve_table(settings.tax_table_path)),
            escrow_config=settings.escrow_config(),
        )


def main() -> int:
    """CLI entry point."""
    cli = DisbursementCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
