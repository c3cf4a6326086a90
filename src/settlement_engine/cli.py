"""Settlement engine command line interface.

Provides operational tools for:
- Schema creation
- Re-driving settlement fan-out steps
- Inspecting the settlement step log
- Verifying an invoice's audit trail

Usage:
    settlement-engine init-db
    settlement-engine redrive --invoice-id X
    settlement-engine steps --invoice-id X
    settlement-engine verify-audit --invoice-id X
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.config import configure_logging, get_settings
from settlement_engine.database import create_schema, get_engine, make_session_factory
from settlement_engine.errors import SettlementError
from settlement_engine.integrations import StubPayoutRail, WebhookDispatcher
from settlement_engine.services.audit_service import AuditLogger, format_timestamp
from settlement_engine.services.settlement_service import SettlementOrchestrator, StepStatus


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


class SettlementCli:
    """Settlement engine command line interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="settlement-engine",
            description="Settlement engine operational tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Database URL (default: $DATABASE_URL)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create all tables")

        redrive = subparsers.add_parser(
            "redrive",
            help="Re-run settlement steps that did not complete",
        )
        redrive.add_argument("--invoice-id", type=parse_uuid, required=True)

        steps = subparsers.add_parser("steps", help="Show the settlement step log")
        steps.add_argument("--invoice-id", type=parse_uuid, required=True)

        verify = subparsers.add_parser(
            "verify-audit",
            help="Verify audit event signatures for an invoice",
        )
        verify.add_argument("--invoice-id", type=parse_uuid, required=True)

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        configure_logging()

        # Dispatch to command handler
        handlers: dict[str, Callable[..., Awaitable[int]]] = {
            "init-db": self._cmd_init_db,
            "redrive": self._cmd_redrive,
            "steps": self._cmd_steps,
            "verify-audit": self._cmd_verify_audit,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            return asyncio.run(handler(parsed))
        except SettlementError as e:
            print(f"ERROR: {e.message}", file=sys.stderr)
            return 1

    async def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create the schema."""
        engine = get_engine(args.database_url)
        try:
            await create_schema(engine)
        finally:
            await engine.dispose()
        print("Schema created.")
        return 0

    async def _cmd_redrive(self, args: argparse.Namespace) -> int:
        """Re-drive incomplete settlement steps."""
        settings = get_settings()

        async def work(session: AsyncSession, factory) -> int:
            dispatcher = WebhookDispatcher(
                factory,
                timeout_seconds=settings.external_call_timeout_seconds,
                max_attempts=settings.webhook_max_attempts,
                wait_for_delivery=True,
            )
            orchestrator = SettlementOrchestrator(
                session,
                payout_rail=StubPayoutRail(),
                dispatcher=dispatcher,
            )
            result = await orchestrator.redrive(args.invoice_id)
            print(f"Re-drove settlement of {result.invoice_number}")
            for step in result.steps:
                print(f"  {step.name:<10} {step.status.value:<10} {step.detail or ''}")
            return 1 if result.failed_steps else 0

        return await self._with_session(args, work)

    async def _cmd_steps(self, args: argparse.Namespace) -> int:
        """Print the step log."""

        async def work(session: AsyncSession, factory) -> int:
            records = await SettlementOrchestrator(session).step_log(args.invoice_id)
            if not records:
                print("No settlement steps recorded.")
                return 0
            for record in records:
                print(
                    f"  {record.step:<10} {record.status:<10} attempts={record.attempts}"
                    + (f" error={record.last_error}" if record.last_error else "")
                )
            incomplete = [r for r in records if r.status != StepStatus.COMPLETED.value]
            return 1 if incomplete else 0

        return await self._with_session(args, work)

    async def _cmd_verify_audit(self, args: argparse.Namespace) -> int:
        """Verify every audit signature of an invoice."""

        async def work(session: AsyncSession, factory) -> int:
            checked = await AuditLogger(session).verify_trail(args.invoice_id)
            invalid = 0
            for event, is_valid in checked:
                mark = "OK " if is_valid else "BAD"
                print(f"  {mark} {format_timestamp(event.created_at)} {event.event_type}")
                invalid += 0 if is_valid else 1

            print("\n" + "=" * 60)
            print(f"{len(checked)} event(s), {invalid} invalid signature(s)")
            return 1 if invalid else 0

        return await self._with_session(args, work)

    @staticmethod
    async def _with_session(args: argparse.Namespace, work) -> int:
        engine = get_engine(args.database_url)
        factory = make_session_factory(engine)
        try:
            async with factory() as session:
                return await work(session, factory)
        finally:
            await engine.dispose()


def main() -> int:
    """CLI entry point."""
    cli = SettlementCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
