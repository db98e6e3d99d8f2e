# cli/cli.py
"""
Operator CLI for the QuoteBid backend: one-off scheduler ticks, stuck alert
reconciliation, placement sync and token issuing.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
import traceback
from datetime import timedelta
from typing import Callable, Dict, Optional

from quotebid.core.exceptions import BaseAPIException
from quotebid.core.logging import configure_structlog
from quotebid.db.session import dispose_engine, get_session_factory
from quotebid.middleware.auth import ROLES, TokenManager
from quotebid.services import Services, build_services


# Output formatting utilities
def _supports_color() -> bool:
    """Check if terminal supports ANSI color codes."""
    if sys.platform == "win32":
        return os.getenv("TERM") == "xterm" or os.getenv("ANSICON") is not None
    return sys.stdout.isatty()


SUPPORTS_COLOR = _supports_color()

# ANSI color codes
GREEN = '\033[92m' if SUPPORTS_COLOR else ''
RED = '\033[91m' if SUPPORTS_COLOR else ''
YELLOW = '\033[93m' if SUPPORTS_COLOR else ''
BLUE = '\033[94m' if SUPPORTS_COLOR else ''
RESET = '\033[0m' if SUPPORTS_COLOR else ''


def print_success(message: str):
    print(f"{GREEN}[✓]{RESET} {message}")


def print_error(message: str):
    print(f"{RED}[✗]{RESET} {message}")


def print_warning(message: str):
    print(f"{YELLOW}[!]{RESET} {message}")


def print_info(message: str):
    print(f"{BLUE}[i]{RESET} {message}")


# Command functions
async def cmd_run_once(services: Services, args: argparse.Namespace) -> int:
    """Command: run one alert tick and one reminder tick."""
    print_info("Running opportunity alert tick...")
    tick = await services.email_scheduler.run_once()
    print_success(
        f"Alerts: {tick.due} due, {tick.sent} sent, {tick.lost_claim} claimed elsewhere, "
        f"{tick.failed} failed"
    )
    if tick.stuck:
        print_warning(f"  {tick.stuck} alert(s) stuck; see 'stuck-emails'")

    print_info("Running reminder tick...")
    reminders = await services.reminders.run_once()
    print_success(
        f"Reminders: {reminders.due} due, {reminders.sent} sent, {reminders.skipped} skipped, "
        f"{reminders.failed} failed"
    )
    return 1 if tick.failed or reminders.failed else 0


async def cmd_stuck_emails(services: Services, args: argparse.Namespace) -> int:
    """Command: list alerts that were attempted and never marked sent."""
    stuck = await services.email_scheduler.find_stuck()
    if not stuck:
        print_success("No stuck opportunity alerts")
        return 0

    print_warning(f"{len(stuck)} stuck opportunity alert(s):")
    for opportunity in stuck:
        scheduled = opportunity.email_scheduled_at.isoformat() if opportunity.email_scheduled_at else "never"
        print(f"  #{opportunity.id} {opportunity.title!r} scheduled={scheduled} industry={opportunity.industry}")
    print_info("Resend with: reset-email <opportunity_id>")
    return 1


async def cmd_reset_email(services: Services, args: argparse.Namespace) -> int:
    """Command: resend a stuck opportunity alert (--force for any alert)."""
    opportunity = await services.storage.get_opportunity(args.opportunity_id)
    if opportunity is None:
        print_error(f"Opportunity {args.opportunity_id} not found")
        return 1
    opportunity = await services.email_scheduler.resend(opportunity.id, force=args.force)
    if opportunity.email_sent_at is None:
        print_error(f"Alert for opportunity {opportunity.id} did not send; check logs")
        return 1
    print_success(f"Alert for opportunity {opportunity.id} sent at {opportunity.email_sent_at.isoformat()}")
    return 0


async def cmd_sync_placements(services: Services, args: argparse.Namespace) -> int:
    """Command: create missing placements for successful pitches."""
    created = await services.placements.sync_successful_pitches()
    print_success(f"Created {created} placement(s)")
    return 0


async def cmd_retry_billing(services: Services, args: argparse.Namespace) -> int:
    """Command: retry billing for a placement in error."""
    result = await services.placements.retry_billing(args.placement_id)
    print_success(
        f"Placement {result.placement.id} paid via {result.payment_source} "
        f"(payment {result.placement.payment_id})"
    )
    if result.notification_error:
        print_warning(f"  Confirmation email failed: {result.notification_error}")
    return 0


# Command registry
COMMANDS: Dict[str, Callable] = {
    'run-once': cmd_run_once,
    'stuck-emails': cmd_stuck_emails,
    'reset-email': cmd_reset_email,
    'sync-placements': cmd_sync_placements,
    'retry-billing': cmd_retry_billing,
}


def cmd_issue_token(args: argparse.Namespace) -> int:
    """Command: print a bearer token; needs no database."""
    token = TokenManager.create_access_token(
        args.user_id,
        role=args.role,
        expires_delta=timedelta(minutes=args.expires_minutes) if args.expires_minutes else None,
    )
    print(token)
    return 0


async def run_command(command_func: Callable, args: argparse.Namespace) -> int:
    services = build_services(get_session_factory())
    try:
        return await command_func(services, args)
    finally:
        await dispose_engine()


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with all commands."""
    parser = argparse.ArgumentParser(
        description='QuoteBid operator CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    subparsers.add_parser('run-once', help='Run one alert tick and one reminder tick')
    subparsers.add_parser('stuck-emails', help='List stuck opportunity alerts')

    reset_parser = subparsers.add_parser('reset-email', help='Send an opportunity alert now')
    reset_parser.add_argument('opportunity_id', type=int)
    reset_parser.add_argument('--force', action='store_true', help='Reschedule even if the alert is not stuck or was already sent')

    subparsers.add_parser('sync-placements', help='Create placements for successful pitches')

    retry_parser = subparsers.add_parser('retry-billing', help='Retry billing for a placement in error')
    retry_parser.add_argument('placement_id', type=int)

    token_parser = subparsers.add_parser('issue-token', help='Issue a bearer token')
    token_parser.add_argument('user_id', type=int)
    token_parser.add_argument('--role', choices=ROLES, default='user')
    token_parser.add_argument('--expires-minutes', type=int, default=None)

    return parser


def main(args: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == 'issue-token':
        return cmd_issue_token(parsed_args)

    command_func = COMMANDS.get(parsed_args.command)
    if not command_func:
        print_error(f"Unknown command: {parsed_args.command}")
        parser.print_help()
        return 1

    configure_structlog()
    try:
        return asyncio.run(run_command(command_func, parsed_args))
    except KeyboardInterrupt:
        print_error("\nInterrupted by user")
        return 130
    except BaseAPIException as e:
        print_error(f"{e.code}: {e.message}")
        return 1
    except Exception as e:
        print_error(f"Error executing command: {str(e)}")
        if os.getenv('DEBUG'):
            traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
