#!/usr/bin/env python3
"""
Account Pool CLI
Run the reset job, feed and drain the reset queue, and check lease budgets by hand.
"""

import argparse
import logging
import sys
import time

from account_pool.errors import AccountPoolError, NotFoundError
from account_pool.reset import run_reset
from account_pool.services import ServiceContext
from account_pool.settings import Settings


def _services(args) -> ServiceContext:
    return ServiceContext.from_settings(Settings.from_env())


def cmd_reset(args):
    """Nuke the account named by RESET_ACCOUNT and return it to the pool."""
    services = _services(args)
    account_id = services.settings.reset_account_id
    print(f"Resetting account {account_id}")
    print(f"Nuke enabled: {services.settings.nuke_enabled}")
    print()

    run_reset(services)
    print(f"{account_id} : Reset complete")
    return 0


def cmd_drain(args):
    """Drain the reset queue once."""
    services = _services(args)
    output = services.reset_drainer().drain(int(time.time()))

    print("Reset Queue Drain")
    print("=" * 40)
    for account_id, result in output.accounts.items():
        status = "OK" if result.ok else "FAILED"
        print(
            f"  {account_id}: {status} "
            f"(build: {result.build_trigger}, deleted: {result.message_deletion})"
        )
    print()
    print(f"Success: {output.success}")
    for error in output.errors:
        print(f"  {error}")

    return 0 if output.success else 1


def cmd_populate_queue(args):
    """Queue every NotReady account for reset."""
    services = _services(args)
    queued = services.account_service().queue_not_ready_accounts()

    print(f"Queued {len(queued)} accounts for reset")
    for account_id in queued:
        print(f"  {account_id}")
    return 0


def cmd_check_budget(args):
    """Run a budget check for one lease."""
    services = _services(args)
    lease = services.lease_table.get(args.account, args.principal)
    if lease is None:
        raise NotFoundError("lease", f"{args.principal} @ {args.account}")

    result = services.budget_evaluator().check_budget(lease)

    print("Budget Check")
    print("=" * 40)
    print(f"Lease:            {lease}")
    print(f"Budget:           ${lease.budget_amount or 0:.2f}")
    print(f"Actual Spend:     ${result.actual_spend:.2f}")
    print(f"Principal Spend:  ${result.principal_spend:.2f}")
    print(f"Expired:          {result.expired} ({result.reason.value})")
    print(f"Email Sent:       {result.notified}")
    return 0


def cmd_orphan(args):
    """Mark an account Orphaned and end its active leases."""
    services = _services(args)
    account = services.account_service().orphan_account(args.account)
    print(f"Account {account.id} is now {account.status.value}")
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Account Pool CLI - lease budgets and account resets"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("reset", help="Run the reset job for RESET_ACCOUNT")
    subparsers.add_parser("drain", help="Drain the reset queue")
    subparsers.add_parser("populate-queue", help="Queue every NotReady account for reset")

    check_parser = subparsers.add_parser("check-budget", help="Check one lease's budget")
    check_parser.add_argument("--account", required=True, help="Leased account ID")
    check_parser.add_argument("--principal", required=True, help="Lease principal ID")

    orphan_parser = subparsers.add_parser("orphan", help="Orphan an account")
    orphan_parser.add_argument("--account", required=True, help="Account ID")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "reset": cmd_reset,
        "drain": cmd_drain,
        "populate-queue": cmd_populate_queue,
        "check-budget": cmd_check_budget,
        "orphan": cmd_orphan,
    }

    try:
        return commands[args.command](args)
    except AccountPoolError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
