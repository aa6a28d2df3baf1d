"""Command line interface for the lock reconciler.

Usage:
    # Serve the HTTP API with the scheduler
    lock-reconciler serve

    # Run one reconciliation pass in the foreground
    lock-reconciler run

    # Retry unresolved failures (all, or selected ids)
    lock-reconciler retry [--id 3 --id 7]

    # Show unresolved failures
    lock-reconciler failures [--all]

    # Refresh lock profiles and slots from the lock vendor
    lock-reconciler refresh-locks

    # Set a guest passcode by hand
    lock-reconciler update-code <lock_id> 1234 --start 2024-06-01 --end 2024-06-04
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date

from lock_reconciler.config import settings
from lock_reconciler.core.manager import ReconciliationManager
from lock_reconciler.errors import ReconcilerError


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cmd_run(args, manager: ReconciliationManager) -> int:
    summary = await manager.run_now(trigger="cli")
    _print(summary)
    return 0 if summary and summary["status"] == "completed" else 1


async def cmd_retry(args, manager: ReconciliationManager) -> int:
    summary = await manager.retry_failures(args.ids or None)
    _print(summary.to_dict())
    return 0 if summary.failed == 0 else 1


async def cmd_failures(args, manager: ReconciliationManager) -> int:
    failures = await manager.get_failures(include_resolved=args.all)
    _print(failures)
    print(f"{len(failures)} failure records", file=sys.stderr)
    return 0


async def cmd_refresh_locks(args, manager: ReconciliationManager) -> int:
    result = await manager.refresh_locks()
    _print(result.to_dict())
    return 0


async def cmd_update_code(args, manager: ReconciliationManager) -> int:
    result = await manager.manual_update(
        args.lock_id,
        args.code,
        args.start,
        args.end,
        reservation_id=args.reservation,
        skip_upstream=args.skip_upstream,
    )
    if not result.success:
        print(f"Error ({result.kind.value}): {result.message}", file=sys.stderr)
        return 1
    print(f"Lock {result.lock_id} slot {result.passcode_id} set to {result.code}")
    if result.upstream_error:
        print(f"Warning: reservation not annotated: {result.upstream_error}", file=sys.stderr)
    return 0


COMMANDS = {
    "run": cmd_run,
    "retry": cmd_retry,
    "failures": cmd_failures,
    "refresh-locks": cmd_refresh_locks,
    "update-code": cmd_update_code,
}


async def _dispatch(args) -> int:
    manager = ReconciliationManager(settings)
    await manager.initialize()
    try:
        return await COMMANDS[args.command](args, manager)
    finally:
        await manager.stop()


def main():
    parser = argparse.ArgumentParser(
        description="Lock Reconciler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subs = parser.add_subparsers(dest="command", help="Command")

    subs.add_parser("serve", help="Serve the HTTP API and scheduler")
    subs.add_parser("run", help="Run one reconciliation pass")

    retry_p = subs.add_parser("retry", help="Retry failed lock updates")
    retry_p.add_argument("--id", dest="ids", type=int, action="append", help="Failure id")

    failures_p = subs.add_parser("failures", help="List failed lock updates")
    failures_p.add_argument("--all", action="store_true", help="Include resolved records")

    subs.add_parser("refresh-locks", help="Refresh locks from the lock vendor")

    update_p = subs.add_parser("update-code", help="Set a guest passcode on a lock")
    update_p.add_argument("lock_id")
    update_p.add_argument("code", help="4-digit passcode")
    update_p.add_argument("--start", type=date.fromisoformat, required=True, help="Check-in date")
    update_p.add_argument("--end", type=date.fromisoformat, required=True, help="Check-out date")
    update_p.add_argument("--reservation", help="Reservation to annotate with the code")
    update_p.add_argument("--skip-upstream", action="store_true", help="Do not annotate")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        from lock_reconciler.main import main as serve

        serve()
        return

    logging.basicConfig(
        level=logging.DEBUG if args.verbose or settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        sys.exit(asyncio.run(_dispatch(args)))
    except (ReconcilerError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
