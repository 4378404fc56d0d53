"""Fail effectiveness runs stuck in a non-terminal status.

Usage:
    python scripts/sweep_stale_runs.py --dry-run
    python scripts/sweep_stale_runs.py --hours 4 --client-id <uuid>
"""

import argparse
import asyncio
import json
import sys
import uuid

sys.path.insert(0, ".")

from worker.tasks.reaper import run_stale_run_sweep  # noqa: E402


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fail stale effectiveness runs")
    parser.add_argument(
        "--hours",
        type=float,
        default=None,
        help="Age in hours after which a non-terminal run is stale (default: STALE_RUN_HOURS)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List stale runs without changing them",
    )
    parser.add_argument("--client-id", type=uuid.UUID, default=None, help="Only this client")
    parser.add_argument("--json", action="store_true", help="Print the raw result as JSON")
    return parser.parse_args(argv)


def print_summary(result: dict) -> None:
    mode = "DRY RUN" if result["dry_run"] else "SWEEP"
    print("=" * 70)
    print(f"{mode}: runs older than {result['stale_after_hours']}h")
    print("=" * 70)
    for run in result["stale_runs"]:
        owner = f"competitor {run['competitor_id']}" if run["competitor_id"] else "client"
        print(f"  {run['id']}  {run['status']:<16} {run['age_hours']:>6}h  {owner}")
    print()
    print(f"Stale runs:   {result['total_stale_runs']}")
    print(f"  pending:    {result['stale_pending_runs']}")
    print(f"Marked failed: {result['cleaned_runs']}")
    for error in result["errors"]:
        print(f"  ERROR {error['run_id']}: {error['error']}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    result = asyncio.run(
        run_stale_run_sweep(args.hours, dry_run=args.dry_run, client_id=args.client_id)
    )
    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print_summary(result)
    return 1 if result["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
