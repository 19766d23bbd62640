"""contentflow command-line interface with subcommands.

Usage:
    contentflow run-once
    contentflow run [--interval 5] [--max-runs N]
    contentflow stats
    contentflow schedule <platform> <content> --at 2026-01-01T09:00:00+00:00
    contentflow list [--platform linkedin] [--status pending]
    contentflow cancel <scheduled_post_id>
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime

from contentflow.config import settings
from contentflow.errors import ContentFlowError
from contentflow.models.scheduling import ScheduledPostStatus
from contentflow.runtime import Runtime


def _runtime() -> Runtime:
    settings.ensure_directories()
    runtime = Runtime(settings)
    runtime.connect()
    return runtime


# --- Scheduler runs ---

async def cmd_run_once(args: argparse.Namespace) -> None:
    """Process every due scheduled post once."""
    runtime = _runtime()
    try:
        stats = await runtime.scheduler_processor.run_once()
        print(
            f"Processed {stats.processed}: {stats.succeeded} published, "
            f"{stats.failed} failed, {stats.throttled} throttled"
        )
    finally:
        await runtime.shutdown()


async def cmd_run(args: argparse.Namespace) -> None:
    """Run the scheduler loop until interrupted."""
    runtime = _runtime()
    print(f"Scheduler running every {args.interval} minutes (Ctrl+C to stop)")
    try:
        stats = await runtime.scheduler_processor.run_continuous(
            interval_minutes=args.interval, max_runs=args.max_runs
        )
        print(f"Stopped after {stats.processed} posts ({stats.succeeded} published)")
    finally:
        await runtime.shutdown()


# --- Inspection ---

async def cmd_stats(args: argparse.Namespace) -> None:
    """Print scheduler and queue counts as JSON."""
    runtime = _runtime()
    try:
        data = {
            "scheduler": runtime.scheduler.get_stats().model_dump(),
            "queues": runtime.manager.get_stats(),
        }
        print(json.dumps(data, indent=2))
    finally:
        await runtime.shutdown()


async def cmd_list(args: argparse.Namespace) -> None:
    """List scheduled posts."""
    runtime = _runtime()
    try:
        status = ScheduledPostStatus(args.status) if args.status else None
        posts = runtime.scheduler.list_posts(platform=args.platform, status=status, limit=args.limit)
        if not posts:
            print("No scheduled posts")
        for post in posts:
            preview = post.content[:50].replace("\n", " ")
            print(
                f"{post.id}  {post.platform:<9} {post.status.value:<10} "
                f"{post.scheduled_time.isoformat()}  retries={post.retry_count}  {preview}"
            )
    finally:
        await runtime.shutdown()


# --- Mutations ---

async def cmd_schedule(args: argparse.Namespace) -> None:
    """Schedule content for publishing."""
    runtime = _runtime()
    try:
        scheduled_time = datetime.fromisoformat(args.at)
        metadata = json.loads(args.metadata) if args.metadata else None
        scheduled_id = runtime.scheduler.schedule(args.platform, args.content, scheduled_time, metadata)
        print(f"Scheduled {scheduled_id} for {scheduled_time.isoformat()}")
    except (ContentFlowError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        await runtime.shutdown()


async def cmd_cancel(args: argparse.Namespace) -> None:
    """Cancel a pending scheduled post."""
    runtime = _runtime()
    try:
        post = runtime.scheduler.cancel(args.scheduled_post_id)
        print(f"Cancelled {post.id}")
    except ContentFlowError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        await runtime.shutdown()


# --- Main CLI ---

def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="contentflow",
        description="contentflow - content pipeline and scheduled publishing",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- run-once ---
    subparsers.add_parser("run-once", help="Publish every due post once")

    # --- run ---
    p_run = subparsers.add_parser("run", help="Run the scheduler continuously")
    p_run.add_argument("--interval", type=float, default=settings.scheduler_interval_minutes, help="Minutes between runs")
    p_run.add_argument("--max-runs", type=int, help="Stop after this many runs")

    # --- stats ---
    subparsers.add_parser("stats", help="Show scheduler and queue statistics")

    # --- schedule ---
    p_schedule = subparsers.add_parser("schedule", help="Schedule a post")
    p_schedule.add_argument("platform", type=str, help="Target platform (linkedin, x)")
    p_schedule.add_argument("content", type=str, help="Post content")
    p_schedule.add_argument("--at", type=str, required=True, help="ISO 8601 time with offset")
    p_schedule.add_argument("--metadata", type=str, help="Metadata as a JSON object")

    # --- list ---
    p_list = subparsers.add_parser("list", help="List scheduled posts")
    p_list.add_argument("--platform", type=str, help="Filter by platform")
    p_list.add_argument("--status", choices=[s.value for s in ScheduledPostStatus], help="Filter by status")
    p_list.add_argument("--limit", type=int, default=50, help="Maximum rows (default: 50)")

    # --- cancel ---
    p_cancel = subparsers.add_parser("cancel", help="Cancel a scheduled post")
    p_cancel.add_argument("scheduled_post_id", type=str, help="Scheduled post id")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Dispatch
    if args.command == "run-once":
        asyncio.run(cmd_run_once(args))
    elif args.command == "run":
        try:
            asyncio.run(cmd_run(args))
        except KeyboardInterrupt:
            print("Interrupted")
    elif args.command == "stats":
        asyncio.run(cmd_stats(args))
    elif args.command == "schedule":
        asyncio.run(cmd_schedule(args))
    elif args.command == "list":
        asyncio.run(cmd_list(args))
    elif args.command == "cancel":
        asyncio.run(cmd_cancel(args))


if __name__ == "__main__":
    main()
