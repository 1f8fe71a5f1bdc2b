"""
tiermem command line

Commands:
- worker: run queue workers and periodic triggers
- ingest USER TEXT: accept an event (add --now to process inline)
- retrieve USER QUERY: print ranked memories
- consolidate USER / synthesize USER: run one pass for a user
- reconcile: replay failed index writes, requeue stale jobs
- jobs: list queue jobs
- stats: record counts
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys

from .config import Settings
from .memory.manager import MemoryManager
from .memory.types import ContentType, RawEvent
from .scheduler.queue import JobStatus

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    """Root logger on stderr at ``settings.log_level``."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tiermem", description="Tiered semantic memory engine")
    parser.add_argument("--log-level", default=None, help="Override TIERMEM_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("worker", help="Run queue workers and periodic triggers")

    p = sub.add_parser("ingest", help="Accept a raw event")
    p.add_argument("user_id")
    p.add_argument("text")
    p.add_argument("--session", default="")
    p.add_argument(
        "--type",
        dest="content_type",
        default=ContentType.USER_CHAT.value,
        choices=[c.value for c in ContentType],
    )
    p.add_argument("--force", action="store_true", help="Skip the importance gate")
    p.add_argument("--now", action="store_true", help="Process inline and drain the queue")

    p = sub.add_parser("retrieve", help="Print ranked memories for a query")
    p.add_argument("user_id")
    p.add_argument("query")
    p.add_argument("--limit", type=int, default=None)
    p.add_argument("--certainty", type=float, default=None)
    p.add_argument("--context", action="store_true", help="Print the prompt block instead")

    p = sub.add_parser("consolidate", help="Consolidate a user's orphan backlog")
    p.add_argument("user_id")

    p = sub.add_parser("synthesize", help="Synthesize thoughts for a user")
    p.add_argument("user_id")

    sub.add_parser("reconcile", help="Run the reconciliation sweep")

    p = sub.add_parser("jobs", help="List queue jobs")
    p.add_argument("--status", choices=[s.value for s in JobStatus], default=None)
    p.add_argument("--limit", type=int, default=50)

    sub.add_parser("stats", help="Show record counts")
    return parser


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


async def _run_worker(manager: MemoryManager) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass
    await manager.run_worker(stop_event)


async def run(args: argparse.Namespace, settings: Settings) -> int:
    manager = MemoryManager(settings)
    try:
        if args.command == "worker":
            await _run_worker(manager)
        elif args.command == "ingest":
            if args.now:
                event = RawEvent(
                    user_id=args.user_id,
                    content=args.text,
                    session_id=args.session,
                    content_type=ContentType.parse(args.content_type),
                    force_important=args.force,
                )
                result = await manager.ingest_now(event)
                ran = await manager.run_pending()
                _print_json({**result.__dict__, "jobs_run": ran})
            else:
                ack = await manager.ingest(
                    args.user_id,
                    args.text,
                    session_id=args.session,
                    content_type=args.content_type,
                    force_important=args.force,
                )
                _print_json(ack.__dict__)
        elif args.command == "retrieve":
            if args.context:
                print(await manager.retrieve_context(args.query, args.user_id))
            else:
                items = await manager.retrieve(
                    args.query, args.user_id, limit=args.limit, certainty=args.certainty
                )
                _print_json([item.to_dict() for item in items])
        elif args.command == "consolidate":
            report = await manager.consolidate(args.user_id)
            await manager.run_pending()
            _print_json(report.to_dict())
        elif args.command == "synthesize":
            _print_json((await manager.synthesize(args.user_id)).to_dict())
        elif args.command == "reconcile":
            report = await manager.reconcile()
            await manager.run_pending()
            _print_json(report.to_dict())
        elif args.command == "jobs":
            status = JobStatus(args.status) if args.status else None
            _print_json([j.to_dict() for j in manager.queue.list_jobs(status, limit=args.limit)])
        elif args.command == "stats":
            _print_json(manager.get_stats())
    finally:
        await manager.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings()
    if args.log_level:
        settings.log_level = args.log_level
    setup_logging(settings)
    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        return 130
