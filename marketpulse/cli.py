"""CLI for MarketPulse: run workers and submit scrape jobs.

Usage:
    python -m marketpulse.cli worker
    python -m marketpulse.cli worker --max-messages 10
    python -m marketpulse.cli enqueue generic --param url=https://example.com
    python -m marketpulse.cli enqueue reddit --param subreddit=python --delay 30
    python -m marketpulse.cli enqueue-batch jobs.json
    python -m marketpulse.cli process generic --param url=https://example.com
    python -m marketpulse.cli attributes
"""

import argparse
import asyncio
import json
import logging
import sys


def _setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _parse_params(pairs: list[str] | None) -> dict:
    params = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise SystemExit(f"Invalid --param '{pair}', expected key=value")
        params[key] = value
    return params


def _job_from_args(args) -> dict:
    job = {"source": args.source, "params": _parse_params(args.param)}
    if getattr(args, "delay", 0):
        job["delaySeconds"] = args.delay
    if getattr(args, "id", None):
        job["id"] = args.id
    return job


def _print(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def _cmd_worker(args):
    """Long-poll the queue until interrupted."""
    from marketpulse.workers.consumer import init_sentry, run_worker

    init_sentry()
    handled = await run_worker(max_messages=args.max_messages, install_signal_handlers=True)
    print(f"Handled {handled} messages", file=sys.stderr)


async def _cmd_enqueue(args):
    """Submit one job."""
    from marketpulse.config import settings
    from marketpulse.services.queue import QueueClient

    queue = QueueClient.from_settings(settings)
    queued = await queue.enqueue(_job_from_args(args))
    _print(queued.model_dump())


async def _cmd_enqueue_batch(args):
    """Submit a JSON array of jobs from a file (or - for stdin)."""
    from marketpulse.config import settings
    from marketpulse.services.queue import QueueClient

    if args.file == "-":
        jobs = json.load(sys.stdin)
    else:
        with open(args.file, encoding="utf-8") as fh:
            jobs = json.load(fh)
    if isinstance(jobs, dict):
        jobs = jobs.get("jobs")
    if not isinstance(jobs, list):
        raise SystemExit("Expected a JSON array of jobs or {\"jobs\": [...]}")

    queue = QueueClient.from_settings(settings)
    result = await queue.enqueue_batch(jobs)
    _print(
        {
            "total": len(jobs),
            "successful": [s.model_dump() for s in result.successful],
            "failed": [f.model_dump() for f in result.failed],
        }
    )
    if result.failed:
        print(f"{len(result.failed)} jobs failed to enqueue", file=sys.stderr)


async def _cmd_process(args):
    """Run one job in-process, bypassing the queue."""
    from marketpulse.workers.consumer import build_processor

    processor = build_processor()
    try:
        result = await processor.process(_job_from_args(args))
    finally:
        await processor.browsers.close_all()
    _print(result.model_dump())


async def _cmd_attributes(args):
    """Show queue attributes (approximate depth, in-flight count...)."""
    from marketpulse.config import settings
    from marketpulse.services.queue import QueueClient

    queue = QueueClient.from_settings(settings)
    _print(await queue.get_queue_attributes())


def main():
    parser = argparse.ArgumentParser(
        prog="marketpulse",
        description="MarketPulse CLI: run scrape workers and submit jobs",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # --- worker ---
    worker_parser = subparsers.add_parser("worker", help="Consume jobs from the queue")
    worker_parser.add_argument(
        "--max-messages", type=int, default=None,
        help="Stop after this many messages (default: run until interrupted)",
    )

    # --- enqueue / process ---
    for name, help_text in (
        ("enqueue", "Submit a single job to the queue"),
        ("process", "Run a single job locally without the queue"),
    ):
        job_parser = subparsers.add_parser(name, help=help_text)
        job_parser.add_argument("source", help="Job source / platform, e.g. generic")
        job_parser.add_argument(
            "--param", action="append", default=None,
            help="Extractor parameter as key=value (repeatable)",
        )
        job_parser.add_argument("--id", default=None, help="Job id (default: generated)")
        if name == "enqueue":
            job_parser.add_argument(
                "--delay", type=int, default=0, help="Delivery delay in seconds (0-900)"
            )

    # --- enqueue-batch ---
    batch_parser = subparsers.add_parser("enqueue-batch", help="Submit jobs from a JSON file")
    batch_parser.add_argument("file", help="Path to a JSON file, or - for stdin")

    # --- attributes ---
    subparsers.add_parser("attributes", help="Show queue attributes")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "worker":
        from marketpulse.config import settings
        from marketpulse.core.logging_config import configure_logging

        level = "DEBUG" if args.verbose else settings.LOG_LEVEL
        configure_logging(log_format=settings.LOG_FORMAT, log_level=level)
    else:
        _setup_logging(args.verbose)

    commands = {
        "worker": _cmd_worker,
        "enqueue": _cmd_enqueue,
        "enqueue-batch": _cmd_enqueue_batch,
        "process": _cmd_process,
        "attributes": _cmd_attributes,
    }
    asyncio.run(commands[args.command](args))


if __name__ == "__main__":
    main()
