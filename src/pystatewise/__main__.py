"""Run a worker process: ``python -m pystatewise``.

Settings come from STATEWISE_* environment variables; command-line flags
override the most common ones.
"""

import argparse
import asyncio
import logging

from pystatewise.config import Settings
from pystatewise.errors import InvalidConfiguration
from pystatewise.runtime import Runtime

logger = logging.getLogger("pystatewise")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pystatewise",
        description="Run the workflow worker, time-trigger scan and cleanup schedule.",
    )
    parser.add_argument("--database", help="SQLite database path (STATEWISE_DATABASE)")
    parser.add_argument(
        "--queue", choices=["sqlite", "redis", "memory"], help="Queue backend (STATEWISE_QUEUE)"
    )
    parser.add_argument("--redis-url", help="Redis URL (STATEWISE_REDIS_URL)")
    parser.add_argument("--concurrency", type=int, help="Concurrent jobs (STATEWISE_CONCURRENCY)")
    parser.add_argument("--worker-id", help="Worker identifier (STATEWISE_WORKER_ID)")
    parser.add_argument("--log-level", help="Logging level (STATEWISE_LOG_LEVEL)")
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if args.database:
        settings.database = args.database
    if args.queue:
        settings.queue = args.queue
    if args.redis_url:
        settings.redis_url = args.redis_url
    if args.concurrency is not None:
        settings.concurrency = args.concurrency
    if args.worker_id:
        settings.worker_id = args.worker_id
    if args.log_level:
        settings.log_level = args.log_level.upper()
    settings.validate()
    return settings


async def _serve(settings: Settings) -> None:
    runtime = await Runtime.from_settings(settings)
    await runtime.run()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
    except InvalidConfiguration as e:
        parser.error(str(e))

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    asyncio.run(_serve(settings))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
