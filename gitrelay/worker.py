"""Headless sync engine process: worker pool and scheduler without the HTTP server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from gitrelay.config import Settings
from gitrelay.runtime import RelayRuntime, configure_logging

logger = logging.getLogger(__name__)


async def run(settings: Settings, *, once: bool = False) -> int:
    """Run the engine until SIGINT/SIGTERM. With ``once``, run one sweep and drain the queue."""
    runtime = RelayRuntime(settings)
    if once:
        await runtime.open()
        try:
            assert runtime.scheduler is not None
            assert runtime.pool is not None
            result = await runtime.scheduler.sweep()
            processed = 0
            while await runtime.pool.run_once():
                processed += 1
            logger.info("Processed %d jobs from %d candidates", processed, result.candidates)
        finally:
            await runtime.stop()
        return 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.warning("Signal handler for %s not supported on this platform", sig.name)

    await runtime.start()
    try:
        await stop_event.wait()
        logger.info("Shutdown requested")
    finally:
        await runtime.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gitrelay-worker",
        description="Run the gitrelay sync engine without the HTTP server",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single scheduler sweep, process due jobs, then exit",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Override the number of concurrent workers",
    )
    args = parser.parse_args(argv)

    settings = Settings()
    if args.concurrency is not None:
        settings = settings.model_copy(update={"scan_concurrency": args.concurrency})
    try:
        settings.validate_runtime_security()
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    configure_logging(settings.debug)
    return asyncio.run(run(settings, once=args.once))


if __name__ == "__main__":
    sys.exit(main())
