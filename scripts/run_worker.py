#!/usr/bin/env python3
"""
Standalone send worker — the dispatch loop without the HTTP surface.

Usage:
    python scripts/run_worker.py            # run until Ctrl-C
    python scripts/run_worker.py --once     # one dispatch cycle, then exit
    python scripts/run_worker.py --memory   # in-memory store (dry runs)
"""
import asyncio
import os
import signal
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

import structlog

logger = structlog.get_logger()


async def run(once: bool = False, memory: bool = False):
    from config.logging_setup import configure_logging
    from config.settings import load_settings
    from worker.bootstrap import build_gateway

    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)
    if memory:
        settings.database.store_backend = "memory"

    gateway = await build_gateway(settings)
    try:
        if once:
            result = await gateway.worker.tick()
            if result is not None:
                logger.info("worker_single_cycle", **result.as_dict())
            await gateway.tracker.wait_idle()
            return

        if not settings.worker.enabled:
            logger.info("dispatch_worker_disabled")
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass

        await gateway.worker.start()
        await stop.wait()
    finally:
        await gateway.close()


def main():
    parser = argparse.ArgumentParser(description="Scheduled message send worker")
    parser.add_argument("--once", action="store_true", help="Run a single dispatch cycle")
    parser.add_argument("--memory", action="store_true", help="Use the in-memory job store")
    args = parser.parse_args()
    try:
        asyncio.run(run(once=args.once, memory=args.memory))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
