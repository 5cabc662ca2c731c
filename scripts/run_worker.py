#!/usr/bin/env python3
"""Run the performance-test queue worker.

Usage:
    python scripts/run_worker.py            # poll forever
    python scripts/run_worker.py --once     # drain one batch and exit

Exits 0 on success, 1 on failure.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from perfpulse.config import get_settings
from perfpulse.db.session import SessionLocal
from perfpulse.services.orchestrator import TestOrchestrator
from perfpulse.services.worker import process_pending_jobs, run_worker


def main() -> int:
    parser = argparse.ArgumentParser(description="PerfPulse queue worker")
    parser.add_argument("--once", action="store_true", help="process one batch and exit")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--concurrency", type=int, default=None)
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    settings = get_settings()
    orchestrator = TestOrchestrator.from_settings(settings=settings)
    batch_size = args.batch_size or settings.worker_batch_size
    concurrency = args.concurrency or settings.worker_concurrency

    try:
        if args.once:
            result = asyncio.run(
                process_pending_jobs(
                    SessionLocal, orchestrator, limit=batch_size, concurrency=concurrency
                )
            )
        else:
            result = asyncio.run(
                run_worker(
                    SessionLocal,
                    orchestrator,
                    poll_interval=settings.worker_poll_interval,
                    batch_size=batch_size,
                    concurrency=concurrency,
                )
            )
        print(" ".join(f"{k}={v}" for k, v in result.items()))
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
