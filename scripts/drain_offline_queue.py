#!/usr/bin/env python3
"""
Submit receipts that were saved while offline.

Usage:
  python scripts/drain_offline_queue.py
  python scripts/drain_offline_queue.py --queue-dir ./offline_queue --status

Env:
  API_TOKEN: Bearer token used for the upload and update calls.
  API_BASE_URL: Backend base URL (default https://api.snaptrack.bot).

Options:
  --status: Print the number of pending items and exit without submitting.
  --max-attempts: Override OFFLINE_QUEUE_MAX_ATTEMPTS for this run.

Exits non-zero when any item failed.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from snaptrack.core.config import settings
from snaptrack.core.observability import init_sentry
from snaptrack.core.security import StaticTokenProvider
from snaptrack.pipeline import CapturePipeline
from snaptrack.services.queue_drain import OfflineQueueDrainer


async def run(args: argparse.Namespace) -> int:
    async with CapturePipeline.from_settings(
        StaticTokenProvider(args.token), queue_directory=args.queue_dir
    ) as pipeline:
        drainer = OfflineQueueDrainer(pipeline.api, pipeline.queue, pipeline.connectivity, args.max_attempts)
        if args.status:
            print(f"{await drainer.pending_count()} item(s) pending")
            return 0
        report = await drainer.drain()
    if report.offline:
        print("Backend unreachable; nothing submitted.", file=sys.stderr)
        return 1
    print(f"succeeded={len(report.succeeded)} failed={len(report.failed)} skipped={len(report.skipped)}")
    return 1 if report.failed else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Drain the SnapTrack offline queue")
    parser.add_argument("--queue-dir", default=settings.OFFLINE_QUEUE_DIRECTORY, help="Offline queue directory")
    parser.add_argument("--token", default=None, help="Bearer token (defaults to API_TOKEN)")
    parser.add_argument("--max-attempts", type=int, default=None)
    parser.add_argument("--status", action="store_true", help="Only report the pending count")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_sentry("drain")
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
