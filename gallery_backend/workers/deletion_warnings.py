"""
Deletion warning worker.

Emails owners whose archived content is due for deletion within the lead
window. A warning is marked sent only after the email was accepted, so a
failed send is retried on the next run.
"""
from __future__ import annotations

import argparse
import json
import time
from typing import Optional

from gallery_backend.core.config import settings
from gallery_backend.core.logging import configure_logging
from gallery_backend.features.lifecycle.orchestrator import run_deletion_warning_scan


DEFAULT_LOOP_SECONDS = 3600


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Send pending deletion warnings.")
    parser.add_argument("--once", action="store_true", help="Run a single scan and exit")
    parser.add_argument("--lead-days", dest="lead_days", type=int, default=None,
                        help="Warn for deletions due within N days (default DELETION_WARNING_LEAD_DAYS)")
    parser.add_argument("--sleep", type=int, default=DEFAULT_LOOP_SECONDS, help="Seconds between scans in loop mode")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)

    if args.once:
        stats = run_deletion_warning_scan(args.lead_days)
        print(json.dumps(stats, default=str))
        return 1 if stats["errors"] else 0

    print(f"[deletion-warnings] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            stats = run_deletion_warning_scan(args.lead_days)
            if stats["pending"]:
                print(f"[deletion-warnings] sent={stats['sent']} failed={stats['failed']}")
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[deletion-warnings] Stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
