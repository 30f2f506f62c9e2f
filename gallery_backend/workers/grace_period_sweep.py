"""
Grace-period sweep worker.

Downgrades accounts whose grace period expired and resumes any cascade left
incomplete by an earlier failure. Equivalent to POST /v1/cron/subscription-grace.
"""
from __future__ import annotations

import argparse
import json
import time
from typing import Optional

from gallery_backend.core.config import settings
from gallery_backend.core.logging import configure_logging
from gallery_backend.features.lifecycle.orchestrator import run_grace_period_sweep


DEFAULT_LOOP_SECONDS = 3600


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Downgrade accounts with expired grace periods.")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--sleep", type=int, default=DEFAULT_LOOP_SECONDS, help="Seconds between sweeps in loop mode")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)

    if args.once:
        stats = run_grace_period_sweep()
        print(json.dumps(stats, default=str))
        return 1 if stats["errors"] else 0

    print(f"[grace-sweep] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            stats = run_grace_period_sweep()
            if stats["processed"] or stats["resumed"]:
                print(f"[grace-sweep] downgraded={stats['downgraded']} resumed={stats['resumed']} errors={len(stats['errors'])}")
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[grace-sweep] Stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
