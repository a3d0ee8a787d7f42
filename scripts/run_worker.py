#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import time

from sticker_cache.store import store
from sticker_cache.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the sticker generation worker.")
    parser.add_argument(
        "--runs",
        type=int,
        default=1,
        help="Number of worker runs to execute (0 means run until interrupted).",
    )
    parser.add_argument(
        "--interval-s",
        type=float,
        default=60.0,
        help="Pause between runs in seconds.",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    runtime = create_worker_runtime_from_env(store=store)
    completed = 0
    while True:
        stats = runtime.run_once()
        completed += 1
        print(json.dumps({"success": True, "run": completed, "stats": stats}, ensure_ascii=True))
        if args.runs > 0 and completed >= args.runs:
            break
        time.sleep(max(0.0, args.interval_s))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
