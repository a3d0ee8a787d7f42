#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from sticker_cache.retention import RetentionSweeper
from sticker_cache.settings import RetentionSettings
from sticker_cache.store import store


def main() -> int:
    parser = argparse.ArgumentParser(description="Delete aged terminal generation jobs and audit rows.")
    parser.add_argument("--job-max-age-days", type=int, default=None)
    parser.add_argument("--failure-log-max-age-days", type=int, default=None)
    parser.add_argument("--latency-sample-max-age-days", type=int, default=None)
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    sweeper = RetentionSweeper(store=store, settings=RetentionSettings.from_env())
    try:
        result = sweeper.sweep(
            job_max_age_days=args.job_max_age_days,
            failure_log_max_age_days=args.failure_log_max_age_days,
            latency_sample_max_age_days=args.latency_sample_max_age_days,
        )
    except ValueError as exc:
        print(json.dumps({"success": False, "error": str(exc)}, ensure_ascii=True))
        return 2
    print(json.dumps({"success": True, "result": result.as_dict()}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
