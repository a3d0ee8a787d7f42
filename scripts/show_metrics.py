#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

from sticker_cache.metrics import PERIOD_WINDOWS, MetricsAggregator
from sticker_cache.settings import MetricsSettings
from sticker_cache.store import store


def main() -> int:
    parser = argparse.ArgumentParser(description="Print sticker cache metrics as JSON.")
    parser.add_argument("--period", choices=sorted(PERIOD_WINDOWS), default="day")
    parser.add_argument("--include", choices=["metrics", "health", "cache", "all"], default="all")
    args = parser.parse_args()

    aggregator = MetricsAggregator(store=store, settings=MetricsSettings.from_env())
    report: dict[str, object] = {}
    if args.include in {"metrics", "all"}:
        report["metrics"] = aggregator.snapshot(args.period)
    if args.include in {"health", "all"}:
        report["health"] = aggregator.worker_health()
    if args.include in {"cache", "all"}:
        report["cache"] = aggregator.cache_efficiency()
    print(json.dumps({"success": True, "report": report}, ensure_ascii=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
