from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request

from sticker_cache.models import to_iso, utcnow
from sticker_cache.routes._deps import require_admin, trace_id_from_request
from sticker_cache.schemas import MetricsInclude, MetricsPeriod, success_envelope

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.get("/metrics")
def get_metrics(
    request: Request,
    period: MetricsPeriod = Query(default="day"),
    include: MetricsInclude = Query(default="all"),
):
    require_admin(request)
    aggregator = request.app.state.metrics
    now = utcnow()
    data: dict[str, Any] = {"timestamp": to_iso(now)}
    if include in {"metrics", "all"}:
        data["metrics"] = aggregator.snapshot(period, now=now)
    if include in {"health", "all"}:
        data["health"] = aggregator.worker_health(now=now)
    if include in {"cache", "all"}:
        data["cache"] = aggregator.cache_efficiency()
    return success_envelope(data, trace_id_from_request(request))
