from __future__ import annotations

from fastapi import APIRouter, Body, Request

from sticker_cache.models import to_iso, utcnow
from sticker_cache.routes._deps import require_worker_trigger, store_from_request, trace_id_from_request
from sticker_cache.schemas import SweepRequest, success_envelope

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/sticker-worker/run")
def run_sticker_worker(request: Request):
    require_worker_trigger(request)
    result = request.app.state.worker_runtime.run_once()
    return success_envelope(result, trace_id_from_request(request))


@router.get("/sticker-worker/run")
def sticker_worker_status(request: Request):
    require_worker_trigger(request)
    return success_envelope(
        {
            "status": "ok",
            "worker": "sticker-generation",
            "backend": store_from_request(request).backend,
            "timestamp": to_iso(utcnow()),
        },
        trace_id_from_request(request),
    )


@router.post("/sticker-worker/cleanup")
def run_sticker_cleanup(request: Request, payload: SweepRequest | None = Body(default=None)):
    require_worker_trigger(request)
    body = payload or SweepRequest()
    result = request.app.state.retention_sweeper.sweep(
        job_max_age_days=body.job_max_age_days,
        failure_log_max_age_days=body.failure_log_max_age_days,
        latency_sample_max_age_days=body.latency_sample_max_age_days,
    )
    return success_envelope(result.as_dict(), trace_id_from_request(request))
