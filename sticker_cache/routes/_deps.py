from __future__ import annotations

import hmac
import uuid
from typing import Any

from fastapi import Request

from sticker_cache.errors import ApiError
from sticker_cache.settings import TriggerAuthSettings


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def store_from_request(request: Request) -> Any:
    return request.app.state.store


def _secret_matches(candidate: str, secret: str) -> bool:
    if not candidate or not secret:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "").strip()
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return ""


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def require_worker_trigger(request: Request) -> None:
    """Accept WORKER_SECRET as bearer or x-worker-secret, or CRON_SECRET as bearer."""
    if request.app.state.development_mode:
        return
    auth: TriggerAuthSettings = request.app.state.trigger_auth
    bearer = _bearer_token(request)
    header_secret = request.headers.get("x-worker-secret", "").strip()
    if (
        _secret_matches(bearer, auth.worker_secret)
        or _secret_matches(header_secret, auth.worker_secret)
        or _secret_matches(bearer, auth.cron_secret)
    ):
        return
    raise _unauthorized("worker trigger secret missing or invalid")


def require_admin(request: Request) -> None:
    if request.app.state.development_mode:
        return
    auth: TriggerAuthSettings = request.app.state.trigger_auth
    if _secret_matches(request.headers.get("x-admin-secret", "").strip(), auth.admin_secret):
        return
    raise _unauthorized("admin secret missing or invalid")
