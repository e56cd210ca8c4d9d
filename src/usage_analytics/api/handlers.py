"""
Route handlers for the HTTP boundary.

Ingestion routes authenticate with ``X-API-Key``; dashboard, export, cost
and roll-up routes are meant for the internal admin surface and trust the
caller. Every handler returns JSON; errors are rendered by the middleware
in ``app.py``.
"""

import json
import mimetypes
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from aiohttp import web

from ..analytics.models import DateRange, Granularity, parse_datetime
from ..utils.errors import (
    AuthorizationError,
    InvalidDateRangeError,
    InvalidParameterError,
    RateLimitExceededError,
    ValidationError,
)
from ..utils.logging import get_logger
from .auth import API_KEY_HEADER, client_ip
from .context import AppContext

logger = get_logger("usage-analytics.api")

CONTEXT_KEY = web.AppKey("context", AppContext)
USER_ID_HEADER = "X-User-Id"


def get_context(request: web.Request) -> AppContext:
    return request.app[CONTEXT_KEY]


async def read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(field="body", value=None, constraint="body must be valid JSON") from e


def _int_param(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidParameterError(f"'{name}' must be an integer, got '{raw}'") from None


def _float_param(request: web.Request, name: str, default: float) -> float:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise InvalidParameterError(f"'{name}' must be a number, got '{raw}'") from None


def _list_param(request: web.Request, name: str) -> List[str]:
    raw = request.query.get(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _granularity(request: web.Request, default: Granularity) -> Granularity:
    raw = request.query.get("granularity")
    if not raw:
        return default
    try:
        return Granularity(raw)
    except ValueError:
        raise InvalidParameterError(
            f"granularity must be one of {', '.join(g.value for g in Granularity)}"
        ) from None


def date_range_from_query(
    request: web.Request,
    default_granularity: Granularity = Granularity.DAY
) -> DateRange:
    """``start``/``end``/``granularity`` query values as a ``DateRange``."""
    start = parse_datetime(request.query.get("start"), "start")
    end = parse_datetime(request.query.get("end"), "end")
    return DateRange(start, end, _granularity(request, default_granularity))


def envelope(result) -> web.Response:
    return web.json_response({"success": True, **result.to_dict()})


def ok(data: Any, status: int = 200) -> web.Response:
    return web.json_response({"success": True, "data": data}, status=status)


# Ingestion


def _payload_project(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    project_id = payload.get("projectId")
    if not project_id and isinstance(payload.get("events"), list) and payload["events"]:
        first = payload["events"][0]
        if isinstance(first, dict):
            project_id = first.get("projectId")
    return project_id if isinstance(project_id, str) and project_id else None


async def _ingest(request: web.Request, single: bool) -> web.Response:
    context = get_context(request)
    payload = await read_json(request)

    project_id = _payload_project(payload)
    await context.api_keys.authorize(request.headers.get(API_KEY_HEADER), project_id)
    if project_id is None:
        raise ValidationError(field="projectId", value=None, constraint="projectId is required")

    ip = client_ip(request)
    if single:
        result = await context.ingestion.ingest_event(payload, ip)
    else:
        result = await context.ingestion.ingest_batch(payload, ip)

    if result.rate_limit.exceeded:
        retry_after = max(
            1, int((result.rate_limit.reset_at - datetime.now(timezone.utc)).total_seconds())
        )
        error = RateLimitExceededError(
            f"Rate limit of {result.rate_limit.limit} events per minute exceeded",
            retry_after=retry_after,
        )
        logger.warning("request_rate_limited", project_id=project_id, retry_after=retry_after)
        # Clients read rateLimit.resetAt from the body alongside Retry-After
        body = result.to_dict()
        body["error"] = {"code": error.code, "message": error.message}
        return web.json_response(
            body, status=error.status_code, headers={"Retry-After": str(retry_after)}
        )
    status = 400 if result.batch_rejected else 202
    return web.json_response(result.to_dict(), status=status)


async def ingest_batch(request: web.Request) -> web.Response:
    return await _ingest(request, single=False)


async def ingest_event(request: web.Request) -> web.Response:
    return await _ingest(request, single=True)


async def flush_buffers(request: web.Request) -> web.Response:
    context = get_context(request)
    project_id = request.query.get("projectId") or None
    flushed = await context.ingestion.flush_buffer(project_id)
    return ok({"flushed": flushed})


async def ingestion_stats(request: web.Request) -> web.Response:
    context = get_context(request)
    return ok({
        "buffers": context.ingestion.get_buffer_stats(),
        "metrics": context.metrics.get_metrics(),
    })


# Dashboard


async def dashboard_overview(request: web.Request) -> web.Response:
    context = get_context(request)
    result = await context.aggregations.get_overview(
        request.match_info["project_id"], date_range_from_query(request)
    )
    return envelope(result)


async def dashboard_dau(request: web.Request) -> web.Response:
    context = get_context(request)
    result = await context.aggregations.get_daily_active_users(
        request.match_info["project_id"], date_range_from_query(request, Granularity.DAY)
    )
    return envelope(result)


async def dashboard_mau(request: web.Request) -> web.Response:
    context = get_context(request)
    result = await context.aggregations.get_monthly_active_users(
        request.match_info["project_id"], date_range_from_query(request, Granularity.MONTH)
    )
    return envelope(result)


async def dashboard_events(request: web.Request) -> web.Response:
    context = get_context(request)
    result = await context.aggregations.get_events(
        request.match_info["project_id"],
        date_range_from_query(request),
        event_type=request.query.get("eventType") or None,
        user_id=request.query.get("userId") or None,
        limit=_int_param(request, "limit", 100),
        offset=_int_param(request, "offset", 0),
    )
    return envelope(result)


async def dashboard_event_counts(request: web.Request) -> web.Response:
    context = get_context(request)
    result = await context.aggregations.get_event_counts(
        request.match_info["project_id"],
        date_range_from_query(request),
        event_type=request.query.get("eventType") or None,
    )
    return envelope(result)


async def dashboard_screens(request: web.Request) -> web.Response:
    context = get_context(request)
    result = await context.aggregations.get_screen_metrics(
        request.match_info["project_id"], date_range_from_query(request)
    )
    return envelope(result)


async def dashboard_sessions(request: web.Request) -> web.Response:
    context = get_context(request)
    result = await context.aggregations.get_session_metrics(
        request.match_info["project_id"], date_range_from_query(request)
    )
    return envelope(result)


async def dashboard_retention(request: web.Request) -> web.Response:
    """
    Cohort retention. ``cohortEndDate`` is inclusive: the last cohort is the
    day it falls on.
    """
    context = get_context(request)
    start = parse_datetime(request.query.get("cohortStartDate"), "cohortStartDate")
    end = parse_datetime(request.query.get("cohortEndDate"), "cohortEndDate")
    if start >= end:
        raise InvalidDateRangeError("Cohort start date must be before end date")

    days = None
    raw_days = _list_param(request, "retentionDays")
    if raw_days:
        try:
            days = [int(d) for d in raw_days]
        except ValueError:
            raise InvalidParameterError("retentionDays must be a comma separated list of integers") from None

    result = await context.aggregations.get_retention_cohorts(
        request.match_info["project_id"],
        DateRange(start, end + timedelta(days=1)),
        days,
    )
    return envelope(result)


async def dashboard_funnel(request: web.Request) -> web.Response:
    context = get_context(request)
    result = await context.aggregations.get_funnel(
        request.match_info["project_id"],
        date_range_from_query(request),
        _list_param(request, "steps"),
        _float_param(request, "timeWindow", 24),
    )
    return envelope(result)


# Roll-ups


async def project_metrics(request: web.Request) -> web.Response:
    context = get_context(request)
    start = parse_datetime(request.query.get("start"), "start")
    end = parse_datetime(request.query.get("end"), "end")
    if start >= end:
        raise InvalidDateRangeError()
    points = await context.rollups.get_metrics_range(
        request.match_info["project_id"], start, end, request.query.get("interval", "day")
    )
    return ok(points)


async def project_metrics_dashboard(request: web.Request) -> web.Response:
    context = get_context(request)
    return ok(await context.rollups.get_dashboard_metrics(request.match_info["project_id"]))


# Exports


def _user_id(request: web.Request, payload: Optional[Dict[str, Any]] = None) -> str:
    user_id = request.headers.get(USER_ID_HEADER)
    if not user_id and isinstance(payload, dict):
        user_id = payload.get("userId")
    return user_id or "anonymous"


async def create_export(request: web.Request) -> web.Response:
    context = get_context(request)
    payload = await read_json(request)
    if not isinstance(payload, dict):
        raise ValidationError(field="body", value=None, constraint="body must be an object")
    body = {k: v for k, v in payload.items() if k != "userId"}
    created = await context.exports.create_export(
        request.match_info["project_id"], _user_id(request, payload), body
    )
    return ok(created, status=202)


async def list_exports(request: web.Request) -> web.Response:
    context = get_context(request)
    include_expired = request.query.get("includeExpired", "false").lower() in ("1", "true", "yes")
    listing = await context.exports.list_exports(
        request.match_info["project_id"],
        limit=_int_param(request, "limit", 20),
        offset=_int_param(request, "offset", 0),
        include_expired=include_expired,
    )
    return ok(listing)


async def get_export(request: web.Request) -> web.Response:
    context = get_context(request)
    status = await context.exports.get_export_status(
        request.match_info["project_id"], request.match_info["export_id"]
    )
    return ok(status)


async def delete_export(request: web.Request) -> web.Response:
    context = get_context(request)
    await context.exports.delete_export(
        request.match_info["project_id"], request.match_info["export_id"]
    )
    return ok({"deleted": True})


async def download_export(request: web.Request) -> web.Response:
    """Serve a stored export file behind its signed link."""
    context = get_context(request)
    key = request.match_info["key"]
    verify = getattr(context.object_store, "verify_signature", None)
    if verify is None or not verify(
        key, request.query.get("expires"), request.query.get("signature", "")
    ):
        logger.warning("download_signature_rejected", key=key)
        raise AuthorizationError("Download link is invalid or expired")
    data = await context.object_store.read(key)
    content_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    filename = key.rsplit("/", 1)[-1]
    return web.Response(
        body=data,
        content_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# Costs


async def track_usage(request: web.Request) -> web.Response:
    context = get_context(request)
    payload = await read_json(request)
    if not isinstance(payload, dict):
        raise ValidationError(field="body", value=None, constraint="body must be an object")
    try:
        input_tokens = int(payload.get("inputTokens", 0))
        output_tokens = int(payload.get("outputTokens", 0))
    except (TypeError, ValueError):
        raise InvalidParameterError("inputTokens and outputTokens must be integers") from None
    model = payload.get("model")
    if not isinstance(model, str) or not model:
        raise ValidationError(field="model", value=model, constraint="model is required")

    cost = await context.costs.track_cost(
        payload.get("userId") or "",
        model,
        input_tokens,
        output_tokens,
        project_id=payload.get("projectId") or None,
    )
    return ok(cost.to_dict())


async def user_costs(request: web.Request) -> web.Response:
    context = get_context(request)
    breakdown = await context.costs.get_user_costs(
        request.match_info["user_id"], request.query.get("period", "month")
    )
    return ok(breakdown.to_dict())


async def project_costs(request: web.Request) -> web.Response:
    context = get_context(request)
    breakdown = await context.costs.get_project_costs(
        request.match_info["project_id"], request.query.get("period", "month")
    )
    return ok(breakdown.to_dict())


async def global_costs(request: web.Request) -> web.Response:
    context = get_context(request)
    breakdown = await context.costs.get_global_costs(request.query.get("period", "month"))
    return ok(breakdown.to_dict())


async def budget_alert(request: web.Request) -> web.Response:
    context = get_context(request)
    if "budget" not in request.query:
        raise InvalidParameterError("Missing required parameter 'budget'")
    alert = await context.costs.check_budget_alert(
        request.match_info["user_id"], _float_param(request, "budget", 0)
    )
    return ok(alert)


async def model_pricing(request: web.Request) -> web.Response:
    context = get_context(request)
    return ok(context.costs.get_model_pricing(request.query.get("model") or None))


# Health


async def health(request: web.Request) -> web.Response:
    context = get_context(request)
    storage_ok = await context.storage.health_check()
    cache_ok = await context.cache.ping()
    healthy = storage_ok and cache_ok
    return web.json_response(
        {
            "status": "ok" if healthy else "degraded",
            "service": context.config.app_name,
            "version": context.config.version,
            "checks": {"storage": storage_ok, "cache": cache_ok},
            "pendingExports": context.exports.pending_jobs,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        status=200 if healthy else 503,
    )


def setup_routes(app: web.Application) -> None:
    router = app.router
    router.add_get("/health", health)

    router.add_post("/v1/events/batch", ingest_batch)
    router.add_post("/v1/events", ingest_event)
    router.add_post("/v1/flush", flush_buffers)
    router.add_get("/v1/stats", ingestion_stats)

    dashboard = "/v1/projects/{project_id}/dashboard"
    router.add_get(f"{dashboard}/overview", dashboard_overview)
    router.add_get(f"{dashboard}/dau", dashboard_dau)
    router.add_get(f"{dashboard}/mau", dashboard_mau)
    router.add_get(f"{dashboard}/events", dashboard_events)
    router.add_get(f"{dashboard}/event-counts", dashboard_event_counts)
    router.add_get(f"{dashboard}/screens", dashboard_screens)
    router.add_get(f"{dashboard}/sessions", dashboard_sessions)
    router.add_get(f"{dashboard}/retention", dashboard_retention)
    router.add_get(f"{dashboard}/funnel", dashboard_funnel)

    router.add_get("/v1/projects/{project_id}/metrics", project_metrics)
    router.add_get("/v1/projects/{project_id}/metrics/dashboard", project_metrics_dashboard)

    router.add_post("/v1/projects/{project_id}/exports", create_export)
    router.add_get("/v1/projects/{project_id}/exports", list_exports)
    router.add_get("/v1/projects/{project_id}/exports/{export_id}", get_export)
    router.add_delete("/v1/projects/{project_id}/exports/{export_id}", delete_export)
    router.add_get("/downloads/{key:.+}", download_export)

    router.add_post("/v1/usage/api", track_usage)
    router.add_get("/v1/costs/pricing", model_pricing)
    router.add_get("/v1/costs/global", global_costs)
    router.add_get("/v1/costs/users/{user_id}", user_costs)
    router.add_get("/v1/costs/users/{user_id}/budget", budget_alert)
    router.add_get("/v1/costs/projects/{project_id}", project_costs)
