"""FastAPI application for the plugin telemetry collector."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .actions import ActionRecorder
from .config import Settings, get_settings
from .dashboard import build_snapshot
from .error_reports import ErrorRecorder
from .errors import RateLimitExceeded, StoreError, ValidationError
from .filters import StatsFilters
from .installations import InstallationRecorder
from .rate_limiter import RateLimiter
from .store import Store

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."
FAILURE_MESSAGE = "Unable to process request"

PUBLIC_PATHS = ("/count-action", "/report-installation", "/report-error")
DASHBOARD_PATHS = ("/dashboard/stats", "/dashboard/errors", "/api/health")


def _envelope(status_code: int, error: Optional[str] = None, **fields: Any) -> JSONResponse:
    content: Dict[str, Any] = {"success": error is None, **fields}
    if error is not None:
        content["error"] = error
    return JSONResponse(status_code=status_code, content=content)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _enforce_rate_limit(request: Request, endpoint_type: str) -> None:
    """Reject the request when its IP has exhausted the window, else count it."""

    settings: Settings = request.app.state.settings
    if not settings.rate_limit_enabled:
        return
    limiter: RateLimiter = request.app.state.rate_limiter
    ip = _client_ip(request) or "unknown"
    if not limiter.allow(ip, endpoint_type):
        raise RateLimitExceeded(endpoint_type)
    limiter.record(ip, endpoint_type)


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def _create_lifespan(settings: Settings):
    """Create an application lifespan manager bound to the provided settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = Store.from_url(settings.database_url)
        store.create_schema()
        app.state.store = store
        app.state.rate_limiter = RateLimiter(
            store,
            limits=settings.rate_limits,
            window_seconds=settings.rate_limit_window_seconds,
            cleanup_probability=settings.rate_limit_cleanup_probability,
        )
        app.state.actions = ActionRecorder(
            store,
            pattern=settings.action_name_pattern,
            max_length=settings.max_action_length,
        )
        app.state.installations = InstallationRecorder(store)
        app.state.errors = ErrorRecorder(
            store,
            group_window=settings.error_group_window_seconds,
            fetch_multiplier=settings.error_fetch_multiplier,
        )
        yield
        store.dispose()

    return lifespan


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Instantiate the FastAPI application with the given settings."""

    settings = settings or get_settings()
    logging.getLogger("collector").setLevel(settings.log_level.upper())

    app = FastAPI(
        title="Plugin Telemetry Collector",
        version="0.1.0",
        lifespan=_create_lifespan(settings),
    )
    app.state.settings = settings
    app.dependency_overrides[get_settings] = lambda: settings

    if settings.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_methods=settings.cors_methods,
            allow_headers=settings.cors_headers,
        )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limited(request: Request, exc: RateLimitExceeded) -> Response:
        return _envelope(429, error=RATE_LIMIT_MESSAGE)

    @app.exception_handler(StoreError)
    async def store_failed(request: Request, exc: StoreError) -> Response:
        logger.error("Store failure on %s: %s", request.url.path, exc)
        return _envelope(500, error=FAILURE_MESSAGE)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> Response:
        message = "Method not allowed" if exc.status_code == 405 else str(exc.detail)
        return _envelope(exc.status_code, error=message)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> Response:
        logger.exception("Unhandled error on %s", request.url.path)
        return _envelope(500, error=FAILURE_MESSAGE)

    async def preflight() -> Response:
        return Response(status_code=200)

    for path in PUBLIC_PATHS + DASHBOARD_PATHS:
        app.add_api_route(path, preflight, methods=["OPTIONS"], include_in_schema=False)

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok"}

    @app.get("/count-action")
    def count_action(
        request: Request,
        action_id: Optional[str] = Query(None, alias="id"),
        installation_id: Optional[str] = Query(None),
    ) -> Response:
        if not action_id:
            return _envelope(400, error="Missing action ID")
        _enforce_rate_limit(request, "action")

        recorder: ActionRecorder = request.app.state.actions
        try:
            total = recorder.track(action_id, _client_ip(request), installation_id)
        except ValidationError as exc:
            logger.info("Rejected action %r: %s", action_id, exc)
            return _envelope(400, error="Invalid action ID format")
        return _envelope(200, action=action_id, total_count=total)

    @app.post("/report-installation")
    async def report_installation(request: Request) -> Response:
        payload = await _json_body(request)
        if payload is None:
            return _envelope(400, error="Invalid JSON")
        await run_in_threadpool(_enforce_rate_limit, request, "installation")

        recorder: InstallationRecorder = request.app.state.installations
        try:
            await run_in_threadpool(
                recorder.track, payload, _client_ip(request), request.headers.get("user-agent")
            )
        except ValidationError as exc:
            logger.info("Rejected installation report: %s", exc)
            return _envelope(400, error="Invalid installation data")
        return _envelope(201)

    @app.post("/report-error")
    async def report_error(request: Request) -> Response:
        payload = await _json_body(request)
        if payload is None:
            return _envelope(400, error="Invalid JSON")
        await run_in_threadpool(_enforce_rate_limit, request, "error")

        recorder: ErrorRecorder = request.app.state.errors
        try:
            await run_in_threadpool(recorder.track, payload, _client_ip(request))
        except ValidationError as exc:
            logger.info("Rejected error report: %s", exc)
            return _envelope(400, error="Invalid error data")
        return _envelope(201)

    @app.get("/dashboard/stats")
    def dashboard_stats(
        request: Request,
        ip: Optional[str] = None,
        installation_id: Optional[str] = None,
        version: Optional[str] = None,
    ) -> Response:
        filters = StatsFilters(ip=ip or None, installation_id=installation_id or None, version=version or None)
        state = request.app.state
        snapshot = build_snapshot(state.actions, state.installations, state.errors, filters)
        return _envelope(200, **snapshot)

    @app.get("/dashboard/errors")
    def dashboard_errors(request: Request, limit: int = Query(50, ge=1, le=500)) -> Response:
        recorder: ErrorRecorder = request.app.state.errors
        groups = recorder.recent_errors(limit)
        return _envelope(200, groups=[group.to_dict() for group in groups])

    return app


app = create_app()
