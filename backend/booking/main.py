import logging
import time
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .config import get_settings
from .db import SessionLocal, init_db
from .errors import BookingError, InvalidInput
from .logging_config import configure_logging
from .metrics import RouteMetrics, metrics
from .routers import cron, engagements, recurring
from .services import alerting
from .services.job_queue import job_queue


def _error_response(exc: BookingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    configure_logging()
    logger = logging.getLogger(__name__)
    settings = get_settings()
    if settings.use_db_repositories:
        try:
            init_db()
        except Exception:
            # Do not block startup if the database is temporarily unavailable.
            logger.exception("init_db_failed_startup_continue")

    app = FastAPI(
        title="Home Services Booking Backend",
        description="Availability, holds, recurring series and reminders.",
        version="0.1.0",
    )
    logger.info(
        "booking_app_configured",
        extra={
            "push_provider": settings.push.provider,
            "identity_provider": settings.identity.provider,
            "use_db_repositories": settings.use_db_repositories,
            "cron_secret_set": bool(settings.cron_secret),
        },
    )

    try:
        job_queue.start()
    except Exception:
        logger.warning("job_queue_start_failed", exc_info=True)

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning(
                "booking_upstream_error",
                extra={"path": request.url.path, "code": exc.code},
            )
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        return _error_response(InvalidInput("Invalid request", fields=fields))

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        metrics.total_requests += 1
        start = time.time()
        try:
            response = await call_next(request)
        except Exception:
            metrics.total_errors += 1
            logger.exception(
                "unhandled_request_exception", extra={"path": request.url.path}
            )
            raise
        route = request.scope.get("route")
        key = getattr(route, "path", None) or request.url.path
        route_metrics = metrics.route_metrics.setdefault(key, RouteMetrics())
        route_metrics.request_count += 1
        latency_ms = (time.time() - start) * 1000.0
        route_metrics.total_latency_ms += latency_ms
        if latency_ms > route_metrics.max_latency_ms:
            route_metrics.max_latency_ms = latency_ms
        if response.status_code >= 500:
            metrics.total_errors += 1
            route_metrics.error_count += 1
            alerting.maybe_trigger_alert(
                "request_failure",
                detail=f"{key} status {response.status_code}",
                cooldown_seconds=300,
            )
        response.headers["X-Request-ID"] = rid
        return response

    @app.on_event("shutdown")
    async def _shutdown_services() -> None:  # pragma: no cover - wiring only
        try:
            job_queue.stop()
        except Exception:
            logger.warning("job_queue_stop_failed", exc_info=True)

    app.include_router(
        engagements.router, prefix="/v1/engagements", tags=["engagements"]
    )
    app.include_router(recurring.router, prefix="/v1/recurring", tags=["recurring"])
    app.include_router(cron.router, prefix="/v1/cron", tags=["cron"])

    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        return {"status": "ok"}

    @app.get("/readyz", tags=["health"])
    async def readiness_check() -> dict:
        """Readiness probe; checks the database only when it backs the repositories."""
        db_enabled = get_settings().use_db_repositories
        db_healthy = False
        if db_enabled:
            session = SessionLocal()
            try:
                session.execute(text("SELECT 1"))
                db_healthy = True
            except Exception:
                logger.warning("readiness_db_check_failed", exc_info=True)
            finally:
                session.close()
        status_value = "ok" if db_healthy or not db_enabled else "degraded"
        return {
            "status": status_value,
            "database": {"enabled": db_enabled, "healthy": db_healthy},
        }

    @app.get("/metrics", tags=["metrics"])
    async def get_metrics() -> dict:
        payload = metrics.as_dict()
        payload["runbook_anchors"] = alerting.RUNBOOK_ANCHORS
        return payload

    @app.get("/metrics/prometheus", tags=["metrics"])
    async def get_metrics_prometheus() -> Response:
        """Minimal Prometheus text-format view of the booking counters."""
        lines: list[str] = []

        def emit(name: str, value: float) -> None:
            lines.append(f"booking_{name} {value}")

        for name in (
            "total_requests",
            "total_errors",
            "engagements_created",
            "match_requests",
            "holds_created",
            "hold_conflicts",
            "holds_booked",
            "holds_released",
            "hold_release_failures",
            "expired_holds_purged",
            "series_runs",
            "series_occurrences_generated",
            "series_errors",
            "reminder_runs",
            "reminders_sent",
            "reminders_skipped_first",
            "push_sent_total",
            "notification_attempts",
            "notification_failures",
            "background_job_errors",
            "alert_events_total",
        ):
            emit(name, float(getattr(metrics, name)))
        emit("alerts_open", float(len(metrics.alerts_open)))

        for path, rm in metrics.route_metrics.items():
            label_path = path.replace("\\", "\\\\").replace('"', r"\"")
            lines.append(
                f'booking_route_request_count{{path="{label_path}"}} {rm.request_count}'
            )
            lines.append(
                f'booking_route_error_count{{path="{label_path}"}} {rm.error_count}'
            )

        body = "\n".join(lines) + "\n"
        return Response(content=body, media_type="text/plain; version=0.0.4")

    return app


app = create_app()
