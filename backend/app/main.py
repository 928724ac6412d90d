from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .account_sync import AccountSyncError
from .config import settings
from .distribution import DistributionError
from .logs import json_log
from .processor import ProcessorError
from .routers.connect import router as connect_router
from .routers.jobs import router as jobs_router
from .routers.splits import router as splits_router
from .routers.tips import router as tips_router
from .routers.webhooks import router as webhooks_router
from .services import build_services
from .splits import SplitError
from .tips import TipPoolError

STARTED_AT_UTC = datetime.now(timezone.utc)
SERVICE_NAME = "pos-payments-backend"


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_content(detail: str, exc: Exception) -> dict:
    content = {"detail": detail}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return content


def _register_exception_handlers(app: FastAPI) -> None:
    # Map common DB constraint/cast errors to 4xx so clients get actionable responses
    # instead of generic 500s.
    @app.exception_handler(pg_errors.InvalidTextRepresentation)
    def _invalid_text_representation(_req: Request, exc: Exception):
        # e.g. malformed uuid or invalid enum cast
        return JSONResponse(status_code=400, content=_error_content("invalid value", exc))

    @app.exception_handler(pg_errors.ForeignKeyViolation)
    def _foreign_key_violation(_req: Request, exc: Exception):
        return JSONResponse(status_code=400, content=_error_content("invalid reference", exc))

    @app.exception_handler(pg_errors.UniqueViolation)
    def _unique_violation(_req: Request, exc: Exception):
        return JSONResponse(status_code=409, content=_error_content("conflict", exc))

    @app.exception_handler(pg_errors.CheckViolation)
    def _check_violation(_req: Request, exc: Exception):
        return JSONResponse(status_code=400, content=_error_content("constraint violation", exc))

    @app.exception_handler(pg_errors.NotNullViolation)
    def _not_null_violation(_req: Request, exc: Exception):
        return JSONResponse(status_code=400, content=_error_content("missing required value", exc))

    @app.exception_handler(DistributionError)
    def _distribution_error(_req: Request, exc: DistributionError):
        return JSONResponse(status_code=400, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(TipPoolError)
    def _tip_pool_error(_req: Request, exc: TipPoolError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(SplitError)
    def _split_error(_req: Request, exc: SplitError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(AccountSyncError)
    def _account_sync_error(_req: Request, exc: AccountSyncError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(ProcessorError)
    def _processor_error(req: Request, exc: ProcessorError):
        json_log(
            "error",
            "http.request.processor_error",
            request_id=_current_request_id(req),
            path=req.url.path,
            operation=exc.operation,
            error=str(exc),
        )
        return JSONResponse(status_code=502, content=_error_content("payment processor unavailable", exc))

    @app.exception_handler(RequestValidationError)
    def _request_validation_error(_req: Request, exc: Exception):
        content = {"detail": "validation failed"}
        if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
            content["errors"] = exc.errors()
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(Exception)
    def _unhandled_exception(req: Request, exc: Exception):
        rid = _current_request_id(req)
        json_log(
            "error",
            "http.request.unhandled",
            request_id=rid,
            method=req.method,
            path=req.url.path,
            error=str(exc),
        )
        content = {"detail": "internal error", "request_id": rid}
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)


async def _request_logging(request: Request, call_next):
    # Correlation id + basic structured request logging.
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if not path.startswith("/health"):
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response


def _db_health(app: FastAPI):
    services = getattr(app.state, "services", None)
    if services is None:
        return False, "services not initialized"
    try:
        services.db.ping()
        return True, None
    except Exception as exc:
        return False, str(exc)


def create_app(services=None) -> FastAPI:
    """
    Build the API. Tests pass prebuilt `services`; otherwise they are built
    from the environment on startup and closed on shutdown.
    """
    app = FastAPI(title="POS Payments API", version=settings.api_version)
    app.state.services = services

    _register_exception_handlers(app)
    app.middleware("http")(_request_logging)

    # Dev CORS: the dashboard runs on a different port during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(webhooks_router)
    app.include_router(connect_router)
    app.include_router(tips_router)
    app.include_router(splits_router)
    app.include_router(jobs_router)

    @app.on_event("startup")
    def _startup():
        if app.state.services is None:
            app.state.services = build_services(settings)
        ok, err = _db_health(app)
        if ok:
            json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
        else:
            json_log("warning", "startup.db_probe_failed", env=settings.env, error=err)

    @app.on_event("shutdown")
    def _shutdown():
        if app.state.services is not None:
            app.state.services.close()

    @app.get("/health")
    def health(req: Request):
        request_id = _current_request_id(req)
        ok, err = _db_health(app)
        content = {
            "status": "ok" if ok else "degraded",
            "env": settings.env,
            "db": "ok" if ok else "down",
            "service": SERVICE_NAME,
            "version": settings.api_version,
            "started_at": STARTED_AT_UTC.isoformat(),
            "request_id": request_id,
        }
        if not ok:
            if settings.env in {"local", "dev"}:
                content["error"] = err
            return JSONResponse(status_code=503, content=content)
        return content

    @app.get("/health/live")
    def health_live(req: Request):
        return {
            "status": "ok",
            "env": settings.env,
            "service": SERVICE_NAME,
            "request_id": _current_request_id(req),
        }

    @app.get("/health/ready")
    def health_ready(req: Request):
        ok, err = _db_health(app)
        content = {
            "status": "ready" if ok else "degraded",
            "env": settings.env,
            "db": "ok" if ok else "down",
            "service": SERVICE_NAME,
            "version": settings.api_version,
            "request_id": _current_request_id(req),
        }
        if not ok:
            if settings.env in {"local", "dev"}:
                content["error"] = err
            return JSONResponse(status_code=503, content=content)
        return content

    @app.get("/meta")
    def meta():
        return {
            "service": SERVICE_NAME,
            "version": settings.api_version,
            "env": settings.env,
            "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
            "started_at": STARTED_AT_UTC.isoformat(),
        }

    return app


app = create_app()
