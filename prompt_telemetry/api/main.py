from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import time
import uuid
import structlog

from .routes import all_routers
from .error_models import ErrorCode, ErrorDetail, ErrorResponse
from .. import __version__
from ..monitoring.exceptions import MetricStoreError
from ..monitoring.telemetry_service import TelemetryService


logger = structlog.get_logger(__name__)


def _error_json(request: Request, body: ErrorResponse, status_code: Optional[int] = None) -> JSONResponse:
    body.request_id = getattr(request.state, "request_id", None)
    headers = {"X-Request-ID": body.request_id} if body.request_id else None
    return JSONResponse(status_code=status_code or body.http_status,
                        content=body.model_dump(mode="json"),
                        headers=headers)


def _field_path(loc) -> Optional[str]:
    return ".".join(str(part) for part in loc if part != "body") or None


def create_app(service: Optional[TelemetryService] = None) -> FastAPI:
    """Build the HTTP front end over a telemetry service

    Args:
        service: Pre-built telemetry service. When omitted one is built from
            environment settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        telemetry = service or TelemetryService()
        app.state.telemetry_service = telemetry
        await telemetry.start()
        logger.info("Prompt Telemetry API started", version=__version__)
        yield
        await telemetry.stop()
        logger.info("Prompt Telemetry API stopped")

    application = FastAPI(
        title="Prompt Telemetry",
        description="Log ingestion, issue detection and performance tracking for AI applications",
        version=__version__,
        lifespan=lifespan
    )

    application.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    application.add_middleware(GZipMiddleware, minimum_size=1000)

    @application.middleware("http")
    async def bind_request_context(request: Request, call_next):
        """Tag the request and everything logged while serving it with a request ID"""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id,
                                               tenant_id=request.headers.get("X-Tenant-ID"))
        started = time.perf_counter()

        response = await call_next(request)

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.1f}"
        logger.info("Request completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    elapsed_ms=round(elapsed_ms, 1))
        return response

    @application.exception_handler(MetricStoreError)
    async def on_store_error(request: Request, exc: MetricStoreError):
        logger.error("Telemetry store failure", path=request.url.path, error=str(exc))
        return _error_json(request, ErrorResponse.for_code(ErrorCode.STORAGE_ERROR, str(exc)))

    @application.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        details = [ErrorDetail(field=_field_path(err.get("loc", ())),
                               message=err.get("msg", "Invalid value"),
                               code=err.get("type"))
                   for err in exc.errors()]
        logger.warning("Request rejected", path=request.url.path, errors=len(details))
        body = ErrorResponse.for_code(ErrorCode.VALIDATION_ERROR, "Request validation failed", details)
        return _error_json(request, body)

    @application.exception_handler(HTTPException)
    async def on_http_error(request: Request, exc: HTTPException):
        logger.warning("HTTP error", status_code=exc.status_code, detail=exc.detail)
        body = ErrorResponse.for_status(exc.status_code, str(exc.detail or "Request failed"))
        return _error_json(request, body, status_code=exc.status_code)

    @application.exception_handler(Exception)
    async def on_unhandled_error(request: Request, exc: Exception):
        logger.error("Unhandled exception",
                     method=request.method,
                     path=request.url.path,
                     error=str(exc),
                     exc_info=True)
        return _error_json(request, ErrorResponse.for_code(ErrorCode.INTERNAL_ERROR,
                                                           "An unexpected error occurred"))

    for router in all_routers:
        application.include_router(router)

    return application


if __name__ == "__main__":
    import uvicorn
    from ..config.logging_config import setup_file_logging

    setup_file_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000, log_level="info")
