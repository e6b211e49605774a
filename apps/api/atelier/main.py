from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from starlette.exceptions import HTTPException as StarletteHTTPException

from atelier.api.routes import router as api_router
from atelier.core.config import get_settings
from atelier.core.events import InternalEvent, event_bus
from atelier.logging import configure_logging
from atelier.middleware.correlation_id import CorrelationIdMiddleware
from atelier.middleware.request_logging import RequestLoggingMiddleware
from atelier.otel import get_fastapi_server_request_hook, setup_otel
from atelier.projects.api import error_response


configure_logging()
logger = logging.getLogger("atelier.lifecycle")
_subscriptions_registered = False

_HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
}


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"operation": event.name})


def _on_stage_changed(event: InternalEvent) -> None:
    payload = event.payload.get("payload", {}) if isinstance(event.payload, dict) else {}
    logger.info(
        "project.stage_change_published",
        extra={
            "client_id": payload.get("client_id"),
            "previous_stage": payload.get("previous_stage"),
            "new_stage": payload.get("new_stage"),
            "rule": payload.get("rule"),
        },
    )


def _on_project_event(event: InternalEvent) -> None:
    logger.debug("project.event", extra={"operation": event.name})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe("project.stage_changed", _on_stage_changed)
        event_bus.subscribe("project.*", _on_project_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Atelier API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="validation_error",
        message="request validation failed",
        details=jsonable_encoder(exc.errors()),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=_HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
        message=str(exc.detail),
        details=exc.detail,
    )


settings = get_settings()
if settings.otel_enabled:
    setup_otel("atelier-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
