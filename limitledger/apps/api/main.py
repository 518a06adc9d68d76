from __future__ import annotations

import json
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from limitledger.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    payload_validation_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from limitledger.apps.api.response import API_VERSION, is_versioned_request
from limitledger.apps.api.routes.billing_events import router as billing_events_router
from limitledger.apps.api.routes.credits_admin import router as credits_admin_router
from limitledger.apps.api.routes.health import router as health_router
from limitledger.apps.api.routes.limits import router as limits_router
from limitledger.apps.api.routes.limits_admin import router as limits_admin_router
from limitledger.core.config import get_settings
from limitledger.core.errors import LimitLedgerError
from limitledger.core.logging import configure_logging
from limitledger.services.telemetry import increment_counter


_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)


def _wrap_payload(payload: object, request_id: str) -> dict:
    return {"data": payload, "meta": {"request_id": request_id, "api_version": API_VERSION}}


def _is_enveloped(payload: object) -> bool:
    return (
        isinstance(payload, dict)
        and "data" in payload
        and "meta" in payload
        and isinstance(payload.get("meta"), dict)
        and payload["meta"].get("api_version") == API_VERSION
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title=f"{get_settings().app_name} API",
        openapi_url=f"/{API_VERSION}/openapi.json",
        docs_url=f"/{API_VERSION}/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        increment_counter(f"http.status.{response.status_code // 100}xx")
        # Wrap versioned JSON payloads that handlers returned unwrapped.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
            and not isinstance(response, StreamingResponse)
        ):
            raw_body = getattr(response, "body", None)
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
                if payload is not None and not _is_enveloped(payload):
                    wrapped_response = JSONResponse(
                        content=_wrap_payload(payload, request_id),
                        status_code=response.status_code,
                    )
                    for key, value in response.headers.items():
                        if key.lower() in {"content-length", "content-type"}:
                            continue
                        wrapped_response.headers[key] = value
                    response = wrapped_response
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers["X-Response-Time-Ms"] = f"{(time.monotonic() - start) * 1000.0:.1f}"
        return response

    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, payload_validation_exception_handler)
    app.add_exception_handler(LimitLedgerError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Admin surface for overrides, usage, and credit balances.
    app.include_router(limits_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(credits_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(limits_router, prefix=f"/{API_VERSION}")
    # Signed inbound events from the billing provider.
    app.include_router(billing_events_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
