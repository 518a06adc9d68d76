from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from limitledger.apps.api.response import error_response, is_versioned_request
from limitledger.core.errors import (
    BillingEventSignatureError,
    CreditPurchaseNotFoundError,
    CreditPurchasePayerMismatchError,
    InsufficientBalanceError,
    InvalidCreditAmountError,
    InvalidCreditPurchaseStatusError,
    InvalidIncrementError,
    InvalidLimitOverrideError,
    LimitExceededError,
    LimitLedgerError,
    LimitOverrideNotFoundError,
    PayerResolutionError,
    PlanNotFoundError,
    UnknownMetricError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "PAYMENT_REQUIRED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Ordered: the first matching class wins.
_DOMAIN_ERRORS: tuple[tuple[type[LimitLedgerError], int, str], ...] = (
    (LimitExceededError, 402, "LIMIT_EXCEEDED"),
    (InsufficientBalanceError, 402, "INSUFFICIENT_CREDITS"),
    (CreditPurchaseNotFoundError, 404, "CREDIT_PURCHASE_NOT_FOUND"),
    (LimitOverrideNotFoundError, 404, "LIMIT_OVERRIDE_NOT_FOUND"),
    (PlanNotFoundError, 404, "PLAN_NOT_FOUND"),
    (CreditPurchasePayerMismatchError, 409, "CREDIT_PURCHASE_PAYER_MISMATCH"),
    (UnknownMetricError, 422, "UNKNOWN_METRIC"),
    (InvalidIncrementError, 422, "INVALID_INCREMENT"),
    (PayerResolutionError, 422, "PAYER_UNRESOLVED"),
    (InvalidCreditAmountError, 422, "INVALID_CREDIT_AMOUNT"),
    (InvalidCreditPurchaseStatusError, 409, "CREDIT_PURCHASE_STATUS_CONFLICT"),
    (InvalidLimitOverrideError, 422, "INVALID_LIMIT_OVERRIDE"),
    (BillingEventSignatureError, 400, "BILLING_SIGNATURE_INVALID"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException details are either {"code", "message", ...} or a plain string.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def classify_domain_error(exc: LimitLedgerError) -> tuple[int, str, dict[str, Any] | None]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = 400, "BAD_REQUEST"
    details: dict[str, Any] | None = None
    if isinstance(exc, LimitExceededError):
        details = {"limit": exc.result.to_dict()}
    elif isinstance(exc, InsufficientBalanceError):
        details = {"balance": exc.balance.to_dict()}
    elif isinstance(exc, UnknownMetricError):
        details = {"metric": exc.metric}
    return status_code, code, details


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Starlette raises its own class for unknown routes and methods.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def payload_validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    # Raised when service code validates nested payloads (billing event data).
    errors = exc.errors(include_url=False, include_context=False)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_response(
        request=request,
        code="VALIDATION_ERROR",
        message="Payload validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: LimitLedgerError) -> JSONResponse:
    status_code, code, details = classify_domain_error(exc)
    message = str(exc) or "Request failed"
    logger.info("domain_error code=%s status=%s path=%s", code, status_code, request.url.path)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": {"code": code, "message": message}}, status_code=status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
