from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


logger = logging.getLogger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=jsonable_encoder(payload))


def not_found(message: str = "Job not found") -> APIError:
    return APIError(status_code=404, code="NOT_FOUND", message=message)


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Normalize pydantic validation errors into our contract envelope.
    # `ctx` may carry the raised exception object, which is not JSON-serializable.
    errors = [{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()]
    first = errors[0].get("msg") if errors else None
    return error_response(
        status_code=400,
        code="VALIDATION_ERROR",
        message=str(first or "Request validation failed."),
        details={"errors": errors},
    )


async def unhandled_error_handler(req: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", req.method, req.url.path, exc_info=exc)
    return error_response(
        status_code=500,
        code="INTERNAL_ERROR",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
