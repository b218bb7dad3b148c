"""
Error responses.

Every response body is ``{"error_msg": str, "data": ...}``; errors map onto
HTTP statuses by their reporting class.
"""
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ...utils.exceptions import (
    BaseClusterPilotError,
    ConflictError,
    DependencyError,
    LogCollectorUnavailableError,
    NotFoundError,
    ValidationError,
)
from ...utils.logging import logger


def envelope(data: Any = None, error_msg: str = "") -> dict:
    return {"error_msg": error_msg, "data": data}


def status_code_for(exc: BaseClusterPilotError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, LogCollectorUnavailableError):
        return 503
    if isinstance(exc, (ValidationError, DependencyError)):
        return 400
    return 500


async def clusterpilot_error_handler(request: Request, exc: BaseClusterPilotError):
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc}")
    return JSONResponse(status_code=status_code, content=envelope(error_msg=str(exc)))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    parts = []
    for error in errors:
        location = ".".join(str(p) for p in error.get("loc", ()) if p != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(status_code=400, content=envelope(error_msg="; ".join(parts) or "invalid request"))


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope(error_msg=str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content=envelope(error_msg="Internal server error"))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BaseClusterPilotError, clusterpilot_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
