from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from mailbill.core.exceptions import ServiceError

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    rid = request.headers.get("x-request-id") or getattr(request.state, "request_id", None)
    return str(rid) if rid else str(uuid.uuid4())


def _json_error(request: Request, status: int, err_code: str, message: str, extra: dict | None = None) -> JSONResponse:
    rid = _request_id(request)
    content = {"error": err_code, "message": message, "request_id": rid}
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status, content=content, headers={"X-Request-ID": rid})


def register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers for consistent JSON errors.

    Response envelope shape:
    {"error": "<error_code>", "message": "<human message>", "request_id": "<uuid>"}
    """

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):  # type: ignore[override]
        code_map = {
            400: "bad_request",
            401: "unauthorized",
            402: "payment_required",
            403: "forbidden",
            404: "not_found",
            409: "conflict",
            429: "rate_limit_exceeded",
            503: "service_unavailable",
        }
        err_code = code_map.get(exc.status_code, "api_error")
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return _json_error(request, exc.status_code, err_code, detail or "Request failed")

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):  # type: ignore[override]
        if exc.status_code >= 500:
            logger.error("ServiceError %s: %s", exc.code, exc)
        else:
            logger.warning("ServiceError %s: %s", exc.code, exc)
        extra = getattr(exc, "details", None) or None
        return _json_error(request, exc.status_code, exc.code, str(exc), extra)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid field '{field}': {first.get('msg')}" if field else "Invalid request payload"
        return _json_error(request, 400, "validation_error", message)

    @app.exception_handler(PydanticValidationError)
    async def pydantic_validation_handler(request: Request, exc: PydanticValidationError):  # type: ignore[override]
        return _json_error(request, 400, "validation_error", "Invalid request payload")

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):  # type: ignore[override]
        logger.exception("Database error")
        return _json_error(request, 500, "database_error", "An internal database error occurred.")

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logger.exception("Unhandled error")
        return _json_error(request, 500, "internal_error", "Internal server error")
