"""
Domain error taxonomy and the FastAPI handlers that turn it into responses.

Every error response has the shape ``{"error": str, "details"?: str, ...extra}``.
Business errors (validation, not found, precondition, conflict) are recovered into
structured responses; anything else is logged and answered with a generic 500.
"""
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.logging import get_logger

logger = get_logger(__name__)


class DomainError(Exception):
    """Base class for errors that map onto a structured client response."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[str] = None, status_code: Optional[int] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra

    def to_payload(self) -> dict:
        payload = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        payload.update({k: v for k, v in self.extra.items() if v is not None})
        return payload


class ValidationError(DomainError):
    """Missing or malformed required input."""
    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(DomainError):
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, entity: str, entity_id: Any, details: Optional[str] = None):
        super().__init__(f"{entity} with ID {entity_id} not found", details=details)
        self.entity = entity
        self.entity_id = entity_id


class PreconditionError(DomainError):
    """Entity exists but is in the wrong state for the requested transition."""
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(DomainError):
    status_code = status.HTTP_409_CONFLICT


def conflict_from_integrity_error(exc: IntegrityError) -> ConflictError:
    """Translate a store uniqueness/constraint violation into a ConflictError."""
    raw = str(getattr(exc, "orig", exc))
    lowered = raw.lower()
    field = None
    # postgres: Key (email)=(...) already exists / sqlite: UNIQUE constraint failed: customers.email
    if "key (" in lowered:
        field = raw[lowered.index("key (") + 5:].split(")", 1)[0]
    elif "unique constraint failed:" in lowered:
        field = raw[lowered.index("unique constraint failed:") + 25:].strip().split(",")[0]
    message = f"Duplicate value for {field}" if field else "Conflicting record already exists"
    return ConflictError(message, details=raw.splitlines()[0] if raw else None)


# ============= HANDLERS =============

async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Validation failed", "details": "; ".join(problems)},
    )


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    conflict = conflict_from_integrity_error(exc)
    logger.warning(f"{request.method} {request.url.path} conflict: {conflict.details}")
    return JSONResponse(status_code=conflict.status_code, content=conflict.to_payload())


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "details": str(exc) or exc.__class__.__name__},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
