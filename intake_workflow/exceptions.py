"""Workflow error taxonomy and global HTTP exception handlers.

Every workflow error carries a ``retryable`` flag. Stage boundaries use it to
decide between re-delivery through the dispatcher and terminating the record's
workflow with an ``error`` status.
"""
import uuid
import traceback
from typing import Any, Dict, Optional

from fastapi import Request, HTTPException, FastAPI
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from loguru import logger

from intake_workflow.utils import utc_now


class WorkflowError(Exception):
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(WorkflowError):
    """Bad input; re-running the same payload cannot succeed."""

    def __init__(self, message: str, errors: Optional[list] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.errors = errors or [message]


class CredentialUnavailable(WorkflowError):
    """No bearer credential stored yet; the refresh stage will produce one."""
    retryable = True


class CredentialExpired(CredentialUnavailable):
    """Stored credential is past its buffered expiry or was rejected upstream."""


class RemoteNotFound(WorkflowError):
    """Upstream rejected an identifier (patient or appointment)."""


class RemoteTransient(WorkflowError):
    """Network failure, timeout or 5xx from the clinical API."""
    retryable = True

    def __init__(self, message: str, status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.status = status


class DeliveryFailure(WorkflowError):
    """A message could not be published; the workflow would stall if dropped."""
    retryable = True


class RecordNotFound(WorkflowError):
    pass


class TokenRefreshError(WorkflowError):
    retryable = True


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions are retried; the dispatcher's attempt cap bounds them."""
    if isinstance(exc, WorkflowError):
        return exc.retryable
    return True


def describe_error(exc: BaseException) -> Dict[str, Any]:
    return {
        "error": str(exc) or type(exc).__name__,
        "error_type": type(exc).__name__,
        "retryable": is_retryable(exc),
        "details": getattr(exc, "details", {}) or {},
    }


def _error_response(status_code: int, message: str, request_id: str, **extra: Any) -> JSONResponse:
    content = {
        "success": False,
        "error": message,
        "request_id": request_id,
        "timestamp": utc_now().isoformat(),
    }
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def workflow_error_status(exc: WorkflowError) -> int:
    if isinstance(exc, RecordNotFound):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, (TokenRefreshError, RemoteTransient, RemoteNotFound, CredentialUnavailable)):
        return 502
    return 500


async def workflow_exception_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    """Not-found and validation errors are shown as-is; upstream failures stay generic."""
    request_id = str(uuid.uuid4())
    status_code = workflow_error_status(exc)
    log = logger.bind(request_id=request_id, error_type=type(exc).__name__)

    if status_code == 404:
        log.info(f"{request.method} {request.url.path}: {exc}")
        return _error_response(404, str(exc), request_id)
    if status_code == 422:
        log.warning(f"{request.method} {request.url.path}: {exc}")
        return _error_response(422, str(exc), request_id, details=getattr(exc, "errors", []))

    log.error(f"{request.method} {request.url.path} failed upstream: {exc}")
    message = "Upstream service unavailable" if status_code == 502 else "An error occurred while processing your request"
    return _error_response(status_code, message, request_id)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = str(uuid.uuid4())

    logger.bind(
        request_id=request_id,
        error_type=type(exc).__name__,
        traceback=traceback.format_exc(),
    ).error(f"Unhandled error: {request.method} {request.url.path} - {exc}")

    return _error_response(500, "An error occurred while processing your request", request_id)


async def validation_exception_handler(request: Request, exc: PydanticValidationError) -> JSONResponse:
    request_id = str(uuid.uuid4())
    logger.bind(request_id=request_id).warning(f"Schema validation failed: {request.method} {request.url.path}")
    return _error_response(422, "Validation failed", request_id, details=exc.errors(include_input=False))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    # 5xx bodies never carry detail; 4xx detail is written for the caller
    request_id = str(uuid.uuid4())

    if exc.status_code >= 500:
        logger.bind(request_id=request_id).error(
            f"HTTP {exc.status_code}: {request.method} {request.url.path} - {exc.detail}"
        )
        return _error_response(exc.status_code, "An error occurred", request_id)

    return _error_response(exc.status_code, exc.detail, request_id)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(WorkflowError, workflow_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
