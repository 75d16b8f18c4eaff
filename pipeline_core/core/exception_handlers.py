import logging
import uuid
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from pipeline_core.core.exceptions import PipelineError

log = logging.getLogger("exception_handlers")


# Trace id returned with every error body, also written to the log line
def _tid():
    return uuid.uuid4().hex


def _error_body(code: str, message: str, trace_id: str, **extra):
    error = {"code": code, "message": message}
    error.update(extra)
    return {"success": False, "error": error, "trace_id": trace_id}


# ----------- Exception Handlers (called by FastAPI) -----------

def pipeline_exception_handler(request: Request, exc: PipelineError):
    """Handles PipelineError and its subclasses with their own error code and status."""
    trace_id = _tid()
    log.error(f"{exc.__class__.__name__} on {request.url.path}: {exc} trace_id={trace_id}")
    extra = {"request_id": exc.request_id} if exc.request_id else {}
    return JSONResponse(
        status_code=exc.http_status,
        content=_error_body(exc.error_code, exc.message, trace_id, **extra),
    )


def http_exception_handler(request: Request, exc: HTTPException):
    """Handles exceptions raised by HTTPException (e.g., 404, 400)."""
    return JSONResponse(status_code=exc.status_code, content=_error_body("http_error", exc.detail, _tid()))


def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handles Pydantic validation errors (422 Unprocessable Entity)."""
    body = _error_body("validation_error", "Invalid input data", _tid(), details=exc.errors())
    return JSONResponse(status_code=422, content=body)


def generic_exception_handler(request: Request, exc: Exception):
    """Handles all unhandled exceptions (500 Internal Server Error)."""
    trace_id = _tid()
    log.exception(f"Unhandled exception on path: {request.url.path} trace_id={trace_id}")
    return JSONResponse(status_code=500, content=_error_body("server_error", "Internal Server Error", trace_id))


# ----------- Registration Function -----------

def setup_exception_handlers(app: FastAPI):
    """Registers all custom exception handlers with the FastAPI application."""
    app.add_exception_handler(PipelineError, pipeline_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    return app
