"""
Error taxonomy for the pipeline core.

Durability failures (ledger, outbox, lifecycle store unreachable) are raised as
DurabilityError and are never swallowed here: if a call returns normally, the row is
committed. Lock-store failures in the idempotency guard are the one fail-open exception
and are handled inside that module.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tortoise.exceptions import DBConnectionError, IntegrityError, OperationalError


class ErrorCode:
    # General errors (1xxx)
    INTERNAL_ERROR = "CORE-1000"
    INVALID_REQUEST = "CORE-1001"
    NOT_FOUND = "CORE-1003"

    # Processing errors (5xxx)
    PROCESSING_FAILED = "CORE-5001"
    DOWNSTREAM_ERROR = "CORE-5002"

    # Infrastructure errors (6xxx)
    DATABASE_ERROR = "CORE-6001"
    SQS_ERROR = "CORE-6003"


class PipelineError(Exception):
    """Base exception carrying an error code and the request id for correlation."""

    def __init__(
        self,
        message: str,
        error_code: str = ErrorCode.INTERNAL_ERROR,
        request_id: Optional[str] = None,
        tenant: Optional[str] = None,
        http_status: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.request_id = request_id
        self.tenant = tenant
        self.http_status = http_status
        self.timestamp = datetime.now(timezone.utc)
        self.context: Dict[str, Any] = {}

    def with_context(self, key: str, value: Any) -> "PipelineError":
        self.context[key] = value
        return self

    def __str__(self):
        if self.request_id:
            return f"[{self.error_code}] {self.message} (request_id={self.request_id})"
        return f"[{self.error_code}] {self.message}"


class DurabilityError(PipelineError):
    """The durable store could not record a state change. Callers must not proceed."""

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message, ErrorCode.DATABASE_ERROR, request_id=request_id, http_status=503)


class PublishError(PipelineError):
    """The queue service rejected or did not acknowledge a publish."""

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message, ErrorCode.SQS_ERROR, request_id=request_id, http_status=502)


class NotFoundError(PipelineError):
    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message, ErrorCode.NOT_FOUND, request_id=request_id, http_status=404)


# Store-level failures that mean "the write may not have happened"
STORE_ERRORS = (OperationalError, DBConnectionError, OSError)


@contextmanager
def durable(operation: str, request_id: Optional[str] = None):
    """
    Translates store failures raised inside the block into DurabilityError.

    Usage:
        with durable("record_start", request_id):
            await EventRecord.create(...)
    """
    try:
        yield
    except IntegrityError:
        # Constraint conflicts are logical, the caller decides what they mean
        raise
    except STORE_ERRORS as e:
        raise DurabilityError(f"{operation} failed: {e}", request_id=request_id) from e
