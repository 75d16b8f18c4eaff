from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime, timezone
import uuid


def _mid():
    return str(uuid.uuid4())


def _now():
    return datetime.now(timezone.utc)


class PipelineMessage(BaseModel):
    """Standard envelope for every message exchanged between pipeline stage workers."""
    # Core identifiers
    message_id: str = Field(default_factory=_mid)
    request_id: str
    idempotency_key: Optional[str] = None
    schema_version: str = "v1"

    # Routing
    stage: Optional[str] = None
    event_type: Optional[str] = None
    source_service: Optional[str] = None
    target_service: Optional[str] = None
    tenant: Optional[str] = None

    # Object storage pointer, or a small inline payload
    payload_bucket: Optional[str] = None
    payload_key: Optional[str] = None
    payload: Optional[str] = None

    # Downstream system info
    external_reference_id: Optional[str] = None

    # Error handling
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=_now)
    correlation_id: Optional[str] = None
    attempt_number: int = 1

    def model_post_init(self, __context: Any) -> None:
        if self.correlation_id is None:
            self.correlation_id = self.request_id

    @classmethod
    def create(cls, request_id: str, event_type: str, source_service: str, payload: Optional[str] = None, **kwargs) -> "PipelineMessage":
        return cls(request_id=request_id, event_type=event_type, source_service=source_service, payload=payload, **kwargs)

    @classmethod
    def with_storage_pointer(cls, request_id: str, stage: str, bucket: str, key: str, **kwargs) -> "PipelineMessage":
        return cls(request_id=request_id, stage=stage, payload_bucket=bucket, payload_key=key, **kwargs)

    def next_attempt(self) -> "PipelineMessage":
        """Copy for a re-drive: new message id, attempt number bumped, same correlation."""
        return self.model_copy(update={
            "message_id": _mid(),
            "attempt_number": self.attempt_number + 1,
            "created_at": _now(),
        })
