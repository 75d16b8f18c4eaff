from pydantic import BaseModel, ConfigDict
from typing import Any, Dict, List, Optional
from datetime import datetime


class RequestRecordResponse(BaseModel):
    """Read-only projection of a lifecycle record."""
    model_config = ConfigDict(from_attributes=True)

    request_id: str
    status: str
    tenant: Optional[str] = None
    source_system: Optional[str] = None
    request_type: Optional[str] = None
    last_stage: Optional[str] = None
    next_stage: Optional[str] = None
    workflow_id: Optional[str] = None
    last_error_code: Optional[str] = None
    last_error_msg: Optional[str] = None
    retry_count: int = 0
    raw_ref: Optional[str] = None
    enriched_ref: Optional[str] = None
    final_ref: Optional[str] = None
    contains_phi: bool = False
    idempotency_key: Optional[str] = None
    external_reference_id: Optional[str] = None
    sync_processed: bool = False
    async_queued: bool = False
    received_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    callback_sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EventRecordResponse(BaseModel):
    """Schema for one ledger entry inside a timeline."""
    model_config = ConfigDict(from_attributes=True)

    sequence_no: int
    stage: str
    event_type: str
    status: str
    attempt: int
    retryable: bool
    next_retry_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    worker_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class TimelineResponse(BaseModel):
    request_id: str
    events: List[EventRecordResponse]


class OutboxStatsResponse(BaseModel):
    pending: int
    stuck: int
    dead_letter: int
    max_retries: int
