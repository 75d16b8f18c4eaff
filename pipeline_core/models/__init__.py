# pipeline_core/models/__init__.py
from .outbox import OutboxEntry, OutboxStatus
from .idempotency import IdempotencyLock, LockStatus
from .event_record import EventRecord, EventStatus, Stage
from .request_record import RequestRecord, RequestStatus, RequestType

# Export all models
__all__ = [
    "OutboxEntry",
    "OutboxStatus",
    "IdempotencyLock",
    "LockStatus",
    "EventRecord",
    "EventStatus",
    "Stage",
    "RequestRecord",
    "RequestStatus",
    "RequestType",
]
