from enum import Enum
from tortoise import fields, models
import uuid


class OutboxStatus(str, Enum):
    PENDING = "PENDING"  # Written with the domain change, waiting for the relay
    PROCESSING = "PROCESSING"  # Claimed by a relay worker
    COMPLETED = "COMPLETED"  # Publish acknowledged by the queue service
    FAILED = "FAILED"  # Publish failed, waiting for the requeue sweep
    DEAD_LETTER = "DEAD_LETTER"  # Retry ceiling reached, needs an operator


class OutboxEntry(models.Model):
    """
    The Outbox table stores outgoing queue messages atomically with the state change
    they announce. This is the core of the Transactional Outbox Pattern.

    Rows are never deleted (audit); payload is never rewritten after insert.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    aggregate_type = fields.CharField(max_length=64) # e.g. 'PipelineMessage'
    aggregate_id = fields.CharField(max_length=64, null=True) # request id the message belongs to
    event_type = fields.CharField(max_length=128) # stage or event the message announces
    payload = fields.JSONField() # The message body published to the queue
    destination_queue = fields.CharField(max_length=255)
    status = fields.CharEnumField(OutboxStatus, default=OutboxStatus.PENDING)
    retry_count = fields.IntField(default=0)
    last_error = fields.TextField(null=True)
    locked_at = fields.DatetimeField(null=True) # when a relay worker claimed the row
    created_at = fields.DatetimeField(auto_now_add=True)
    processed_at = fields.DatetimeField(null=True)

    class Meta:
        table = "outbox"
        indexes = [
            ("status", "created_at"),  # Relay fetch: oldest PENDING first
            ("aggregate_id",),         # Entries for one request
            ("status", "retry_count"), # Stuck / dead-letter sweeps
        ]
