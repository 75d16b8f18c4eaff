from enum import Enum
from tortoise import fields, models


class RequestStatus(str, Enum):
    RECEIVED = "RECEIVED"
    PARSING = "PARSING"
    VALIDATING = "VALIDATING"
    ENRICHING = "ENRICHING"
    PROCESSING_ATTACHMENTS = "PROCESSING_ATTACHMENTS"
    MAPPING = "MAPPING"
    CALLING_DOWNSTREAM = "CALLING_DOWNSTREAM"
    BUILDING_RESPONSE = "BUILDING_RESPONSE"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class RequestType(str, Enum):
    SUBMIT = "SUBMIT"
    INQUIRY = "INQUIRY"
    CANCEL = "CANCEL"
    UPDATE = "UPDATE"


class RequestRecord(models.Model):
    """
    Authoritative lifecycle record for one pipeline request. Created once (duplicate
    creates are ignored), mutated by every stage, never deleted.
    """
    request_id = fields.CharField(max_length=64, primary_key=True)
    status = fields.CharField(max_length=32, default=RequestStatus.RECEIVED.value)
    tenant = fields.CharField(max_length=64, null=True)
    source_system = fields.CharField(max_length=64, null=True)
    request_type = fields.CharField(max_length=32, null=True)

    # Workflow tracking
    last_stage = fields.CharField(max_length=64, null=True)
    next_stage = fields.CharField(max_length=64, null=True)
    workflow_id = fields.CharField(max_length=128, null=True)

    # Error tracking
    last_error_code = fields.CharField(max_length=64, null=True)
    last_error_msg = fields.TextField(null=True)
    retry_count = fields.IntField(default=0)

    # Object storage pointers ("bucket/key")
    raw_ref = fields.CharField(max_length=1024, null=True)
    enriched_ref = fields.CharField(max_length=1024, null=True)
    final_ref = fields.CharField(max_length=1024, null=True)

    contains_phi = fields.BooleanField(default=False)
    idempotency_key = fields.CharField(max_length=255, null=True)
    external_reference_id = fields.CharField(max_length=128, null=True)

    # Extracted from the submitted bundle, used by duplicate lookups
    patient_id = fields.CharField(max_length=128, null=True)
    provider_id = fields.CharField(max_length=128, null=True)

    # Sync/async race latches: each flips false -> true at most once
    sync_processed = fields.BooleanField(default=False)
    sync_processed_at = fields.DatetimeField(null=True)
    async_queued = fields.BooleanField(default=False)
    async_queued_at = fields.DatetimeField(null=True)

    received_at = fields.DatetimeField(null=True)
    completed_at = fields.DatetimeField(null=True)
    callback_sent_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "request_records"
        indexes = [
            ("idempotency_key",),
            ("external_reference_id",),
            ("patient_id", "provider_id", "received_at"),
            ("status", "updated_at"),
        ]
