from enum import Enum
from typing import Optional
from datetime import datetime
from tortoise import fields, models, timezone


class EventStatus(str, Enum):
    STARTED = "STARTED"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    RETRY = "RETRY"


class Stage(str, Enum):
    ORCHESTRATION = "ORCHESTRATION"
    PARSING = "PARSING"
    VALIDATION = "VALIDATION"
    ENRICHMENT = "ENRICHMENT"
    ATTACHMENT = "ATTACHMENT"
    CONVERSION = "CONVERSION"
    SUBMISSION = "SUBMISSION"
    RESPONSE = "RESPONSE"
    CALLBACK = "CALLBACK"


class EventRecord(models.Model):
    """
    One entry of the per-request sequence ledger. Append-only: the only column ever
    written after insert is worker_id.
    """
    id = fields.BigIntField(primary_key=True)
    tenant = fields.CharField(max_length=64) # never blank, see DEFAULT_TENANT in the ledger
    request_id = fields.CharField(max_length=64)
    stage = fields.CharField(max_length=64) # e.g. 'PARSING'
    event_type = fields.CharField(max_length=64) # e.g. 'PARSE_START', 'PARSE_OK'
    status = fields.CharEnumField(EventStatus)
    sequence_no = fields.BigIntField()
    attempt = fields.IntField(default=0) # 0 = first try
    retryable = fields.BooleanField(default=False)
    next_retry_at = fields.DatetimeField(null=True)
    duration_ms = fields.BigIntField(null=True)
    error_code = fields.CharField(max_length=64, null=True)
    error_message = fields.TextField(null=True)
    worker_id = fields.CharField(max_length=128, null=True) # pod name, lambda request id...
    metadata = fields.JSONField(null=True) # no PHI here, PHI lives in object storage
    started_at = fields.DatetimeField(null=True)
    completed_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "event_records"
        unique_together = (("request_id", "sequence_no"),)
        indexes = [
            ("request_id", "stage", "event_type"),    # Attempt counting
            ("tenant", "status", "retryable", "created_at"),  # Retry work-list
        ]

    def is_failure(self) -> bool:
        return self.status == EventStatus.FAILURE or (self.event_type or "").endswith("_FAIL")

    def is_success(self) -> bool:
        return self.status == EventStatus.SUCCESS or (self.event_type or "").endswith("_OK")

    def can_retry(self, now: Optional[datetime] = None) -> bool:
        now = now or timezone.now()
        return bool(self.retryable) and (self.next_retry_at is None or self.next_retry_at <= now)
