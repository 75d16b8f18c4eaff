from enum import Enum
from tortoise import fields, models


class LockStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"


class IdempotencyLock(models.Model):
    """
    Table used for idempotency of pipeline requests. The primary key makes the insert
    conditional ("only if key absent"); expires_at is the lease after which the row
    no longer counts, whatever its status.
    """
    key = fields.CharField(max_length=255, primary_key=True)
    owner = fields.CharField(max_length=128)
    status = fields.CharEnumField(LockStatus, default=LockStatus.PROCESSING)
    result = fields.TextField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    expires_at = fields.DatetimeField()
    completed_at = fields.DatetimeField(null=True)

    class Meta:
        table = "idempotency_locks"
        indexes = [
            ("expires_at",),  # Expiry sweep
        ]
