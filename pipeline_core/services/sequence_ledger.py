"""
Sequence ledger: the append-only, per-request event log.

Every request's events carry a gapless sequence_no starting at 1. The number is computed
from the store (max + 1) inside the inserting transaction, and (request_id, sequence_no)
is unique, so a writer that loses a race gets an IntegrityError and recomputes. Nothing
here keeps a counter in process memory.

Store failures are raised as DurabilityError: an event that could not be written must not
look like it was.

Usage pattern:
    seq = await record_start(request_id, tenant, "PARSING", "PARSE_START")
    ...
    await record_complete(request_id, tenant, "PARSING", "PARSE_OK", duration_ms)
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from tortoise import timezone
from tortoise.exceptions import IntegrityError
from tortoise.expressions import Q
from tortoise.transactions import in_transaction

from pipeline_core.core.config import LEDGER_APPEND_ATTEMPTS
from pipeline_core.core.exceptions import DurabilityError, durable
from pipeline_core.models.event_record import EventRecord, EventStatus

log = logging.getLogger("sequence_ledger")

# Business rule: the tenant column is NOT NULL, unknown tenants are grouped here
DEFAULT_TENANT = "UNKNOWN"


def safe_tenant(tenant: Optional[str]) -> str:
    return tenant if tenant and tenant.strip() else DEFAULT_TENANT


async def _next_sequence_no(request_id: str, conn: Any) -> int:
    rows = await (
        EventRecord.filter(request_id=request_id)
        .using_db(conn)
        .order_by("-sequence_no")
        .limit(1)
        .values_list("sequence_no", flat=True)
    )
    return rows[0] + 1 if rows else 1


async def _next_attempt(request_id: str, stage: str, event_type: str, conn: Any) -> int:
    rows = await (
        EventRecord.filter(request_id=request_id, stage=stage, event_type=event_type)
        .using_db(conn)
        .order_by("-attempt")
        .limit(1)
        .values_list("attempt", flat=True)
    )
    return (rows[0] if rows else 0) + 1


async def _append(request_id: str, stage: str, event_type: str, status: EventStatus,
                  count_attempt: bool = False, **fields) -> EventRecord:
    """Inserts one event at max(sequence_no) + 1, retrying when a concurrent writer wins the slot."""
    with durable(f"ledger append {status.value}", request_id):
        for _ in range(LEDGER_APPEND_ATTEMPTS):
            try:
                async with in_transaction() as conn:
                    sequence_no = await _next_sequence_no(request_id, conn)
                    if count_attempt:
                        fields["attempt"] = await _next_attempt(request_id, stage, event_type, conn)
                    return await EventRecord.create(
                        request_id=request_id,
                        stage=stage,
                        event_type=event_type,
                        status=status,
                        sequence_no=sequence_no,
                        using_db=conn,
                        **fields,
                    )
            except IntegrityError:
                log.debug(f"Sequence slot taken, recomputing: request_id={request_id}, event_type={event_type}")

    raise DurabilityError(
        f"Could not assign a sequence number after {LEDGER_APPEND_ATTEMPTS} attempts",
        request_id=request_id,
    )


async def record_start(request_id: str, tenant: Optional[str], stage: str, event_type: str,
                       metadata: Optional[Dict[str, Any]] = None, worker_id: Optional[str] = None) -> int:
    """Appends a STARTED event and returns its sequence number."""
    event = await _append(
        request_id, stage, event_type, EventStatus.STARTED,
        tenant=safe_tenant(tenant),
        attempt=0,
        retryable=False,
        started_at=timezone.now(),
        metadata=metadata,
        worker_id=worker_id,
    )
    log.debug(f"Event logged: request_id={request_id}, stage={stage}, event_type={event_type}, sequence_no={event.sequence_no}")
    return event.sequence_no


async def record_complete(request_id: str, tenant: Optional[str], stage: str, event_type: str, duration_ms: int,
                          metadata: Optional[Dict[str, Any]] = None, worker_id: Optional[str] = None) -> int:
    """Appends a SUCCESS event. Takes its own sequence slot, independent of the matching start."""
    event = await _append(
        request_id, stage, event_type, EventStatus.SUCCESS,
        tenant=safe_tenant(tenant),
        attempt=0,
        retryable=False,
        duration_ms=duration_ms,
        completed_at=timezone.now(),
        metadata=metadata,
        worker_id=worker_id,
    )
    log.info(f"Stage completed: request_id={request_id}, stage={stage}, event_type={event_type}, "
             f"duration={duration_ms}ms, sequence_no={event.sequence_no}")
    return event.sequence_no


async def record_failure(request_id: str, tenant: Optional[str], stage: str, event_type: str,
                         error_code: str, error_message: str, retryable: bool = False,
                         next_retry_at: Optional[datetime] = None,
                         metadata: Optional[Dict[str, Any]] = None, worker_id: Optional[str] = None) -> int:
    """
    Appends a FAILURE event. attempt is one past the highest attempt already recorded for
    the same (request, stage, event type), so the first failure is attempt 1.
    """
    event = await _append(
        request_id, stage, event_type, EventStatus.FAILURE,
        count_attempt=True,
        tenant=safe_tenant(tenant),
        retryable=retryable,
        next_retry_at=next_retry_at,
        error_code=error_code,
        error_message=error_message,
        completed_at=timezone.now(),
        metadata=metadata,
        worker_id=worker_id,
    )
    log.error(f"Stage failed: request_id={request_id}, stage={stage}, event_type={event_type}, error_code={error_code}, "
              f"retryable={retryable}, attempt={event.attempt}, sequence_no={event.sequence_no}")
    return event.sequence_no


async def record_retry(request_id: str, tenant: Optional[str], stage: str, event_type: str, attempt: int) -> int:
    """Appends a RETRY event for the given attempt number."""
    event = await _append(
        request_id, stage, event_type, EventStatus.RETRY,
        tenant=safe_tenant(tenant),
        attempt=attempt,
        retryable=True,
        started_at=timezone.now(),
    )
    log.info(f"Retry attempt: request_id={request_id}, stage={stage}, event_type={event_type}, "
             f"attempt={attempt}, sequence_no={event.sequence_no}")
    return event.sequence_no


async def append_if_latest(after: EventRecord, status: EventStatus, event_type: str, conn: Any, **fields) -> Optional[int]:
    """
    Appends an event directly after `after`, but only if nothing has been logged for the
    request since. Returns the new sequence number, or None when `after` is no longer the
    latest event.

    Runs on the caller's transaction. Two callers racing for the same slot collide on the
    (request_id, sequence_no) unique constraint; the IntegrityError is left to the caller,
    whose transaction is no longer usable at that point.
    """
    with durable("ledger conditional append", after.request_id):
        sequence_no = await _next_sequence_no(after.request_id, conn)
        if sequence_no != after.sequence_no + 1:
            return None
        fields.setdefault("tenant", after.tenant)
        await EventRecord.create(
            request_id=after.request_id,
            stage=after.stage,
            event_type=event_type,
            status=status,
            sequence_no=sequence_no,
            using_db=conn,
            **fields,
        )
    return sequence_no


async def timeline(request_id: str) -> List[EventRecord]:
    """All events of a request in sequence order."""
    with durable("ledger timeline", request_id):
        return await EventRecord.filter(request_id=request_id).order_by("sequence_no")


async def failed_retryable(tenant: Optional[str], since_minutes: int) -> List[EventRecord]:
    """
    Retry work-list: retryable FAILURE events of a tenant created within the last
    `since_minutes`, whose next retry time is unset or has passed. Oldest first.
    """
    return await _retry_worklist(since_minutes, tenant=safe_tenant(tenant))


async def failed_retryable_all_tenants(since_minutes: int) -> List[EventRecord]:
    """Same work-list as failed_retryable, across every tenant."""
    return await _retry_worklist(since_minutes)


async def _retry_worklist(since_minutes: int, **filters) -> List[EventRecord]:
    now = timezone.now()
    since = now - timedelta(minutes=since_minutes)
    with durable("ledger failed_retryable"):
        return await EventRecord.filter(
            Q(next_retry_at__isnull=True) | Q(next_retry_at__lte=now),
            **filters,
            status=EventStatus.FAILURE,
            retryable=True,
            created_at__gte=since,
        ).order_by("created_at")


async def annotate_worker(event_id: int, worker_id: str) -> None:
    """Records which worker handled an event. The only update an event ever receives."""
    with durable("ledger annotate_worker"):
        await EventRecord.filter(id=event_id).update(worker_id=worker_id)
