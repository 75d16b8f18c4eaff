"""
Outbox store primitives.

write_outbox() is the only way an outbox row is created, and it must run on the same
transaction (conn) as the state change it announces. The relay drives the rest:
fetch_batch -> publish -> mark_completed | increment_retry, plus the periodic sweeps that
requeue FAILED rows, dead-letter rows past the retry ceiling, and free claims left behind
by a crashed relay.
"""
import logging
from datetime import timedelta
from typing import Any, List, Optional
from uuid import UUID

from tortoise import timezone
from tortoise.expressions import F
from tortoise.transactions import in_transaction

from pipeline_core.core.exceptions import durable
from pipeline_core.models.outbox import OutboxEntry, OutboxStatus
from pipeline_core.schemas.message import PipelineMessage

log = logging.getLogger("outbox_store")

AGGREGATE_TYPE = "PipelineMessage"


async def write_outbox(destination_queue: str, message: PipelineMessage, conn: Any = None) -> OutboxEntry:
    """
    Creates a PENDING outbox entry using the provided database connection (transaction).

    CRITICAL: Passing 'conn' ensures the entry is created atomically with the business data.
    """
    with durable("outbox write", message.request_id):
        entry = await OutboxEntry.create(
            aggregate_type=AGGREGATE_TYPE,
            aggregate_id=message.request_id,
            event_type=message.stage or message.event_type or "UNKNOWN",
            payload=message.model_dump(mode="json"),
            destination_queue=destination_queue,
            status=OutboxStatus.PENDING,
            retry_count=0,
            using_db=conn,
        )
    log.info(f"Outbox entry created: id={entry.id}, destination_queue={destination_queue}, request_id={message.request_id}")
    return entry


async def fetch_batch(limit: int) -> List[OutboxEntry]:
    """
    Claims up to `limit` PENDING entries, oldest first.

    Rows locked by another relay are skipped (FOR UPDATE SKIP LOCKED), and the selected rows
    are moved to PROCESSING before the transaction commits, so no other relay can fetch them
    once the lock is released either.
    """
    with durable("outbox fetch_batch"):
        async with in_transaction() as conn:
            entries = await (
                OutboxEntry.filter(status=OutboxStatus.PENDING)
                .order_by("created_at")
                .limit(limit)
                .select_for_update(skip_locked=True)
                .using_db(conn)
            )
            if not entries:
                return []
            claimed_at = timezone.now()
            await OutboxEntry.filter(id__in=[e.id for e in entries]).using_db(conn).update(
                status=OutboxStatus.PROCESSING,
                locked_at=claimed_at,
            )
    for entry in entries:
        entry.status = OutboxStatus.PROCESSING
        entry.locked_at = claimed_at
    return entries


async def mark_completed(outbox_id: UUID) -> bool:
    """Marks an entry COMPLETED after the publish was acknowledged. Missing or already-completed ids only warn."""
    with durable("outbox mark_completed"):
        updated = await OutboxEntry.filter(
            id=outbox_id,
            status__in=[OutboxStatus.PENDING, OutboxStatus.PROCESSING],
        ).update(status=OutboxStatus.COMPLETED, processed_at=timezone.now(), locked_at=None)

    if updated:
        log.info(f"Outbox entry marked as completed: id={outbox_id}")
        return True
    log.warning(f"Outbox entry not found (or already completed) for marking completed: id={outbox_id}")
    return False


async def increment_retry(outbox_id: UUID, error: str) -> None:
    """Publish failed: FAILED, retry_count + 1, last_error recorded."""
    with durable("outbox increment_retry"):
        updated = await OutboxEntry.filter(
            id=outbox_id,
            status__in=[OutboxStatus.PENDING, OutboxStatus.PROCESSING],
        ).update(
            status=OutboxStatus.FAILED,
            retry_count=F("retry_count") + 1,
            last_error=error,
            locked_at=None,
        )
    if updated:
        log.warning(f"Outbox entry retry incremented: id={outbox_id}, error={error}")
    else:
        log.warning(f"Outbox entry not in a retryable state: id={outbox_id}")


async def promote_dead_letters(max_retries: int) -> int:
    """FAILED entries that reached the retry ceiling go to DEAD_LETTER for operator action."""
    with durable("outbox promote_dead_letters"):
        promoted = await OutboxEntry.filter(
            status=OutboxStatus.FAILED,
            retry_count__gte=max_retries,
        ).update(status=OutboxStatus.DEAD_LETTER)
    if promoted:
        log.error(f"Outbox entries moved to DEAD_LETTER: count={promoted}, max_retries={max_retries}")
    return promoted


async def requeue_failed(max_retries: int) -> int:
    """FAILED entries still under the retry ceiling go back to PENDING for the next sweep."""
    with durable("outbox requeue_failed"):
        requeued = await OutboxEntry.filter(
            status=OutboxStatus.FAILED,
            retry_count__lt=max_retries,
        ).update(status=OutboxStatus.PENDING)
    if requeued:
        log.info(f"Outbox entries requeued: count={requeued}")
    return requeued


async def release_stale_claims(timeout_seconds: int) -> int:
    """PROCESSING claims older than the timeout belong to a dead relay; put them back to PENDING."""
    cutoff = timezone.now() - timedelta(seconds=timeout_seconds)
    with durable("outbox release_stale_claims"):
        released = await OutboxEntry.filter(
            status=OutboxStatus.PROCESSING,
            locked_at__lte=cutoff,
        ).update(status=OutboxStatus.PENDING, locked_at=None)
    if released:
        log.warning(f"Released stale outbox claims: count={released}")
    return released


async def get_entry(outbox_id: UUID) -> Optional[OutboxEntry]:
    with durable("outbox get_entry"):
        return await OutboxEntry.get_or_none(id=outbox_id)


async def pending_count() -> int:
    """Number of PENDING entries (monitoring)."""
    with durable("outbox pending_count"):
        return await OutboxEntry.filter(status=OutboxStatus.PENDING).count()


async def stuck_count(max_retries: int) -> int:
    """Number of FAILED entries at or past the retry threshold (alerting)."""
    with durable("outbox stuck_count"):
        return await OutboxEntry.filter(status=OutboxStatus.FAILED, retry_count__gte=max_retries).count()


async def dead_letter_count() -> int:
    with durable("outbox dead_letter_count"):
        return await OutboxEntry.filter(status=OutboxStatus.DEAD_LETTER).count()
