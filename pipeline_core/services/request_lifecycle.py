"""
Request lifecycle record: the authoritative state of one pipeline request.

Every mutation accepts an optional `conn` so a stage can update the record in the same
transaction as its outbox write. Updates that match no row are logged and ignored (callers
are at-least-once and may replay earlier steps); store failures raise DurabilityError.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Any, Optional

from tortoise import timezone
from tortoise.expressions import F

from pipeline_core.core.exceptions import durable
from pipeline_core.models.request_record import RequestRecord, RequestStatus

log = logging.getLogger("request_lifecycle")


async def create(record: RequestRecord, conn: Any = None) -> RequestRecord:
    """
    Inserts the record unless one already exists for its request_id (ON CONFLICT DO NOTHING).
    Returns the stored row, which is the earlier one for a duplicate create.
    """
    with durable("lifecycle create", record.request_id):
        existed = await RequestRecord.filter(request_id=record.request_id).using_db(conn).exists()
        await RequestRecord.bulk_create([record], ignore_conflicts=True, using_db=conn)
        stored = await RequestRecord.get(request_id=record.request_id, using_db=conn)

    if existed:
        log.debug(f"Request record already exists: request_id={record.request_id}")
    else:
        log.info(f"Request record created: request_id={record.request_id}, status={record.status}")
    return stored


async def _update(operation: str, request_id: str, conn: Any = None, **values) -> bool:
    with durable(f"lifecycle {operation}", request_id):
        updated = await RequestRecord.filter(request_id=request_id).using_db(conn).update(
            updated_at=timezone.now(), **values
        )
    if not updated:
        log.warning(f"Request not found for {operation}: request_id={request_id}")
    return bool(updated)


async def update_status(request_id: str, status: str, last_stage: Optional[str], next_stage: Optional[str] = None,
                        conn: Any = None) -> bool:
    updated = await _update("update_status", request_id, conn, status=status, last_stage=last_stage, next_stage=next_stage)
    if updated:
        log.info(f"Request status updated: request_id={request_id}, status={status}, stage={last_stage}")
    return updated


async def update_status_with_error(request_id: str, status: str, last_stage: Optional[str],
                                   error_code: Optional[str], error_msg: Optional[str], conn: Any = None) -> bool:
    updated = await _update("update_status_with_error", request_id, conn, status=status, last_stage=last_stage,
                            last_error_code=error_code, last_error_msg=error_msg)
    if updated:
        log.info(f"Request status updated with error: request_id={request_id}, status={status}, error_code={error_code}")
    return updated


async def record_error(request_id: str, error_code: str, error_msg: str, stage: Optional[str] = None,
                       conn: Any = None) -> bool:
    """Sets ERROR with the error details and bumps retry_count. Also moves last_stage when `stage` is given."""
    values = {
        "status": RequestStatus.ERROR.value,
        "last_error_code": error_code,
        "last_error_msg": error_msg,
    }
    if stage is not None:
        values["last_stage"] = stage

    with durable("lifecycle record_error", request_id):
        updated = await RequestRecord.filter(request_id=request_id).using_db(conn).update(
            retry_count=F("retry_count") + 1, updated_at=timezone.now(), **values
        )
    if not updated:
        log.warning(f"Request not found for record_error: request_id={request_id}")
        return False
    log.error(f"Request error recorded: request_id={request_id}, error_code={error_code}, stage={stage}")
    return True


async def mark_completed(request_id: str, final_ref: Optional[str], conn: Any = None) -> bool:
    now = timezone.now()
    updated = await _update("mark_completed", request_id, conn, status=RequestStatus.COMPLETED.value,
                            final_ref=final_ref, completed_at=now)
    if updated:
        log.info(f"Request marked completed: request_id={request_id}")
    return updated


async def update_final_status(request_id: str, status: str, last_stage: Optional[str], final_ref: Optional[str],
                              conn: Any = None) -> bool:
    return await _update("update_final_status", request_id, conn, status=status, last_stage=last_stage,
                         final_ref=final_ref, completed_at=timezone.now())


async def mark_callback_sent(request_id: str, conn: Any = None) -> bool:
    updated = await _update("mark_callback_sent", request_id, conn, callback_sent_at=timezone.now())
    if updated:
        log.info(f"Callback marked as sent: request_id={request_id}")
    return updated


async def update_enriched_location(request_id: str, enriched_ref: str, conn: Any = None) -> bool:
    return await _update("update_enriched_location", request_id, conn, enriched_ref=enriched_ref)


async def update_external_reference(request_id: str, external_reference_id: str, conn: Any = None) -> bool:
    updated = await _update("update_external_reference", request_id, conn, external_reference_id=external_reference_id)
    if updated:
        log.info(f"External reference updated: request_id={request_id}, external_ref={external_reference_id}")
    return updated


async def update_fhir_metadata(request_id: str, patient_id: Optional[str], provider_id: Optional[str],
                               conn: Any = None) -> bool:
    """Stores the patient/provider identifiers extracted from the bundle (used by duplicate lookups)."""
    return await _update("update_fhir_metadata", request_id, conn, patient_id=patient_id, provider_id=provider_id)


async def mark_sync_processed(request_id: str, conn: Any = None) -> bool:
    """Unconditional: the synchronous path always records that it handled the request."""
    return await _update("mark_sync_processed", request_id, conn, sync_processed=True, sync_processed_at=timezone.now())


async def try_mark_async_queued(request_id: str, conn: Any = None) -> bool:
    """
    Claims the request for asynchronous dispatch.

    One conditional UPDATE: it matches only while sync_processed and async_queued are both
    still false, and the store evaluates that with the write. True means the caller owns the
    async dispatch; False means the sync path got there first or it was already queued, and
    the caller must not enqueue.
    """
    now = timezone.now()
    with durable("lifecycle try_mark_async_queued", request_id):
        updated = await RequestRecord.filter(
            request_id=request_id, sync_processed=False, async_queued=False
        ).using_db(conn).update(async_queued=True, async_queued_at=now, updated_at=now)

    if updated:
        log.debug(f"Marked for async queueing: request_id={request_id}")
        return True
    log.debug(f"Async queueing skipped (already processed or queued): request_id={request_id}")
    return False


# --- Read-only projections ---

async def get(request_id: str) -> Optional[RequestRecord]:
    with durable("lifecycle get", request_id):
        return await RequestRecord.get_or_none(request_id=request_id)


async def find_by_external_reference(external_reference_id: str) -> Optional[RequestRecord]:
    with durable("lifecycle find_by_external_reference"):
        return await RequestRecord.filter(external_reference_id=external_reference_id).order_by("-created_at").first()


async def find_by_idempotency_key(idempotency_key: str) -> Optional[RequestRecord]:
    with durable("lifecycle find_by_idempotency_key"):
        return await RequestRecord.filter(idempotency_key=idempotency_key).order_by("-created_at").first()


async def find_by_patient_and_provider(patient_id: str, provider_id: str, date_from: Optional[date] = None,
                                       date_to: Optional[date] = None) -> Optional[RequestRecord]:
    """Most recent request for the patient/provider pair, optionally bounded by received date (inclusive)."""
    query = RequestRecord.filter(patient_id=patient_id, provider_id=provider_id)
    if date_from is not None:
        query = query.filter(received_at__gte=datetime.combine(date_from, time.min, tzinfo=dt_timezone.utc))
    if date_to is not None:
        query = query.filter(received_at__lt=datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=dt_timezone.utc))

    with durable("lifecycle find_by_patient_and_provider"):
        return await query.order_by("-created_at").first()
