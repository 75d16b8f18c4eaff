import asyncio
import logging
from typing import Iterable, List, Optional

from tortoise import timezone
from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from pipeline_core.core.config import (
    RETRY_MAX_ATTEMPTS,
    RETRY_SCAN_INTERVAL,
    RETRY_SCAN_WINDOW_MINUTES,
    RETRY_TENANTS,
    STAGE_QUEUES,
)
from pipeline_core.core.db import init_db, close_db
from pipeline_core.core.logging import setup_logging
from pipeline_core.events.outbox_store import write_outbox
from pipeline_core.models.event_record import EventRecord, EventStatus
from pipeline_core.models.request_record import RequestStatus
from pipeline_core.schemas.message import PipelineMessage
from pipeline_core.services import request_lifecycle, sequence_ledger

log = logging.getLogger("retry_scanner")

RETRY_EXHAUSTED = "RETRY_EXHAUSTED"


async def redrive(failure: EventRecord, max_attempts: int = RETRY_MAX_ATTEMPTS) -> bool:
    """
    Re-drives one retryable failure by queueing its stage again.

    The RETRY event is appended directly after the failure, in the same transaction as the
    outbox write. Once appended, the failure is no longer the request's latest event, so a
    later scan (or a concurrent scanner, which loses on the sequence slot) skips it.
    """
    queue = STAGE_QUEUES.get(failure.stage)
    if queue is None:
        log.warning(f"No queue configured for stage, cannot retry: request_id={failure.request_id}, stage={failure.stage}")
        return False

    now = timezone.now()
    async with in_transaction() as conn:
        if failure.attempt >= max_attempts:
            seq = await sequence_ledger.append_if_latest(
                failure, EventStatus.FAILURE, RETRY_EXHAUSTED, conn,
                attempt=failure.attempt,
                retryable=False,
                error_code=failure.error_code,
                error_message=f"Retry attempts exhausted after {failure.attempt}",
                completed_at=now,
            )
            if seq is not None:
                await request_lifecycle.update_status_with_error(
                    failure.request_id, RequestStatus.FAILED.value, failure.stage,
                    failure.error_code, failure.error_message, conn=conn,
                )
                log.error(f"Retries exhausted: request_id={failure.request_id}, stage={failure.stage}, attempts={failure.attempt}")
            return False

        seq = await sequence_ledger.append_if_latest(
            failure, EventStatus.RETRY, failure.event_type, conn,
            attempt=failure.attempt,
            retryable=True,
            started_at=now,
        )
        if seq is None:
            return False

        message = PipelineMessage(
            request_id=failure.request_id,
            stage=failure.stage,
            event_type=EventStatus.RETRY.value,
            tenant=failure.tenant,
            source_service="retry-scanner",
            attempt_number=failure.attempt + 1,
            metadata={"retry_of_sequence_no": failure.sequence_no, "error_code": failure.error_code},
        )
        await write_outbox(queue, message, conn=conn)

    log.info(f"Failure re-driven: request_id={failure.request_id}, stage={failure.stage}, attempt={failure.attempt + 1}")
    return True


async def _work_list(tenants: List[str], window_minutes: int) -> List[EventRecord]:
    if not tenants:
        return await sequence_ledger.failed_retryable_all_tenants(window_minutes)
    failures = []
    for tenant in tenants:
        failures.extend(await sequence_ledger.failed_retryable(tenant, window_minutes))
    return failures


async def scan_once(tenants: Optional[Iterable[str]] = None, window_minutes: int = RETRY_SCAN_WINDOW_MINUTES,
                    max_attempts: int = RETRY_MAX_ATTEMPTS) -> int:
    """
    One pass over the retry work-list of the given tenants, or of every tenant when the list
    is empty. Defaults to RETRY_TENANTS. Returns how many failures were re-driven.
    """
    tenants = list(RETRY_TENANTS if tenants is None else tenants)
    redriven = 0
    for failure in await _work_list(tenants, window_minutes):
        try:
            if await redrive(failure, max_attempts):
                redriven += 1
        except IntegrityError:
            log.debug(f"Failure already re-driven by another scanner: request_id={failure.request_id}")
    return redriven


async def start_retry_scanner(tenants: Optional[Iterable[str]] = None):
    """Main loop for the retry scanner service."""
    setup_logging()
    await init_db()
    tenants = list(tenants or RETRY_TENANTS)
    log.info(f"--- Retry Scanner Started (tenants={tenants or 'all'}) ---")

    try:
        while True:
            try:
                await scan_once(tenants)
            except Exception as e:
                log.exception(f"Retry scanner encountered a critical error: {e}.")

            await asyncio.sleep(RETRY_SCAN_INTERVAL)
    finally:
        await close_db()


def main():
    try:
        asyncio.run(start_retry_scanner())
    except KeyboardInterrupt:
        log.info("Retry scanner stopped.")

if __name__ == "__main__":
    main()
