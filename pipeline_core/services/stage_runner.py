"""
Stage-worker control flow.

    ledger STARTED -> business work -> one transaction { lifecycle update + outbox write }
                   -> ledger SUCCESS

On a business failure the ledger gets a FAILURE event (retryable or not) and the lifecycle
record its error fields, then the exception is re-raised to the worker. The outbox row is
only ever written together with the lifecycle update, so the next stage is notified exactly
when the state change is committed.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from tortoise import timezone
from tortoise.transactions import in_transaction

from pipeline_core.core.config import RETRY_BACKOFF_SECONDS
from pipeline_core.core.exceptions import DurabilityError, ErrorCode, PipelineError, PublishError
from pipeline_core.events.outbox_store import write_outbox
from pipeline_core.schemas.message import PipelineMessage
from pipeline_core.services import idempotency_guard, request_lifecycle, sequence_ledger

log = logging.getLogger("stage_runner")


@dataclass
class StageOutcome:
    """What the business step hands back: where the request goes next."""
    status: str
    next_stage: Optional[str] = None
    next_queue: Optional[str] = None
    message: Optional[PipelineMessage] = None
    result: Optional[str] = None # kept by the idempotency guard for duplicate callers
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StageResult:
    duplicate: bool
    outcome: Optional[StageOutcome] = None
    result: Optional[str] = None
    start_sequence_no: Optional[int] = None
    complete_sequence_no: Optional[int] = None


def is_retryable(exc: Exception) -> bool:
    """Infrastructure hiccups are worth another attempt, bad input is not."""
    if getattr(exc, "retryable", None) is not None:
        return bool(exc.retryable)
    return isinstance(exc, (PublishError, DurabilityError, TimeoutError, ConnectionError))


async def run_stage(
    request_id: str,
    tenant: Optional[str],
    stage: str,
    start_event: str,
    ok_event: str,
    fail_event: str,
    work: Callable[[], Awaitable[StageOutcome]],
    idempotency_key: Optional[str] = None,
    owner: str = "stage-worker",
    worker_id: Optional[str] = None,
    retryable: Callable[[Exception], bool] = is_retryable,
) -> StageResult:
    """Runs one pipeline stage for a request with ledger, lifecycle and outbox bookkeeping."""
    if idempotency_key and not await idempotency_guard.try_acquire(idempotency_key, owner):
        log.info(f"Duplicate delivery skipped: request_id={request_id}, stage={stage}, key={idempotency_key}")
        return StageResult(duplicate=True, result=await idempotency_guard.get_result(idempotency_key))

    try:
        start_seq = await sequence_ledger.record_start(request_id, tenant, stage, start_event, worker_id=worker_id)
    except DurabilityError:
        if idempotency_key:
            await idempotency_guard.mark_failed(idempotency_key)
        raise

    started = time.perf_counter()
    try:
        outcome = await work()
    except Exception as e:
        if isinstance(e, PipelineError):
            e.with_context("stage", stage)
        try:
            await _record_stage_failure(request_id, tenant, stage, fail_event, e, retryable(e), worker_id)
        except Exception:
            # The worker still sees the business error, not the bookkeeping one
            log.exception(f"Could not record stage failure: request_id={request_id}, stage={stage}")
        finally:
            if idempotency_key:
                await idempotency_guard.mark_failed(idempotency_key)
        raise

    duration_ms = int((time.perf_counter() - started) * 1000)

    try:
        async with in_transaction() as conn:
            await request_lifecycle.update_status(request_id, outcome.status, stage, outcome.next_stage, conn=conn)
            if outcome.next_queue and outcome.message is not None:
                await write_outbox(outcome.next_queue, outcome.message, conn=conn)
    except DurabilityError:
        # Nothing was committed: the delivery must be retried as a whole
        if idempotency_key:
            await idempotency_guard.mark_failed(idempotency_key)
        raise

    complete_seq = await sequence_ledger.record_complete(
        request_id, tenant, stage, ok_event, duration_ms, metadata=outcome.metadata or None, worker_id=worker_id
    )
    if idempotency_key:
        await idempotency_guard.mark_completed(idempotency_key, outcome.result)

    return StageResult(
        duplicate=False,
        outcome=outcome,
        result=outcome.result,
        start_sequence_no=start_seq,
        complete_sequence_no=complete_seq,
    )


async def _record_stage_failure(request_id: str, tenant: Optional[str], stage: str, fail_event: str,
                                exc: Exception, retryable: bool, worker_id: Optional[str]) -> None:
    error_code = getattr(exc, "error_code", None) or ErrorCode.PROCESSING_FAILED
    error_message = str(exc) or exc.__class__.__name__
    next_retry_at = timezone.now() + timedelta(seconds=RETRY_BACKOFF_SECONDS) if retryable else None

    await sequence_ledger.record_failure(
        request_id, tenant, stage, fail_event, error_code, error_message,
        retryable=retryable, next_retry_at=next_retry_at, worker_id=worker_id,
    )
    await request_lifecycle.record_error(request_id, error_code, error_message, stage=stage)


async def dispatch_async(request_id: str, queue_name: str, message: PipelineMessage) -> bool:
    """
    Hands a request to the asynchronous path, unless the synchronous path already handled it.

    The async claim and the outbox write share one transaction: either the request is both
    marked and queued, or neither.
    """
    async with in_transaction() as conn:
        if not await request_lifecycle.try_mark_async_queued(request_id, conn=conn):
            log.info(f"Async dispatch skipped, request already handled: request_id={request_id}")
            return False
        await write_outbox(queue_name, message, conn=conn)

    log.info(f"Request queued for async processing: request_id={request_id}, queue={queue_name}")
    return True
