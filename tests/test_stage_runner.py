import logging

import pytest
from unittest.mock import patch, AsyncMock

from pipeline_core.core.exceptions import DurabilityError, PublishError, PipelineError, ErrorCode
from pipeline_core.models.event_record import EventStatus
from pipeline_core.models.idempotency import IdempotencyLock
from pipeline_core.models.outbox import OutboxEntry
from pipeline_core.models.request_record import RequestRecord, RequestStatus
from pipeline_core.schemas.message import PipelineMessage
from pipeline_core.services import request_lifecycle, sequence_ledger, stage_runner
from pipeline_core.services.stage_runner import StageOutcome
from pipeline_core.testing import testing_mocks


REQ = "REQ-20240101-00001-ABCDEF12"
NEXT_QUEUE = "pipeline-queue-request-enricher"


def _validated():
    return StageOutcome(
        status=RequestStatus.ENRICHING.value,
        next_stage="ENRICHMENT",
        next_queue=NEXT_QUEUE,
        message=PipelineMessage(request_id=REQ, stage="ENRICHMENT", tenant="ACME"),
        result="validated",
    )


async def _run(work, **kwargs):
    return await stage_runner.run_stage(
        REQ, "ACME", "VALIDATION", "VALIDATE_START", "VALIDATE_OK", "VALIDATE_FAIL", work, **kwargs
    )


@pytest.mark.asyncio
class TestRunStage:

    async def test_success_path(self, db):
        await request_lifecycle.create(RequestRecord(request_id=REQ, tenant="ACME"))

        result = await _run(AsyncMock(return_value=_validated()))

        assert result.duplicate is False
        assert (result.start_sequence_no, result.complete_sequence_no) == (1, 2)
        events = await sequence_ledger.timeline(REQ)
        assert [(e.event_type, e.status) for e in events] == [
            ("VALIDATE_START", EventStatus.STARTED),
            ("VALIDATE_OK", EventStatus.SUCCESS),
        ]

        record = await request_lifecycle.get(REQ)
        assert record.status == RequestStatus.ENRICHING.value
        assert record.next_stage == "ENRICHMENT"
        entry = await OutboxEntry.get(aggregate_id=REQ)
        assert entry.destination_queue == NEXT_QUEUE

    async def test_retryable_failure_is_recorded_and_reraised(self, db):
        await request_lifecycle.create(RequestRecord(request_id=REQ, tenant="ACME"))

        with pytest.raises(PublishError):
            await _run(AsyncMock(side_effect=PublishError("downstream timeout", REQ)))

        failure = (await sequence_ledger.timeline(REQ))[-1]
        assert failure.status == EventStatus.FAILURE
        assert failure.retryable is True
        assert failure.next_retry_at is not None
        assert failure.error_code == ErrorCode.SQS_ERROR

        record = await request_lifecycle.get(REQ)
        assert record.status == RequestStatus.ERROR.value
        assert record.retry_count == 1
        assert await OutboxEntry.all().count() == 0

    async def test_business_error_is_not_retryable(self, db):
        await request_lifecycle.create(RequestRecord(request_id=REQ, tenant="ACME"))

        with pytest.raises(ValueError):
            await _run(AsyncMock(side_effect=ValueError("missing member id")))

        failure = (await sequence_ledger.timeline(REQ))[-1]
        assert failure.retryable is False
        assert failure.error_code == ErrorCode.PROCESSING_FAILED
        assert failure.error_message == "missing member id"

    async def test_error_can_declare_retryable(self, db):
        err = PipelineError("rate limited", ErrorCode.DOWNSTREAM_ERROR, REQ)
        err.retryable = True

        with pytest.raises(PipelineError):
            await _run(AsyncMock(side_effect=err))
        assert (await sequence_ledger.timeline(REQ))[-1].retryable is True

    async def test_duplicate_delivery_is_skipped(self, db):
        await request_lifecycle.create(RequestRecord(request_id=REQ, tenant="ACME"))
        work = AsyncMock(return_value=_validated())

        await _run(work, idempotency_key="validate:" + REQ)
        second = await _run(work, idempotency_key="validate:" + REQ)

        assert second.duplicate is True
        assert second.result == "validated"
        work.assert_awaited_once()
        assert len(await sequence_ledger.timeline(REQ)) == 2

    async def test_failed_run_releases_idempotency_key(self, db):
        await request_lifecycle.create(RequestRecord(request_id=REQ, tenant="ACME"))

        with pytest.raises(PublishError):
            await _run(AsyncMock(side_effect=PublishError("down", REQ)), idempotency_key="k")
        result = await _run(AsyncMock(return_value=_validated()), idempotency_key="k")
        assert result.duplicate is False

    async def test_failure_bookkeeping_outage_still_releases_key(self, db, caplog):
        await request_lifecycle.create(RequestRecord(request_id=REQ, tenant="ACME"))

        with patch("pipeline_core.services.stage_runner.sequence_ledger.record_failure",
                   new=AsyncMock(side_effect=DurabilityError("ledger down", REQ))):
            with caplog.at_level(logging.ERROR, logger="stage_runner"):
                with pytest.raises(ValueError):
                    await _run(AsyncMock(side_effect=ValueError("missing member id")), idempotency_key="k")

        assert "Could not record stage failure" in caplog.text
        assert await IdempotencyLock.filter(key="k").exists() is False
        # A redelivery is processed, not skipped as a duplicate
        result = await _run(AsyncMock(return_value=_validated()), idempotency_key="k")
        assert result.duplicate is False

    async def test_pipeline_error_carries_failed_stage(self, db):
        with pytest.raises(PipelineError) as exc:
            await _run(AsyncMock(side_effect=PipelineError("bad bundle", ErrorCode.INVALID_REQUEST, REQ)))
        assert exc.value.context == {"stage": "VALIDATION"}

    async def test_state_write_failure_leaves_no_outbox_row(self, db):
        await request_lifecycle.create(RequestRecord(request_id=REQ, tenant="ACME"))

        with patch("pipeline_core.services.stage_runner.write_outbox", side_effect=DurabilityError("outbox down", REQ)):
            with pytest.raises(DurabilityError):
                await _run(AsyncMock(return_value=_validated()))

        assert await OutboxEntry.all().count() == 0
        assert (await request_lifecycle.get(REQ)).status == RequestStatus.RECEIVED.value
        # No SUCCESS was logged for a change that was rolled back
        assert [e.status for e in await sequence_ledger.timeline(REQ)] == [EventStatus.STARTED]


@pytest.mark.asyncio
class TestDispatchAsync:

    async def test_dispatch_once(self, db):
        await request_lifecycle.create(RequestRecord(request_id=REQ, tenant="ACME"))
        message = PipelineMessage(request_id=REQ, stage="PARSING")

        assert await stage_runner.dispatch_async(REQ, "pipeline-queue-request-parser", message) is True
        assert await stage_runner.dispatch_async(REQ, "pipeline-queue-request-parser", message) is False
        assert await OutboxEntry.all().count() == 1

    async def test_sync_path_wins(self, db):
        await request_lifecycle.create(RequestRecord(request_id=REQ, tenant="ACME"))
        await request_lifecycle.mark_sync_processed(REQ)

        message = PipelineMessage(request_id=REQ, stage="PARSING")
        assert await stage_runner.dispatch_async(REQ, "pipeline-queue-request-parser", message) is False
        assert await OutboxEntry.all().count() == 0

    async def test_claim_and_outbox_share_the_transaction(self):
        """Both writes go through the same connection, no database needed"""
        message = PipelineMessage(request_id=REQ, stage="PARSING")
        with patch("pipeline_core.services.stage_runner.in_transaction", new=testing_mocks.in_transaction), \
             patch("pipeline_core.services.stage_runner.request_lifecycle.try_mark_async_queued",
                   new=AsyncMock(return_value=True)) as claim, \
             patch("pipeline_core.services.stage_runner.write_outbox", new=AsyncMock()) as write:
            assert await stage_runner.dispatch_async(REQ, "pipeline-queue-request-parser", message) is True

        claim.assert_awaited_once_with(REQ, conn=testing_mocks.MOCK_CONN)
        write.assert_awaited_once_with("pipeline-queue-request-parser", message, conn=testing_mocks.MOCK_CONN)
