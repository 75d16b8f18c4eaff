import asyncio
from datetime import date, datetime, timezone

import pytest

from pipeline_core.models.request_record import RequestRecord, RequestStatus
from pipeline_core.services import request_lifecycle


REQ = "REQ-20240101-00001-ABCDEF12"


async def _create(**kwargs):
    values = {"request_id": REQ, "tenant": "ACME", "idempotency_key": "idem-1"}
    values.update(kwargs)
    return await request_lifecycle.create(RequestRecord(**values))


@pytest.mark.asyncio
class TestRequestLifecycle:

    async def test_create_is_ignored_for_existing_request(self, db):
        await _create(source_system="portal")
        stored = await _create(source_system="batch")

        assert stored.source_system == "portal"
        assert await RequestRecord.all().count() == 1

    async def test_status_updates(self, db):
        await _create()
        assert await request_lifecycle.update_status(REQ, RequestStatus.PARSING.value, "PARSING", "VALIDATION") is True

        record = await request_lifecycle.get(REQ)
        assert record.status == "PARSING"
        assert record.last_stage == "PARSING"
        assert record.next_stage == "VALIDATION"

    async def test_update_missing_request_is_a_noop(self, db):
        assert await request_lifecycle.update_status("REQ-NOPE", "PARSING", "PARSING") is False
        assert await request_lifecycle.get("REQ-NOPE") is None

    async def test_record_error_bumps_retry_count(self, db):
        await _create()
        await request_lifecycle.record_error(REQ, "CORE-5002", "enrichment timeout", stage="ENRICHMENT")
        await request_lifecycle.record_error(REQ, "CORE-5002", "enrichment timeout")

        record = await request_lifecycle.get(REQ)
        assert record.status == RequestStatus.ERROR.value
        assert record.retry_count == 2
        assert record.last_error_code == "CORE-5002"
        assert record.last_stage == "ENRICHMENT"

    async def test_completion_and_callback(self, db):
        await _create()
        await request_lifecycle.mark_completed(REQ, "bucket/final.json")
        await request_lifecycle.mark_callback_sent(REQ)

        record = await request_lifecycle.get(REQ)
        assert record.status == RequestStatus.COMPLETED.value
        assert record.final_ref == "bucket/final.json"
        assert record.completed_at is not None
        assert record.callback_sent_at is not None

    async def test_final_status_with_error_details(self, db):
        await _create()
        await request_lifecycle.update_status_with_error(REQ, RequestStatus.FAILED.value, "SUBMISSION", "CORE-5002", "payer rejected")
        await request_lifecycle.update_final_status(REQ, RequestStatus.FAILED.value, "RESPONSE", "bucket/response.json")

        record = await request_lifecycle.get(REQ)
        assert record.status == RequestStatus.FAILED.value
        assert record.last_stage == "RESPONSE"
        assert record.last_error_msg == "payer rejected"
        assert record.final_ref == "bucket/response.json"
        assert record.completed_at is not None

    async def test_async_queued_once(self, db):
        await _create()
        assert await request_lifecycle.try_mark_async_queued(REQ) is True
        assert await request_lifecycle.try_mark_async_queued(REQ) is False

        # The sync path still records that it ran
        assert await request_lifecycle.mark_sync_processed(REQ) is True
        record = await request_lifecycle.get(REQ)
        assert record.sync_processed and record.async_queued

    async def test_async_not_queued_after_sync(self, db):
        await _create()
        await request_lifecycle.mark_sync_processed(REQ)
        assert await request_lifecycle.try_mark_async_queued(REQ) is False
        assert (await request_lifecycle.get(REQ)).async_queued is False

    async def test_sync_and_async_race_has_at_most_one_async_claim(self, db):
        await _create()
        sync_done, *claims = await asyncio.gather(
            request_lifecycle.mark_sync_processed(REQ),
            *[request_lifecycle.try_mark_async_queued(REQ) for _ in range(3)],
        )

        assert sync_done is True
        assert claims.count(True) <= 1
        record = await request_lifecycle.get(REQ)
        assert record.sync_processed is True
        assert record.async_queued is any(claims)

    async def test_concurrent_async_claims_have_one_winner(self, db):
        await _create()
        claims = await asyncio.gather(*[request_lifecycle.try_mark_async_queued(REQ) for _ in range(5)])
        assert sorted(claims) == [False, False, False, False, True]

    async def test_lookups(self, db):
        await _create(received_at=datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc))
        await request_lifecycle.update_external_reference(REQ, "EXT-9")
        await request_lifecycle.update_fhir_metadata(REQ, "pat-1", "prov-1")
        await request_lifecycle.update_enriched_location(REQ, "bucket/enriched.json")

        assert (await request_lifecycle.find_by_external_reference("EXT-9")).request_id == REQ
        assert (await request_lifecycle.find_by_idempotency_key("idem-1")).request_id == REQ
        assert (await request_lifecycle.get(REQ)).enriched_ref == "bucket/enriched.json"

        found = await request_lifecycle.find_by_patient_and_provider("pat-1", "prov-1", date(2024, 1, 1), date(2024, 1, 10))
        assert found.request_id == REQ
        assert await request_lifecycle.find_by_patient_and_provider("pat-1", "prov-1", date(2024, 1, 11)) is None
