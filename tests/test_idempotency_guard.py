import asyncio
import logging
from datetime import timedelta

import pytest
from tortoise import timezone
from tortoise.exceptions import DBConnectionError, OperationalError
from unittest.mock import patch

from pipeline_core.models.idempotency import IdempotencyLock, LockStatus
from pipeline_core.services import idempotency_guard


@pytest.mark.asyncio
class TestIdempotencyGuard:

    async def test_first_acquire_wins_second_loses(self, db):
        assert await idempotency_guard.try_acquire("k1", "ingress-a") is True
        assert await idempotency_guard.try_acquire("k1", "ingress-b") is False

        lock = await IdempotencyLock.get(key="k1")
        assert lock.owner == "ingress-a"
        assert lock.status == LockStatus.PROCESSING

    async def test_concurrent_acquire_has_one_winner(self, db):
        results = await asyncio.gather(*[idempotency_guard.try_acquire("k1", f"worker-{i}") for i in range(5)])
        assert sorted(results) == [False, False, False, False, True]

    async def test_completed_result_is_readable(self, db):
        await idempotency_guard.try_acquire("k1", "ingress-a")
        assert await idempotency_guard.get_result("k1") is None

        await idempotency_guard.mark_completed("k1", '{"request_id": "REQ-1"}')
        assert await idempotency_guard.get_result("k1") == '{"request_id": "REQ-1"}'
        assert await idempotency_guard.try_acquire("k1", "ingress-b") is False

    async def test_mark_failed_allows_retry(self, db):
        await idempotency_guard.try_acquire("k1", "ingress-a")
        await idempotency_guard.mark_failed("k1")
        assert await idempotency_guard.try_acquire("k1", "ingress-b") is True

    async def test_expired_lock_counts_as_absent(self, db):
        await IdempotencyLock.create(key="k1", owner="crashed", status=LockStatus.PROCESSING,
                                     expires_at=timezone.now() - timedelta(seconds=1))

        assert await idempotency_guard.get_result("k1") is None
        assert await idempotency_guard.try_acquire("k1", "ingress-b") is True
        assert (await IdempotencyLock.get(key="k1")).owner == "ingress-b"

    async def test_mark_completed_on_missing_key_only_warns(self, db, caplog):
        with caplog.at_level(logging.WARNING, logger="idempotency_guard"):
            await idempotency_guard.mark_completed("missing", "x")
        assert "missing or expired" in caplog.text

    async def test_purge_expired(self, db):
        await IdempotencyLock.create(key="old", owner="a", expires_at=timezone.now() - timedelta(minutes=5))
        await idempotency_guard.try_acquire("fresh", "b")

        assert await idempotency_guard.purge_expired() == 1
        assert await IdempotencyLock.filter(key="fresh").exists()

    async def test_check_and_set_and_release(self, db):
        assert await idempotency_guard.check_and_set("k2") is True
        assert await idempotency_guard.check_and_set("k2") is False
        await idempotency_guard.release("k2")
        assert await idempotency_guard.check_and_set("k2") is True

    async def test_store_outage_fails_open(self, caplog):
        """No database at all: the guard lets the request through and says so at ERROR"""
        with patch("pipeline_core.services.idempotency_guard.in_transaction", side_effect=DBConnectionError("down")):
            with caplog.at_level(logging.ERROR, logger="idempotency_guard"):
                assert await idempotency_guard.try_acquire("k1", "ingress-a") is True
        assert "fail-open" in caplog.text

    async def test_completion_errors_are_swallowed(self, caplog):
        with patch("pipeline_core.services.idempotency_guard.IdempotencyLock.filter", side_effect=OperationalError("down")):
            with caplog.at_level(logging.ERROR, logger="idempotency_guard"):
                await idempotency_guard.mark_completed("k1", "r")
                await idempotency_guard.mark_failed("k1")
        assert "Failed to mark idempotency key as completed" in caplog.text
        assert "Failed to remove idempotency key" in caplog.text
