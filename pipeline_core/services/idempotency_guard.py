"""
Idempotency guard: at most one in-flight processing per idempotency key.

State machine per key:
    absent -> PROCESSING -> COMPLETED    (mark_completed, result kept for read-back)
                         -> absent       (mark_failed, a retry may acquire again)
                         -> absent       (expires_at passed, crashed holder)

The primary key on idempotency_locks makes the insert conditional. Rows stop counting at
expires_at whatever their status; purge_expired() removes them physically.

FAIL-OPEN: if the lock store itself is unavailable, try_acquire() returns True and the
request is processed. Pipeline availability wins over strict duplicate suppression, so
during a lock-store outage this guard alone does NOT give exactly-once processing;
downstream consumers must stay idempotent. Every fail-open decision is logged at ERROR
with the text "fail-open" so it can be alerted on.
"""
import logging
from datetime import timedelta
from typing import Optional

from tortoise import timezone
from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from pipeline_core.core.config import IDEMPOTENCY_TTL_SECONDS
from pipeline_core.core.exceptions import STORE_ERRORS
from pipeline_core.models.idempotency import IdempotencyLock, LockStatus

log = logging.getLogger("idempotency_guard")


async def try_acquire(key: str, owner: str, ttl_seconds: int = IDEMPOTENCY_TTL_SECONDS) -> bool:
    """
    Try to take the lock for `key`. True means this is a new request and the caller should
    process it; False means it is already in flight or completed.
    """
    now = timezone.now()
    try:
        async with in_transaction() as conn:
            # An expired lease counts as absent
            await IdempotencyLock.filter(key=key, expires_at__lte=now).using_db(conn).delete()
            await IdempotencyLock.create(
                key=key,
                owner=owner,
                status=LockStatus.PROCESSING,
                expires_at=now + timedelta(seconds=ttl_seconds),
                using_db=conn,
            )
        log.debug(f"Acquired idempotency lock: key={key}, owner={owner}")
        return True
    except IntegrityError:
        log.debug(f"Idempotency key already exists: key={key}")
        return False
    except STORE_ERRORS as e:
        log.error(f"Idempotency store unavailable, fail-open: key={key}, owner={owner}, error={e}")
        return True


async def mark_completed(key: str, result: Optional[str]) -> None:
    """Moves the lock to COMPLETED and keeps `result` for duplicate callers."""
    try:
        updated = await IdempotencyLock.filter(key=key, expires_at__gt=timezone.now()).update(
            status=LockStatus.COMPLETED,
            result=result,
            completed_at=timezone.now(),
        )
        if updated:
            log.debug(f"Marked idempotency key as completed: key={key}")
        else:
            log.warning(f"Idempotency key missing or expired when completing: key={key}")
    except STORE_ERRORS as e:
        log.error(f"Failed to mark idempotency key as completed: key={key}, error={e}")


async def mark_failed(key: str) -> None:
    """Removes the lock so a legitimate retry can acquire it again."""
    try:
        await IdempotencyLock.filter(key=key).delete()
        log.debug(f"Removed failed idempotency key (allowing retry): key={key}")
    except STORE_ERRORS as e:
        log.error(f"Failed to remove idempotency key: key={key}, error={e}")


async def get_result(key: str) -> Optional[str]:
    """Result stored by the winner, for a caller that lost the race. None if not (yet) completed."""
    try:
        lock = await IdempotencyLock.get_or_none(key=key, expires_at__gt=timezone.now())
    except STORE_ERRORS as e:
        log.error(f"Failed to get result for idempotency key: key={key}, error={e}")
        return None
    if lock is None or lock.status != LockStatus.COMPLETED:
        return None
    return lock.result


async def purge_expired() -> int:
    """Deletes expired locks. Returns how many rows were removed."""
    try:
        removed = await IdempotencyLock.filter(expires_at__lte=timezone.now()).delete()
    except STORE_ERRORS as e:
        log.error(f"Failed to purge expired idempotency keys: error={e}")
        return 0
    if removed:
        log.info(f"Purged {removed} expired idempotency keys")
    return removed


async def check_and_set(key: str) -> bool:
    """Alias of try_acquire for callers without an owner name."""
    return await try_acquire(key, "unknown")


async def release(key: str) -> None:
    """Alias of mark_failed."""
    await mark_failed(key)
