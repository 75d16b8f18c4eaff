import asyncio
import logging
from typing import Optional

from pipeline_core.core.config import (
    BATCH_SIZE,
    OUTBOX_CLAIM_TIMEOUT_SECONDS,
    OUTBOX_MAX_RETRIES,
    POLLING_INTERVAL,
)
from pipeline_core.core.db import init_db, close_db
from pipeline_core.core.logging import setup_logging
from pipeline_core.events import outbox_store
from pipeline_core.events.publisher import QueuePublisher, SqsPublisher
from pipeline_core.models.outbox import OutboxEntry

log = logging.getLogger("outbox_relay")


async def publish_entry(publisher: QueuePublisher, entry: OutboxEntry) -> bool:
    """
    Publishes one claimed entry and records the outcome.

    Publish and mark are two steps: a crash in between re-delivers the message on a later
    sweep, so every destination queue must have idempotent consumers.
    """
    attributes = {"outbox_id": str(entry.id)}
    # Queue services reject empty attribute values
    if entry.aggregate_id:
        attributes["request_id"] = entry.aggregate_id
    try:
        await publisher.publish(entry.destination_queue, entry.payload, attributes)
    except Exception as e:
        log.warning(f"Publish failed: outbox_id={entry.id}, queue={entry.destination_queue}, error={e}")
        await outbox_store.increment_retry(entry.id, str(e))
        return False

    await outbox_store.mark_completed(entry.id)
    return True


async def sweep(max_retries: int = OUTBOX_MAX_RETRIES, claim_timeout: int = OUTBOX_CLAIM_TIMEOUT_SECONDS) -> None:
    """Housekeeping run before each relay pass: dead-letter, requeue, free abandoned claims."""
    await outbox_store.promote_dead_letters(max_retries)
    await outbox_store.requeue_failed(max_retries)
    await outbox_store.release_stale_claims(claim_timeout)


async def relay_once(publisher: QueuePublisher, batch_size: int = BATCH_SIZE,
                     max_retries: int = OUTBOX_MAX_RETRIES) -> int:
    """One relay pass. Returns the number of entries published."""
    await sweep(max_retries)

    entries = await outbox_store.fetch_batch(batch_size)
    if not entries:
        return 0

    published = 0
    for entry in entries:
        if await publish_entry(publisher, entry):
            published += 1

    log.info(f"Relay pass finished: claimed={len(entries)}, published={published}")
    return published


async def start_outbox_relay(publisher: Optional[QueuePublisher] = None):
    """Main loop for the relay service."""
    setup_logging()
    await init_db()
    publisher = publisher or SqsPublisher()
    log.info("--- Outbox Relay Service Started ---")

    try:
        while True:
            try:
                await relay_once(publisher)
            except Exception as e:
                # The durable store is the source of truth; unfinished rows are picked up next pass
                log.exception(f"Relay encountered a critical error: {e}.")

            await asyncio.sleep(POLLING_INTERVAL)
    finally:
        await close_db()


def main():
    try:
        asyncio.run(start_outbox_relay())
    except KeyboardInterrupt:
        log.info("Relay service stopped.")

if __name__ == "__main__":
    main()
