from fastapi import APIRouter, Query

from pipeline_core.core.config import OUTBOX_MAX_RETRIES
from pipeline_core.events import outbox_store
from pipeline_core.schemas.request import OutboxStatsResponse
from pipeline_core.schemas.response import SuccessResponse

router = APIRouter()


@router.get("/stats", response_model=SuccessResponse)
async def get_outbox_stats(max_retries: int = Query(OUTBOX_MAX_RETRIES, ge=1)):
    """Backlog counters for monitoring and alerting."""
    stats = OutboxStatsResponse(
        pending=await outbox_store.pending_count(),
        stuck=await outbox_store.stuck_count(max_retries),
        dead_letter=await outbox_store.dead_letter_count(),
        max_retries=max_retries,
    )
    return SuccessResponse(data=stats.model_dump())
