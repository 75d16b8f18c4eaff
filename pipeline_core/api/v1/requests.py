import logging
from fastapi import APIRouter, HTTPException, status

from pipeline_core.core.exceptions import NotFoundError
from pipeline_core.schemas.request import EventRecordResponse, RequestRecordResponse, TimelineResponse
from pipeline_core.schemas.response import SuccessResponse
from pipeline_core.services import request_lifecycle, sequence_ledger
from pipeline_core.utils import request_id as request_ids

router = APIRouter()
log = logging.getLogger("api.requests")


@router.get("/by-idempotency-key/{idempotency_key}", response_model=SuccessResponse)
async def get_request_by_idempotency_key(idempotency_key: str):
    """Most recent request submitted with the given idempotency key."""
    record = await request_lifecycle.find_by_idempotency_key(idempotency_key)
    if record is None:
        raise NotFoundError(f"No request for idempotency key {idempotency_key}")
    return SuccessResponse(data=RequestRecordResponse.model_validate(record).model_dump(mode="json"))


@router.get("/{request_id}", response_model=SuccessResponse)
async def get_request(request_id: str):
    """Current lifecycle state of one request."""
    if not request_ids.is_valid(request_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed request id.")

    record = await request_lifecycle.get(request_id)
    if record is None:
        raise NotFoundError(f"Request {request_id} not found", request_id=request_id)
    return SuccessResponse(data=RequestRecordResponse.model_validate(record).model_dump(mode="json"))


@router.get("/{request_id}/timeline", response_model=SuccessResponse)
async def get_request_timeline(request_id: str):
    """
    Full ledger history of a request in sequence order.
    An unknown request returns an empty timeline rather than 404: events may precede the record.
    """
    events = await sequence_ledger.timeline(request_id)
    log.debug(f"Timeline fetched: request_id={request_id}, events={len(events)}")
    data = TimelineResponse(
        request_id=request_id,
        events=[EventRecordResponse.model_validate(e) for e in events],
    ).model_dump(mode="json")
    return SuccessResponse(data=data)
