"""
FastAPI route: event submission and delivery status.

Provides endpoints to:
    POST /api/v1/events                     — submit one event
    GET  /api/v1/delivery/stats             — channel / pending / outcome counters
    GET  /api/v1/delivery/{submission_id}   — status of one submission
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from hec_ack.api.schemas import (
    DeliveryResultResponse,
    EventAcceptedResponse,
    EventSubmitRequest,
)
from hec_ack.core.errors import ClientClosedError
from hec_ack.delivery.client import AckingClient

router = APIRouter(prefix="/api/v1", tags=["delivery"])


def get_client(request: Request) -> AckingClient:
    """Shared client created in the application lifespan."""
    client = getattr(request.app.state, "client", None)
    if client is None:
        raise ClientClosedError("Delivery client is not running")
    return client


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/events",
    response_model=Union[DeliveryResultResponse, EventAcceptedResponse],
    summary="Submit one event for acknowledged delivery",
    description=(
        "Queues the event on the relay's channel. With wait=true the call "
        "returns the terminal outcome (confirmed / failed / fatal_auth); "
        "otherwise it returns 202 with a submission id to poll."
    ),
)
async def submit_event(
    body: EventSubmitRequest,
    wait: bool = Query(False, description="Block until indexer acknowledgment"),
    timeout: float = Query(60.0, gt=0, le=600, description="Max seconds to wait"),
    client: AckingClient = Depends(get_client),
):
    ticket = await client.submit(
        body.event,
        index=body.index,
        sourcetype=body.sourcetype,
        source=body.source,
        host=body.host,
        timestamp=body.time,
        fields=body.fields,
    )
    if not wait:
        return JSONResponse(
            status_code=202,
            content=EventAcceptedResponse(submission_id=ticket.submission_id).model_dump(),
        )
    try:
        result = await asyncio.wait_for(asyncio.shield(ticket.future), timeout)
    except asyncio.TimeoutError:
        return JSONResponse(
            status_code=202,
            content=EventAcceptedResponse(
                submission_id=ticket.submission_id,
                status="pending",
                detail=f"Not confirmed within {timeout:.0f}s; still being tracked",
            ).model_dump(),
        )
    return DeliveryResultResponse(**result.to_dict())


@router.get("/delivery/stats", summary="Delivery counters and channel state")
async def delivery_stats(client: AckingClient = Depends(get_client)) -> Dict[str, Any]:
    return client.stats()


@router.get("/delivery/{submission_id}", summary="Status of one submission")
async def delivery_status(
    submission_id: str, client: AckingClient = Depends(get_client)
) -> Dict[str, Any]:
    status = client.get_submission(submission_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Unknown submission '{submission_id}'")
    return status
