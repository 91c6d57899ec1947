"""
Pydantic schemas for the relay API.

Separated from the route handler so they are reusable across
the codebase (CLI output, tests).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class EventSubmitRequest(BaseModel):
    """Request body for POST /api/v1/events."""
    event: Union[str, Dict[str, Any], List[Any]] = Field(
        ...,
        description="Event payload: a raw string or a JSON object",
        examples=["Test event 1", {"action": "login", "user": "alice"}],
    )
    index: Optional[str] = Field(None, examples=["main"])
    sourcetype: Optional[str] = Field(None, examples=["manual"])
    source: Optional[str] = Field(None, examples=["relay"])
    host: Optional[str] = Field(None, examples=["web-01"])
    time: Optional[float] = Field(
        None, ge=0,
        description="Event time in epoch seconds",
        examples=[1718000000.5],
    )
    fields: Optional[Dict[str, Any]] = Field(
        None, description="Indexed fields merged with the delivery marker"
    )

    @field_validator("event")
    @classmethod
    def _non_empty(cls, value: Any) -> Any:
        if value in ("", {}, []):
            raise ValueError("event payload cannot be empty")
        return value


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class DeliveryResultResponse(BaseModel):
    """Terminal outcome of one submission."""
    submission_id: str
    status: str = Field(..., examples=["confirmed"])
    attempts: int
    channel_id: Optional[str] = None
    handle_id: Optional[int] = None
    error: Optional[str] = None


class EventAcceptedResponse(BaseModel):
    """Returned when the caller does not wait for confirmation."""
    submission_id: str
    status: str = Field("accepted", examples=["accepted"])
    detail: str = Field(
        "Event queued; poll GET /api/v1/delivery/{submission_id} for the outcome",
    )
