"""
models.py — Shared data structures for reliable HEC delivery.

Defines:
    • ChannelState  — channel lifecycle (active / retired / invalidated)
    • HandleState   — per-ackId state machine
    • DeliveryStatus — terminal outcome reported to the caller
    • Channel        — one exclusive delivery lane
    • DeliveryHandle — the receipt (ackId) for one accepted event
    • Submission     — one caller payload across all of its attempts
    • DeliveryResult — what the caller's future resolves to
    • ShutdownReport — final state handed back by shutdown()

═══════════════════════════════════════════════════════════════════════════
HANDLE STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    send ──► PENDING ──(poll: true)──────────────► ACKED   (evicted, terminal)
                │
                ├──(channel invalidated)──┐
                └──(ack timeout)──────────┴──────► EXPIRED
                                                      │
                                   resend ◄───────────┘
                                     │
                                     ▼
                        PENDING (new ackId, attempt + 1)

    • ackIds are unique per channel only; a handle is always addressed
      as (channel_id, handle_id).
    • A late "true" for an EXPIRED handle is ignored — its replacement
      decides the outcome.

Timestamps (created_at, sent_at, ...) are seconds from the client's
monotonic clock, not wall-clock time.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from hec_ack.core.errors import DeliveryFailedError


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class ChannelState(str, Enum):
    """Channel lifecycle."""
    ACTIVE      = "active"
    RETIRED     = "retired"       # idle with nothing pending, torn down locally
    INVALIDATED = "invalidated"   # rejected by the collector


class HandleState(str, Enum):
    """Per-ackId acknowledgment state."""
    PENDING = "pending"   # sent, awaiting indexer confirmation
    ACKED   = "acked"     # durably indexed (terminal)
    EXPIRED = "expired"   # timed out or channel lost; replacement pending


class DeliveryStatus(str, Enum):
    """Terminal outcome of a submission."""
    CONFIRMED   = "confirmed"
    FAILED      = "failed"        # attempts exhausted or event rejected
    FATAL_AUTH  = "fatal_auth"    # token rejected, nothing will succeed
    UNCONFIRMED = "unconfirmed"   # still open at shutdown


# ═══════════════════════════════════════════════════════════════════════════
# Channel
# ═══════════════════════════════════════════════════════════════════════════

def new_channel_id() -> str:
    """HEC requires a GUID-formatted channel identifier."""
    return str(uuid.uuid4())


@dataclass
class Channel:
    """One logical sender's exclusive delivery lane."""
    id: str
    created_at: float
    last_activity_at: float
    state: ChannelState = ChannelState.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.state == ChannelState.ACTIVE

    def idle_for(self, now: float) -> float:
        return now - self.last_activity_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Delivery Handle
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DeliveryHandle:
    """Receipt for one accepted event, scoped to its channel."""
    handle_id: int
    channel_id: str
    sent_at: float
    submission_id: str
    attempt: int = 1
    state: HandleState = HandleState.PENDING

    @property
    def key(self) -> tuple:
        return (self.channel_id, self.handle_id)

    def age(self, now: float) -> float:
        return now - self.sent_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle_id": self.handle_id,
            "channel_id": self.channel_id,
            "sent_at": self.sent_at,
            "attempt": self.attempt,
            "state": self.state.value,
            "submission_id": self.submission_id,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Result
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DeliveryResult:
    """Terminal outcome for one submitted payload."""
    submission_id: str
    status: DeliveryStatus
    attempts: int
    channel_id: Optional[str] = None
    handle_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status == DeliveryStatus.CONFIRMED

    def raise_for_status(self) -> "DeliveryResult":
        """Raise DeliveryFailedError unless the payload was confirmed."""
        if not self.confirmed:
            raise DeliveryFailedError(
                self.submission_id, self.status.value, self.attempts, self.error or ""
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "channel_id": self.channel_id,
            "handle_id": self.handle_id,
            "error": self.error,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Submission
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Submission:
    """
    One caller payload tracked across every send attempt.

    `envelope` is the HEC event body as the caller built it; the
    idempotency marker is stamped into a copy on each attempt.
    """
    envelope: Dict[str, Any]
    future: "asyncio.Future[DeliveryResult]"
    submission_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    first_sent_at: Optional[float] = None
    handle: Optional[DeliveryHandle] = None
    errors: List[str] = field(default_factory=list)

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, status: DeliveryStatus, error: Optional[str] = None) -> Optional[DeliveryResult]:
        """Resolve the caller's future once; later calls are no-ops."""
        if self.future.done():
            return None
        result = DeliveryResult(
            submission_id=self.submission_id,
            status=status,
            attempts=self.attempts,
            channel_id=self.handle.channel_id if self.handle else None,
            handle_id=self.handle.handle_id if self.handle else None,
            error=error,
        )
        self.future.set_result(result)
        return result

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "submission_id": self.submission_id,
            "attempts": self.attempts,
            "handle": self.handle.to_dict() if self.handle else None,
            "errors": list(self.errors),
        }
        if self.future.done() and not self.future.cancelled():
            d["result"] = self.future.result().to_dict()
        return d


@dataclass
class DeliveryTicket:
    """
    Handle returned by submit(): the submission id plus an awaitable
    that resolves to the DeliveryResult.

        ticket = await client.submit({"message": "hi"})
        result = await ticket
    """
    submission_id: str
    future: "asyncio.Future[DeliveryResult]"

    def done(self) -> bool:
        return self.future.done()

    def result(self) -> DeliveryResult:
        return self.future.result()

    def __await__(self):
        return self.future.__await__()


@dataclass
class ShutdownReport:
    """Outcome counts at shutdown; `unconfirmed` lists open submission ids."""
    confirmed_on_flush: int = 0
    unconfirmed: List[str] = field(default_factory=list)
    channels_closed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confirmed_on_flush": self.confirmed_on_flush,
            "unconfirmed": list(self.unconfirmed),
            "channels_closed": self.channels_closed,
        }
