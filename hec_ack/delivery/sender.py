"""
sender.py — Event Sender: POST one event to HEC under a channel.

═══════════════════════════════════════════════════════════════════════════
REQUEST / RESPONSE
═══════════════════════════════════════════════════════════════════════════

    POST {HEC_URL}/services/collector/event
    Authorization: Splunk <token>
    X-Splunk-Request-Channel: <channel uuid>      (or ?channel=<uuid>)

    {"event": "...", "sourcetype": "manual", "index": "main",
     "fields": {"hec_ack_submission_id": "...", "hec_ack_attempt": 1}}

    200 {"text": "Success", "code": 0, "ackId": 7}

Outcome mapping:

    Response                         Result
    ──────────────────────────       ─────────────────────────────────
    200 + integer ackId              DeliveryHandle (PENDING, tracked)
    200 without ackId                ProtocolError (lost send → resend)
    401 / 403                        AuthenticationError (fatal)
    400 code 10/11, 404              ChannelInvalidError
    other 4xx                        EventRejectedError
    5xx / 429 / network error        retried here with backoff, then
                                     TransportError

The handle is registered with the tracker *before* send() returns, so a
caller can never hold an untracked ackId.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from hec_ack.core.config import Settings
from hec_ack.core.errors import (
    ChannelInvalidError,
    ProtocolError,
    TransportError,
    classify_response,
)
from hec_ack.delivery.channels import ChannelRegistry
from hec_ack.delivery.models import Channel, DeliveryHandle, Submission
from hec_ack.delivery.tracker import AckTracker

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Request helpers (shared with the poller)
# ═══════════════════════════════════════════════════════════════════════════

def auth_headers(settings: Settings) -> Dict[str, str]:
    return {
        "Authorization": f"{settings.AUTH_SCHEME} {settings.HEC_TOKEN}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def channel_request_kwargs(settings: Settings, channel: Channel) -> Dict[str, Any]:
    """Headers/params that carry the channel id on an event request."""
    if settings.CHANNEL_TRANSPORT == "query":
        return {"params": {"channel": channel.id}}
    return {"headers": {settings.CHANNEL_HEADER: channel.id}}


def compute_backoff(base_seconds: float, retry: int) -> float:
    """Exponential backoff: base × 2^(retry - 1)."""
    return base_seconds * (2 ** (retry - 1))


def parse_ack_id(response: httpx.Response) -> int:
    """Extract the integer ackId from a successful event response."""
    try:
        body = response.json()
    except ValueError as exc:
        raise ProtocolError(
            f"HTTP {response.status_code} with non-JSON body", body=response.text[:200]
        ) from exc

    ack_id = body.get("ackId") if isinstance(body, dict) else None
    if isinstance(ack_id, bool):
        ack_id = None
    if isinstance(ack_id, str) and ack_id.isdigit():
        ack_id = int(ack_id)
    if not isinstance(ack_id, int):
        raise ProtocolError(
            f"HTTP {response.status_code} but no ackId in response",
            body=response.text[:200],
        )
    return ack_id


# ═══════════════════════════════════════════════════════════════════════════
# Sender
# ═══════════════════════════════════════════════════════════════════════════

class EventSender:
    """
    Delivers one event envelope and captures the resulting handle.

    Usage:
        sender = EventSender(http_client, settings, tracker, registry)
        handle = await sender.send(channel, submission, envelope)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: Settings,
        tracker: AckTracker,
        registry: ChannelRegistry,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.http_client = http_client
        self.settings = settings
        self.tracker = tracker
        self.registry = registry
        self._clock = clock
        self._sleep = sleep
        self._url = settings.base_url + settings.EVENT_PATH

    async def _post_with_retry(self, channel: Channel, envelope: Dict[str, Any]) -> httpx.Response:
        """POST with bounded exponential backoff on transport-class failures."""
        kwargs = channel_request_kwargs(self.settings, channel)
        headers = {**auth_headers(self.settings), **kwargs.pop("headers", {})}
        max_retries = self.settings.SEND_MAX_RETRIES
        last_error: Optional[TransportError] = None

        for retry in range(max_retries + 1):
            if retry:
                delay = compute_backoff(self.settings.SEND_BACKOFF_BASE_SECONDS, retry)
                logger.warning(
                    "Event send failed: %s, retrying in %.1fs (retry %d/%d)",
                    last_error.message if last_error else "", delay, retry, max_retries,
                    extra={"channel_id": channel.id},
                )
                await self._sleep(delay)
            try:
                response = await self.http_client.post(
                    self._url, json=envelope, headers=headers, **kwargs
                )
            except httpx.TransportError as exc:
                last_error = TransportError(self.settings.EVENT_PATH, str(exc) or type(exc).__name__)
                continue

            error = classify_response(
                response, endpoint=self.settings.EVENT_PATH, channel_id=channel.id
            )
            if isinstance(error, TransportError):
                last_error = error
                continue
            if error is not None:
                raise error
            return response

        raise last_error or TransportError(self.settings.EVENT_PATH, "no attempt made")

    async def send(
        self,
        channel: Channel,
        submission: Submission,
        envelope: Dict[str, Any],
        *,
        reserved: bool = False,
        replaces: Optional[DeliveryHandle] = None,
    ) -> DeliveryHandle:
        """
        Send `envelope` on `channel` and track the returned ackId.

        Parameters
        ----------
        reserved : bool
            The caller already holds a capacity reservation on `channel`;
            ownership passes to this call.
        replaces : DeliveryHandle, optional
            EXPIRED handle being resent. On the same channel it is swapped
            out atomically instead of taking a new slot.

        Raises
        ------
        AuthenticationError, ChannelInvalidError, EventRejectedError,
        ProtocolError, TransportError, CapacityError
        """
        swap = replaces is not None and replaces.channel_id == channel.id and not reserved
        holds_reservation = not swap

        if not channel.is_active:
            if reserved:
                self.tracker.cancel_reservation(channel.id)
            raise ChannelInvalidError(channel.id, f"channel is {channel.state.value}")

        if holds_reservation and not reserved:
            self.tracker.reserve(channel.id)

        start = self._clock()
        try:
            response = await self._post_with_retry(channel, envelope)
            handle_id = parse_ack_id(response)
            if not channel.is_active:
                raise ChannelInvalidError(
                    channel.id, f"channel became {channel.state.value} during send"
                )
            handle = DeliveryHandle(
                handle_id=handle_id,
                channel_id=channel.id,
                sent_at=self._clock(),
                submission_id=submission.submission_id,
                attempt=submission.attempts,
            )
            self.tracker.register_pending(
                channel.id, handle, replaces=replaces if swap else None
            )
        except BaseException:
            # cancellation included: the slot must not leak
            if holds_reservation:
                self.tracker.cancel_reservation(channel.id)
            raise

        self.registry.mark_activity(channel)
        logger.debug(
            "Event accepted with ackId %s in %.1fms",
            handle.handle_id, (self._clock() - start) * 1000,
            extra={
                "channel_id": channel.id,
                "handle_id": handle.handle_id,
                "submission_id": submission.submission_id,
                "attempt": handle.attempt,
            },
        )
        return handle
