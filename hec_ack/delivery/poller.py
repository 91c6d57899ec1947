"""
poller.py — Acknowledgment Poller: periodically ask HEC which ackIds
have been indexed.

    POST {HEC_URL}/services/collector/ack?channel=<uuid>
    Authorization: Splunk <token>

    {"acks": [0, 1, 2]}

    200 {"acks": {"0": true, "1": false, "2": true}}

One asyncio task per channel runs while that channel has PENDING
handles:

    ┌──────────────┐   sleep(interval) or poke()   ┌──────────────┐
    │ ensure_polling│ ───────────────────────────► │  poll_once   │
    └──────────────┘                               └──────┬───────┘
           ▲                                              │
           │        nothing pending / channel inactive    │
           └──────────────── task exits ◄─────────────────┘

    • A per-channel asyncio.Lock keeps at most one poll in flight.
    • Transport failures wait for the next interval (a missed poll only
      adds latency).
    • Authentication and channel rejections are handed to the owner via
      callbacks and stop the loop.

HEC forgets an ackId's status once it has been reported true, so a
confirmed id is never queried again (the tracker evicts it).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from hec_ack.core.config import Settings
from hec_ack.core.errors import (
    AuthenticationError,
    ChannelInvalidError,
    EventRejectedError,
    HECClientError,
    ProtocolError,
    TransportError,
    classify_response,
)
from hec_ack.core.logging_config import set_log_context
from hec_ack.delivery.channels import ChannelRegistry
from hec_ack.delivery.models import Channel, DeliveryHandle
from hec_ack.delivery.sender import auth_headers
from hec_ack.delivery.tracker import AckTracker

logger = logging.getLogger(__name__)

ConfirmedCallback = Callable[[List[DeliveryHandle]], None]
ErrorCallback = Callable[[Channel, HECClientError], Awaitable[None]]


def parse_ack_results(response: httpx.Response) -> Dict[int, bool]:
    """
    Decode an ack-status body into {handle_id: bool}.

    Accepts the HEC shape {"acks": {...}} and a bare {"0": true} map.
    Non-boolean values and non-numeric keys are dropped (indeterminate).
    """
    try:
        body = response.json()
    except ValueError as exc:
        raise ProtocolError("Ack response is not JSON", body=response.text[:200]) from exc
    if not isinstance(body, dict):
        raise ProtocolError("Ack response is not a JSON object", body=response.text[:200])

    acks = body.get("acks", body)
    if not isinstance(acks, dict):
        raise ProtocolError("Ack response 'acks' is not an object", body=response.text[:200])

    results: Dict[int, bool] = {}
    for key, value in acks.items():
        try:
            handle_id = int(key)
        except (TypeError, ValueError):
            continue
        if isinstance(value, bool):
            results[handle_id] = value
    return results


class AckPoller:
    """
    Drives confirmation for every channel with outstanding handles.

    Parameters
    ----------
    on_confirmed : callable(list[DeliveryHandle])
        Receives handles the tracker just moved to ACKED.
    on_error : async callable(channel, error)
        Receives AuthenticationError / ChannelInvalidError from the loop.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: Settings,
        tracker: AckTracker,
        registry: ChannelRegistry,
        on_confirmed: Optional[ConfirmedCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ):
        self.http_client = http_client
        self.settings = settings
        self.tracker = tracker
        self.registry = registry
        self.on_confirmed = on_confirmed
        self.on_error = on_error
        self._url = settings.base_url + settings.ACK_PATH
        self._tasks: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}
        self.polls_sent = 0

    # ── single poll ──

    def _lock_for(self, channel_id: str) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = self._locks[channel_id] = asyncio.Lock()
        return lock

    async def poll_once(self, channel: Channel) -> Dict[int, bool]:
        """
        Query the status of every PENDING ackId on `channel` in one request.

        Returns the decoded result map (empty when nothing is pending).
        Confirmed handles are evicted and passed to `on_confirmed`.

        Raises
        ------
        AuthenticationError, ChannelInvalidError, TransportError, ProtocolError
        """
        async with self._lock_for(channel.id):
            ids = self.tracker.pending_ids(channel.id)
            if not ids:
                return {}

            try:
                response = await self.http_client.post(
                    self._url,
                    params={"channel": channel.id},
                    json={"acks": ids},
                    headers=auth_headers(self.settings),
                )
            except httpx.TransportError as exc:
                raise TransportError(self.settings.ACK_PATH, str(exc) or type(exc).__name__) from exc
            self.polls_sent += 1

            error = classify_response(
                response, endpoint=self.settings.ACK_PATH, channel_id=channel.id
            )
            if error is not None:
                raise error
            results = parse_ack_results(response)

            self.registry.mark_activity(channel)
            confirmed = self.tracker.apply_ack_results(channel.id, results)

        logger.debug(
            "Polled %d ackIds: %d confirmed", len(ids), len(confirmed),
            extra={"channel_id": channel.id, "pending": len(ids) - len(confirmed)},
        )
        if confirmed and self.on_confirmed is not None:
            self.on_confirmed(confirmed)
        return results

    # ── periodic loop ──

    def is_polling(self, channel_id: str) -> bool:
        task = self._tasks.get(channel_id)
        return task is not None and not task.done()

    def ensure_polling(self, channel: Channel) -> None:
        """Start the loop for `channel` if it is not already running."""
        if self.is_polling(channel.id) or not channel.is_active:
            return
        self._wakeups[channel.id] = asyncio.Event()
        self._tasks[channel.id] = asyncio.create_task(
            self._run(channel), name=f"ack-poller-{channel.id[:8]}"
        )

    def poke(self, channel_id: str) -> None:
        """Wake a sleeping poller so it polls now (backpressure relief)."""
        event = self._wakeups.get(channel_id)
        if event is not None:
            event.set()

    async def _wait_interval(self, channel_id: str) -> None:
        event = self._wakeups.get(channel_id)
        if event is None:
            await asyncio.sleep(self.settings.POLL_INTERVAL_SECONDS)
            return
        try:
            await asyncio.wait_for(event.wait(), timeout=self.settings.POLL_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            pass
        event.clear()

    async def _run(self, channel: Channel) -> None:
        # replaces whatever the spawning task had bound
        set_log_context(channel_id=channel.id)
        logger.debug("Poller started", extra={"channel_id": channel.id})
        try:
            while channel.is_active and self.tracker.pending_ids(channel.id):
                await self._wait_interval(channel.id)
                if not channel.is_active:
                    break
                try:
                    await self.poll_once(channel)
                except TransportError as exc:
                    logger.warning(
                        "Ack poll failed, retrying next interval: %s", exc.message,
                        extra={"channel_id": channel.id},
                    )
                except (ProtocolError, EventRejectedError) as exc:
                    logger.warning(
                        "Ack poll returned unusable response, treating as empty: %s",
                        exc.message, extra={"channel_id": channel.id},
                    )
                except (AuthenticationError, ChannelInvalidError) as exc:
                    if self.on_error is None:
                        raise
                    await self.on_error(channel, exc)
                    return
        finally:
            if self._tasks.get(channel.id) is asyncio.current_task():
                del self._tasks[channel.id]
                self._wakeups.pop(channel.id, None)
            logger.debug("Poller stopped", extra={"channel_id": channel.id})

    # ── teardown ──

    async def stop(self, channel_id: str) -> None:
        task = self._tasks.pop(channel_id, None)
        self._wakeups.pop(channel_id, None)
        self._locks.pop(channel_id, None)
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def stop_all(self) -> None:
        for channel_id in list(self._tasks):
            await self.stop(channel_id)
