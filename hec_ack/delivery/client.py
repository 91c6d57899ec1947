"""
client.py — AckingClient: reliable HEC ingestion with indexer
acknowledgment.

This is the caller-facing coordinator that:
    1. Reserves capacity on the active channel (backpressure)
    2. Sends the event and tracks the returned ackId
    3. Runs a poller per channel until every ackId is confirmed
    4. Sweeps timed-out ackIds and resends them (attempt + 1)
    5. Replaces channels the collector rejects, resending their events
    6. Retires idle channels
    7. Resolves exactly one DeliveryResult per submission

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    submit(event)
        │  reserve slot on active channel   (wait / reject when full)
        ▼
    EventSender.send ── 200 {"ackId": n} ──► AckTracker (PENDING)
        │                                        │
        │ lost send                              ├── AckPoller ── true ──► CONFIRMED
        ▼                                        │
    ResendPolicy ◄──── EXPIRED ◄─────────────────┴── sweep (ACK_TIMEOUT) /
        │                                            channel invalidated
        └── attempts ≥ MAX_ATTEMPTS ──► FAILED

    AuthenticationError anywhere ──► every open submission FATAL_AUTH,
                                      client refuses further submits.

═══════════════════════════════════════════════════════════════════════════
USAGE
═══════════════════════════════════════════════════════════════════════════

    async with AckingClient(settings) as client:
        ticket = await client.submit({"message": "deploy finished"})
        result = await ticket          # DeliveryResult
        result.raise_for_status()

    # or, one call:
        result = await client.send_and_wait("Test event 1")
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter, OrderedDict
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from hec_ack.core.config import Settings, get_settings
from hec_ack.core.logging_config import bind_log_context
from hec_ack.core.errors import (
    AuthenticationError,
    CapacityError,
    ChannelInvalidError,
    ClientClosedError,
    DuplicateHandleError,
    EventRejectedError,
    HECClientError,
    ProtocolError,
    TransportError,
)
from hec_ack.delivery.channels import ChannelRegistry
from hec_ack.delivery.models import (
    Channel,
    DeliveryHandle,
    DeliveryResult,
    DeliveryStatus,
    DeliveryTicket,
    ShutdownReport,
    Submission,
)
from hec_ack.delivery.poller import AckPoller
from hec_ack.delivery.resend import ResendPolicy
from hec_ack.delivery.sender import EventSender
from hec_ack.delivery.tracker import AckTracker

logger = logging.getLogger(__name__)

# Finished submissions kept for status lookups
RESULT_HISTORY = 1000


def build_envelope(
    event: Any,
    settings: Settings,
    *,
    index: Optional[str] = None,
    sourcetype: Optional[str] = None,
    source: Optional[str] = None,
    host: Optional[str] = None,
    timestamp: Optional[float] = None,
    fields: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Wrap a payload in an HEC event envelope, applying configured defaults."""
    if event is None or event == "":
        raise EventRejectedError("Event payload cannot be empty")
    envelope: Dict[str, Any] = {"event": event}
    meta = {
        "index": index or settings.DEFAULT_INDEX,
        "sourcetype": sourcetype or settings.DEFAULT_SOURCETYPE,
        "source": source or settings.DEFAULT_SOURCE,
        "host": host,
        "time": timestamp,
    }
    envelope.update({k: v for k, v in meta.items() if v is not None})
    if fields:
        envelope["fields"] = dict(fields)
    return envelope


class AckingClient:
    """
    One logical sender: owns one active channel at a time.

    Parameters
    ----------
    settings : Settings, optional
        Defaults to the environment-loaded settings.
    http_client : httpx.AsyncClient, optional
        Injected client (not closed on shutdown).
    transport : httpx.AsyncBaseTransport, optional
        Transport for the internally created client (tests use
        httpx.MockTransport).
    clock : callable() -> float
        Monotonic time source shared by every component.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.settings.validate_for_sending()
        self._clock = clock

        self._owns_http = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            verify=self.settings.VERIFY_TLS,
            transport=transport,
        )

        self._capacity_freed = asyncio.Event()
        self.tracker = AckTracker(
            max_per_channel=self.settings.MAX_PENDING_PER_CHANNEL,
            max_total=self.settings.MAX_PENDING_TOTAL,
            on_release=self._capacity_freed.set,
        )
        self.registry = ChannelRegistry(pending_count=self.tracker.occupancy, clock=clock)
        self.sender = EventSender(
            self.http_client, self.settings, self.tracker, self.registry, clock=clock
        )
        self.poller = AckPoller(
            self.http_client, self.settings, self.tracker, self.registry,
            on_confirmed=self._on_confirmed,
            on_error=self._on_poll_error,
        )
        self.resend_policy = ResendPolicy(
            self.sender, self.registry, self.tracker, self.settings.MAX_ATTEMPTS
        )

        self._submissions: Dict[str, Submission] = {}
        self._finished: "OrderedDict[str, DeliveryResult]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._closed = False
        self._fatal: Optional[AuthenticationError] = None
        self._shutdown_report: Optional[ShutdownReport] = None
        self.counters: Counter = Counter()

    # ── lifecycle ──

    async def __aenter__(self) -> "AckingClient":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    def start(self) -> None:
        """Start the expiry / idle sweep. Called implicitly by submit()."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="hec-ack-sweeper")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def fatal_error(self) -> Optional[AuthenticationError]:
        return self._fatal

    # ── submission ──

    async def submit(
        self,
        event: Any,
        *,
        index: Optional[str] = None,
        sourcetype: Optional[str] = None,
        source: Optional[str] = None,
        host: Optional[str] = None,
        timestamp: Optional[float] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> DeliveryTicket:
        """
        Queue one event for reliable delivery.

        Returns once the event holds a capacity slot; the ticket resolves
        to CONFIRMED, FAILED (with attempt count), FATAL_AUTH, or
        UNCONFIRMED (shutdown).

        Raises
        ------
        ClientClosedError      after shutdown()
        AuthenticationError    after a fatal token rejection
        CapacityError          no slot (reject mode, or wait timed out)
        EventRejectedError     empty payload
        """
        if self._closed:
            raise ClientClosedError()
        if self._fatal is not None:
            raise self._fatal
        envelope = build_envelope(
            event, self.settings,
            index=index, sourcetype=sourcetype, source=source,
            host=host, timestamp=timestamp, fields=fields,
        )
        self.start()

        channel = await self._reserve_slot()
        submission = Submission(
            envelope=envelope, future=asyncio.get_running_loop().create_future()
        )
        self._submissions[submission.submission_id] = submission
        self.counters["submitted"] += 1
        self._spawn(self._attempt(submission, reserved_channel=channel))
        return DeliveryTicket(submission.submission_id, submission.future)

    async def send_and_wait(
        self, event: Any, *, timeout: Optional[float] = None, **meta: Any
    ) -> DeliveryResult:
        """submit() and await the terminal result (bounded by `timeout`)."""
        ticket = await self.submit(event, **meta)
        return await asyncio.wait_for(asyncio.shield(ticket.future), timeout)

    async def _reserve_slot(self) -> Channel:
        """Reserve capacity on the active channel, honouring BACKPRESSURE_MODE."""
        deadline = self._clock() + self.settings.BACKPRESSURE_TIMEOUT_SECONDS
        while True:
            channel = self.registry.acquire_channel()
            self._capacity_freed.clear()
            try:
                self.tracker.reserve(channel.id)
                return channel
            except CapacityError:
                remaining = deadline - self._clock()
                if self.settings.BACKPRESSURE_MODE == "reject" or remaining <= 0:
                    self.counters["rejected"] += 1
                    raise
            # force a poll cycle rather than waiting out the interval
            self.poller.ensure_polling(channel)
            self.poller.poke(channel.id)
            logger.debug("Backpressure: waiting for capacity", extra={"channel_id": channel.id})
            try:
                await asyncio.wait_for(
                    self._capacity_freed.wait(),
                    timeout=min(remaining, self.settings.POLL_INTERVAL_SECONDS),
                )
            except asyncio.TimeoutError:
                pass
            if self._closed:
                raise ClientClosedError()
            if self._fatal is not None:
                raise self._fatal

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── one attempt ──

    async def _attempt(
        self,
        submission: Submission,
        *,
        reserved_channel: Optional[Channel] = None,
        expired: Optional[DeliveryHandle] = None,
    ) -> None:
        """Make one send attempt and route every outcome."""
        bind_log_context(submission_id=submission.submission_id)
        try:
            if reserved_channel is not None:
                handle = await self.resend_policy.send_attempt(
                    submission, reserved_channel=reserved_channel
                )
            else:
                handle = await self.resend_policy.resubmit(submission, expired=expired)
        except AuthenticationError as exc:
            await self._fatal_auth(exc)
            return
        except EventRejectedError as exc:
            self._release(expired)
            self._finish(submission, DeliveryStatus.FAILED, exc.message)
            return
        except CapacityError:
            # resend onto a fresh channel found no room; try again next interval
            self._spawn(self._retry_later(submission, expired))
            return
        except DuplicateHandleError as exc:
            await self._invalidate(exc.details.get("channel_id"))
            self._lost(submission, exc, expired)
            return
        except ChannelInvalidError as exc:
            await self._invalidate(exc.details.get("channel_id"))
            self._lost(submission, exc, expired)
            return
        except (TransportError, ProtocolError) as exc:
            self._lost(submission, exc, expired)
            return

        if expired is not None and expired.channel_id != handle.channel_id:
            self._release(expired)
        if submission.done:
            # resolved while in flight (fatal auth / shutdown)
            self._release(handle)
            return
        channel = self.registry.get(handle.channel_id)
        if channel is not None:
            self.poller.ensure_polling(channel)

    async def _retry_later(self, submission: Submission, expired: Optional[DeliveryHandle]) -> None:
        await asyncio.sleep(self.settings.POLL_INTERVAL_SECONDS)
        if not submission.done:
            await self._attempt(submission, expired=expired)

    def _lost(
        self,
        submission: Submission,
        exc: HECClientError,
        expired: Optional[DeliveryHandle],
    ) -> None:
        """A send produced no usable handle: resend or fail."""
        submission.errors.append(exc.message)
        logger.warning(
            "Send attempt %d lost: %s", submission.attempts, exc.message,
            extra={"submission_id": submission.submission_id, "attempt": submission.attempts},
        )
        if submission.done:
            self._release(expired)
            return
        if self.resend_policy.can_resend(submission):
            self._spawn(self._attempt(submission, expired=expired))
        else:
            self._release(expired)
            self._finish(submission, DeliveryStatus.FAILED, exc.message)

    # ── acknowledgment outcomes ──

    def _on_confirmed(self, handles: List[DeliveryHandle]) -> None:
        for handle in handles:
            submission = self._submissions.get(handle.submission_id)
            if submission is None or submission.handle is not handle:
                continue
            self._finish(submission, DeliveryStatus.CONFIRMED)

    async def _on_poll_error(self, channel: Channel, exc: HECClientError) -> None:
        if isinstance(exc, AuthenticationError):
            await self._fatal_auth(exc)
        else:
            await self._invalidate(channel.id)

    def _resend_expired(self, handles: List[DeliveryHandle], reason: str) -> None:
        for handle in handles:
            submission = self._submissions.get(handle.submission_id)
            if submission is None or submission.done or submission.handle is not handle:
                self._release(handle)
                continue
            submission.errors.append(f"ackId {handle.handle_id} {reason}")
            if self.resend_policy.can_resend(submission):
                self.counters["resends"] += 1
                self._spawn(self._attempt(submission, expired=handle))
            else:
                self._release(handle)
                self._finish(
                    submission, DeliveryStatus.FAILED,
                    f"no acknowledgment after {submission.attempts} attempt(s): {reason}",
                )

    async def _invalidate(self, channel_id: Optional[str]) -> None:
        """Replace a rejected channel and resend everything pending on it."""
        channel = self.registry.get(channel_id) if channel_id else None
        if channel is None or not self.registry.invalidate(channel):
            return
        self.counters["channels_invalidated"] += 1
        await self.poller.stop(channel.id)
        expired = self.tracker.expire_channel(channel.id)
        self._resend_expired(expired, "lost with invalidated channel")

    async def _fatal_auth(self, exc: AuthenticationError) -> None:
        if self._fatal is not None:
            return
        self._fatal = exc
        logger.error("Authentication rejected by HEC, failing all open submissions: %s", exc.message)
        for submission in list(self._submissions.values()):
            self._release(submission.handle)
            self._finish(submission, DeliveryStatus.FATAL_AUTH, exc.message)
        await self._cancel_background()
        self._capacity_freed.set()

    # ── bookkeeping ──

    def _release(self, handle: Optional[DeliveryHandle]) -> None:
        if handle is not None:
            self.tracker.release(handle)

    def _finish(
        self, submission: Submission, status: DeliveryStatus, error: Optional[str] = None
    ) -> None:
        result = submission.resolve(status, error)
        self._submissions.pop(submission.submission_id, None)
        if result is None:
            return
        self.counters[status.value] += 1
        self._finished[submission.submission_id] = result
        while len(self._finished) > RESULT_HISTORY:
            self._finished.popitem(last=False)
        level = logging.INFO if status == DeliveryStatus.CONFIRMED else logging.WARNING
        logger.log(
            level, "Submission %s after %d attempt(s)%s",
            status.value, result.attempts, f": {error}" if error else "",
            extra={
                "submission_id": submission.submission_id,
                "attempt": result.attempts,
                "channel_id": result.channel_id,
                "handle_id": result.handle_id,
            },
        )

    # ── periodic sweep ──

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.SWEEP_INTERVAL_SECONDS)
            try:
                self.sweep()
                await self._retire_idle()
            except Exception:
                logger.exception("Sweep cycle failed")

    def sweep(self) -> List[DeliveryHandle]:
        """Expire ackIds older than ACK_TIMEOUT_SECONDS and resend them."""
        expired = self.tracker.sweep_expired(self._clock(), self.settings.ACK_TIMEOUT_SECONDS)
        if expired:
            self._resend_expired(expired, "timed out")
        return expired

    async def _retire_idle(self) -> bool:
        channel = self.registry.active
        if channel is None:
            return False
        if not self.registry.retire_if_idle(self._clock(), self.settings.CHANNEL_IDLE_SECONDS):
            return False
        await self.poller.stop(channel.id)
        self.tracker.drop_channel(channel.id)
        self.counters["channels_retired"] += 1
        return True

    # ── teardown ──

    async def _cancel_background(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        if self._sweeper is not None and self._sweeper is not current:
            pending.append(self._sweeper)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.poller.stop_all()

    async def shutdown(self, flush: Optional[bool] = None) -> ShutdownReport:
        """
        Stop all background work and report what is still unconfirmed.

        With `flush` (default SHUTDOWN_FLUSH) one final poll is made per
        channel with pending ackIds before open submissions are resolved
        UNCONFIRMED.
        """
        if self._shutdown_report is not None:
            return self._shutdown_report
        self._closed = True
        flush = self.settings.SHUTDOWN_FLUSH if flush is None else flush
        report = ShutdownReport()

        await self._cancel_background()
        self._capacity_freed.set()

        if flush and self._fatal is None:
            confirmed_before = self.counters[DeliveryStatus.CONFIRMED.value]
            for channel_id in self.tracker.channels_with_pending():
                channel = self.registry.get(channel_id)
                if channel is None:
                    continue
                try:
                    await self.poller.poll_once(channel)
                except HECClientError as exc:
                    logger.warning("Final ack poll failed: %s", exc.message, extra={"channel_id": channel_id})
            report.confirmed_on_flush = self.counters[DeliveryStatus.CONFIRMED.value] - confirmed_before

        for submission in list(self._submissions.values()):
            self._release(submission.handle)
            self._finish(submission, DeliveryStatus.UNCONFIRMED, "client shut down before confirmation")
            report.unconfirmed.append(submission.submission_id)

        report.channels_closed = self.registry.close_all()
        if self._owns_http:
            await self.http_client.aclose()

        if report.unconfirmed:
            logger.warning("Shut down with %d unconfirmed submission(s)", len(report.unconfirmed))
        else:
            logger.info("Shut down cleanly (%d confirmed on final poll)", report.confirmed_on_flush)
        self._shutdown_report = report
        return report

    # ── introspection ──

    def get_submission(self, submission_id: str) -> Optional[Dict[str, Any]]:
        submission = self._submissions.get(submission_id)
        if submission is not None:
            d = submission.to_dict()
            d["status"] = "in_flight"
            return d
        result = self._finished.get(submission_id)
        return result.to_dict() if result else None

    def stats(self) -> Dict[str, Any]:
        return {
            "closed": self._closed,
            "fatal_error": self._fatal.message if self._fatal else None,
            "in_flight": len(self._submissions),
            "counters": dict(self.counters),
            "polls_sent": self.poller.polls_sent,
            "channels": self.registry.snapshot(),
            "tracker": self.tracker.snapshot(),
        }
