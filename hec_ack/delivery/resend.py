"""
resend.py — Resend Policy: at-least-once delivery across lost sends,
lost acknowledgments and channel loss.

Triggers:
    • sweep_expired() reports ackIds older than ACK_TIMEOUT_SECONDS
    • a channel is invalidated (all of its ackIds expire at once)
    • a send produced no usable handle (transport exhausted, 200 without
      ackId, channel rejected mid-send)

For each, the original envelope is re-sent through the EventSender,
under a fresh channel if the old one is gone, with `attempt` incremented.
Once MAX_ATTEMPTS sends have been made the submission fails terminally.

═══════════════════════════════════════════════════════════════════════════
IDEMPOTENCY MARKER
═══════════════════════════════════════════════════════════════════════════

HEC does not deduplicate. Indexer acknowledgment proves durability, not
uniqueness, so a resend after a lost *ack* produces a duplicate event.
Every attempt is stamped with indexed fields that let searches collapse
duplicates:

    "fields": {
        "hec_ack_submission_id": "9f1c...",   # same across attempts
        "hec_ack_attempt": 2,                 # 1 = original
        "hec_ack_first_sent": 1718000000.12   # wall clock of attempt 1
    }

    | stats latest(_raw) by hec_ack_submission_id
"""

from __future__ import annotations

import copy
import logging
import time
from typing import Any, Callable, Dict, Optional

from hec_ack.delivery.channels import ChannelRegistry
from hec_ack.delivery.models import Channel, DeliveryHandle, Submission
from hec_ack.delivery.sender import EventSender
from hec_ack.delivery.tracker import AckTracker

logger = logging.getLogger(__name__)

MARKER_SUBMISSION = "hec_ack_submission_id"
MARKER_ATTEMPT = "hec_ack_attempt"
MARKER_FIRST_SENT = "hec_ack_first_sent"


class ResendPolicy:
    """
    Decides whether a submission may be sent again, and sends it.

    Usage:
        policy = ResendPolicy(sender, registry, tracker, max_attempts=3)
        if policy.can_resend(submission):
            handle = await policy.resubmit(submission, expired=old_handle)
    """

    def __init__(
        self,
        sender: EventSender,
        registry: ChannelRegistry,
        tracker: AckTracker,
        max_attempts: int,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.sender = sender
        self.registry = registry
        self.tracker = tracker
        self.max_attempts = max_attempts
        self._wall_clock = wall_clock

    def can_resend(self, submission: Submission) -> bool:
        return submission.attempts < self.max_attempts

    def stamp(self, submission: Submission) -> Dict[str, Any]:
        """
        Envelope for the submission's *next* attempt, with the idempotency
        marker merged into any caller-supplied `fields`.
        """
        envelope = copy.deepcopy(submission.envelope)
        fields = dict(envelope.get("fields") or {})
        fields[MARKER_SUBMISSION] = submission.submission_id
        fields[MARKER_ATTEMPT] = submission.attempts + 1
        fields[MARKER_FIRST_SENT] = (
            submission.first_sent_at if submission.first_sent_at is not None
            else self._wall_clock()
        )
        envelope["fields"] = fields
        return envelope

    async def send_attempt(
        self,
        submission: Submission,
        *,
        reserved_channel: Optional[Channel] = None,
        expired: Optional[DeliveryHandle] = None,
    ) -> DeliveryHandle:
        """
        Make the next attempt for `submission`.

        `reserved_channel` carries a capacity reservation taken by the
        caller (first attempts). Otherwise the active channel is acquired
        here; an expired handle still tracked on that channel is swapped
        out, else a new slot is reserved. CapacityError is raised before
        the attempt is counted.
        """
        replaces: Optional[DeliveryHandle] = None
        if reserved_channel is not None:
            channel = reserved_channel
        else:
            channel = self.registry.acquire_channel()
            if (
                expired is not None
                and expired.channel_id == channel.id
                and self.tracker.get(channel.id, expired.handle_id) is expired
            ):
                replaces = expired
            else:
                self.tracker.reserve(channel.id)

        envelope = self.stamp(submission)
        if submission.first_sent_at is None:
            submission.first_sent_at = envelope["fields"][MARKER_FIRST_SENT]
        submission.attempts += 1

        handle = await self.sender.send(
            channel, submission, envelope,
            reserved=replaces is None,
            replaces=replaces,
        )
        submission.handle = handle
        return handle

    async def resubmit(
        self, submission: Submission, expired: Optional[DeliveryHandle] = None
    ) -> DeliveryHandle:
        """Resend an expired or lost submission with attempt + 1."""
        logger.info(
            "Resending submission (attempt %d/%d)%s",
            submission.attempts + 1, self.max_attempts,
            f", replacing ackId {expired.handle_id}" if expired else "",
            extra={
                "submission_id": submission.submission_id,
                "attempt": submission.attempts + 1,
                "channel_id": expired.channel_id if expired else None,
            },
        )
        return await self.send_attempt(submission, expired=expired)
