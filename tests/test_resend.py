"""
test_resend.py — Tests for attempt accounting and the idempotency marker.

Run with:
    pytest tests/test_resend.py -v
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from hec_ack.core.errors import CapacityError
from hec_ack.delivery.channels import ChannelRegistry
from hec_ack.delivery.models import Submission
from hec_ack.delivery.resend import (
    MARKER_ATTEMPT,
    MARKER_FIRST_SENT,
    MARKER_SUBMISSION,
    ResendPolicy,
)
from hec_ack.delivery.sender import EventSender
from hec_ack.delivery.tracker import AckTracker


def _make_submission(envelope=None, attempts=0):
    # stamping never touches the future
    return Submission(envelope=envelope or {"event": "hello"}, future=None, attempts=attempts)


def _run_policy(fake_hec, settings, scenario, max_per_channel=10):
    async def main():
        tracker = AckTracker(max_per_channel, 100)
        registry = ChannelRegistry(pending_count=tracker.occupancy)
        async with httpx.AsyncClient(transport=fake_hec.transport()) as http:
            sender = EventSender(http, settings, tracker, registry)
            policy = ResendPolicy(sender, registry, tracker, max_attempts=3, wall_clock=lambda: 1718000000.0)
            return await scenario(policy, tracker, registry)

    return asyncio.run(main())


class TestStamp:

    def test_marker_fields_merge_with_caller_fields(self):
        policy = ResendPolicy(None, None, None, max_attempts=3, wall_clock=lambda: 42.0)
        envelope = {"event": "x", "fields": {"team": "ops"}}
        submission = _make_submission(envelope)

        stamped = policy.stamp(submission)
        assert stamped["fields"] == {
            "team": "ops",
            MARKER_SUBMISSION: submission.submission_id,
            MARKER_ATTEMPT: 1,
            MARKER_FIRST_SENT: 42.0,
        }
        # caller envelope untouched
        assert envelope["fields"] == {"team": "ops"}

    def test_first_sent_is_stable_across_attempts(self):
        policy = ResendPolicy(None, None, None, max_attempts=3, wall_clock=lambda: 99.0)
        submission = _make_submission(attempts=1)
        submission.first_sent_at = 10.0
        stamped = policy.stamp(submission)
        assert stamped["fields"][MARKER_FIRST_SENT] == 10.0
        assert stamped["fields"][MARKER_ATTEMPT] == 2

    def test_can_resend_boundary(self):
        policy = ResendPolicy(None, None, None, max_attempts=3)
        assert policy.can_resend(_make_submission(attempts=2))
        assert not policy.can_resend(_make_submission(attempts=3))


class TestSendAttempt:

    def test_attempt_counter_and_marker_on_the_wire(self, fake_hec, settings_factory):
        async def scenario(policy, tracker, registry):
            submission = Submission({"event": "hello"}, asyncio.get_running_loop().create_future())
            first = await policy.send_attempt(submission)
            second = await policy.resubmit(submission)
            return submission, first, second

        submission, first, second = _run_policy(fake_hec, settings_factory(), scenario)
        assert submission.attempts == 2
        assert (first.attempt, second.attempt) == (1, 2)
        assert submission.handle is second
        fields = [e["body"]["fields"] for e in fake_hec.events]
        assert [f[MARKER_ATTEMPT] for f in fields] == [1, 2]
        assert {f[MARKER_SUBMISSION] for f in fields} == {submission.submission_id}
        assert {f[MARKER_FIRST_SENT] for f in fields} == {1718000000.0}

    def test_resend_on_same_channel_swaps_expired_handle(self, fake_hec, settings_factory):
        async def scenario(policy, tracker, registry):
            submission = Submission({"event": "hello"}, asyncio.get_running_loop().create_future())
            old = await policy.send_attempt(submission)
            tracker.sweep_expired(now=old.sent_at + 1000, per_handle_timeout=5)
            new = await policy.resubmit(submission, expired=old)
            return old, new, tracker

        old, new, tracker = _run_policy(fake_hec, settings_factory(), scenario, max_per_channel=1)
        assert new.channel_id == old.channel_id
        assert tracker.get(old.channel_id, old.handle_id) is None
        assert tracker.total_occupancy == 1

    def test_resend_after_channel_loss_uses_new_channel(self, fake_hec, settings_factory):
        async def scenario(policy, tracker, registry):
            submission = Submission({"event": "hello"}, asyncio.get_running_loop().create_future())
            old = await policy.send_attempt(submission)
            registry.invalidate(registry.get(old.channel_id))
            tracker.expire_channel(old.channel_id)
            new = await policy.resubmit(submission, expired=old)
            return old, new

        old, new = _run_policy(fake_hec, settings_factory(), scenario)
        assert new.channel_id != old.channel_id
        assert new.handle_id == 0
        assert new.attempt == 2

    def test_capacity_error_does_not_consume_an_attempt(self, fake_hec, settings_factory):
        async def scenario(policy, tracker, registry):
            submission = Submission({"event": "hello"}, asyncio.get_running_loop().create_future())
            await policy.send_attempt(submission)
            with pytest.raises(CapacityError):
                await policy.resubmit(submission)
            return submission.attempts

        assert _run_policy(fake_hec, settings_factory(), scenario, max_per_channel=1) == 1
        assert len(fake_hec.events) == 1
