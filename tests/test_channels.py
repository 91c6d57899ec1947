"""
test_channels.py — Tests for channel allocation, retirement and invalidation.

Run with:
    pytest tests/test_channels.py -v
"""

from __future__ import annotations

import uuid

from hec_ack.delivery.channels import ChannelRegistry
from hec_ack.delivery.models import ChannelState


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_registry(pending: int = 0, clock: FakeClock = None):
    counts = {"n": pending}
    clock = clock or FakeClock()
    registry = ChannelRegistry(pending_count=lambda channel_id: counts["n"], clock=clock)
    return registry, counts, clock


class TestAcquire:

    def test_creates_guid_channel_once(self):
        registry, _, _ = _make_registry()
        first = registry.acquire_channel()
        assert uuid.UUID(first.id)
        assert first.state == ChannelState.ACTIVE
        assert registry.acquire_channel() is first
        assert registry.active is first
        assert registry.get(first.id) is first

    def test_separate_registries_never_share_a_channel(self):
        a, _, _ = _make_registry()
        b, _, _ = _make_registry()
        assert a.acquire_channel().id != b.acquire_channel().id


class TestRetire:

    def test_idle_empty_channel_is_retired(self):
        registry, _, clock = _make_registry()
        channel = registry.acquire_channel()
        clock.advance(301)
        assert registry.retire_if_idle(clock(), idle_threshold=300) is True
        assert channel.state == ChannelState.RETIRED
        assert registry.active is None
        assert registry.acquire_channel().id != channel.id

    def test_channel_with_pending_handles_is_kept(self):
        registry, counts, clock = _make_registry(pending=1)
        channel = registry.acquire_channel()
        clock.advance(1000)
        assert registry.retire_if_idle(clock(), idle_threshold=300) is False
        counts["n"] = 0
        assert registry.retire_if_idle(clock(), idle_threshold=300) is True
        assert not channel.is_active

    def test_activity_resets_idle_timer(self):
        registry, _, clock = _make_registry()
        channel = registry.acquire_channel()
        clock.advance(200)
        registry.mark_activity(channel)
        clock.advance(200)
        assert registry.retire_if_idle(clock(), idle_threshold=300) is False
        assert channel.idle_for(clock()) == 200


class TestInvalidate:

    def test_invalidated_channel_is_replaced(self):
        registry, _, _ = _make_registry()
        channel = registry.acquire_channel()
        assert registry.invalidate(channel) is True
        assert channel.state == ChannelState.INVALIDATED
        assert registry.get(channel.id) is None
        replacement = registry.acquire_channel()
        assert replacement.id != channel.id

    def test_second_invalidation_is_reported_once(self):
        registry, _, _ = _make_registry()
        channel = registry.acquire_channel()
        assert registry.invalidate(channel) is True
        assert registry.invalidate(channel) is False

    def test_invalidating_old_channel_keeps_new_active(self):
        registry, _, clock = _make_registry()
        old = registry.acquire_channel()
        clock.advance(301)
        registry.retire_if_idle(clock(), 300)
        new = registry.acquire_channel()
        registry.invalidate(old)
        assert registry.active is new


class TestCloseAll:

    def test_close_all_retires_open_channels(self):
        registry, _, _ = _make_registry()
        channel = registry.acquire_channel()
        assert registry.close_all() == 1
        assert channel.state == ChannelState.RETIRED
        assert registry.snapshot() == {"active": None, "open_channels": 0}
