"""
channels.py — Channel Registry: allocate, reuse and retire channel ids.

HEC scopes ackIds to the `X-Splunk-Request-Channel` value, so a channel
must belong to exactly one logical sender. The registry keeps at most one
ACTIVE channel; a replacement is created lazily on the next acquire after
the current one is retired (idle) or invalidated (collector rejected it,
or the collector expired it on its side).

A channel with unacknowledged handles is never retired: the pending-count
probe is injected by the owner (the tracker knows the counts, the
registry does not).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

from hec_ack.delivery.models import Channel, ChannelState, new_channel_id

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """
    Owns channel identity and lifecycle for one logical sender.

    Parameters
    ----------
    pending_count : callable(channel_id) -> int
        Number of outstanding handles on a channel.
    clock : callable() -> float
        Monotonic time source.
    """

    def __init__(
        self,
        pending_count: Optional[Callable[[str], int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._pending_count = pending_count or (lambda channel_id: 0)
        self._clock = clock
        self._lock = threading.Lock()
        self._active: Optional[Channel] = None
        self._open: Dict[str, Channel] = {}

    @property
    def active(self) -> Optional[Channel]:
        return self._active

    def get(self, channel_id: str) -> Optional[Channel]:
        return self._open.get(channel_id)

    def acquire_channel(self) -> Channel:
        """Return the active channel, creating one if there is none."""
        with self._lock:
            if self._active is not None and self._active.is_active:
                return self._active
            now = self._clock()
            channel = Channel(id=new_channel_id(), created_at=now, last_activity_at=now)
            self._active = channel
            self._open[channel.id] = channel
        logger.info("Opened channel %s", channel.id, extra={"channel_id": channel.id})
        return channel

    def mark_activity(self, channel: Channel) -> None:
        with self._lock:
            channel.last_activity_at = self._clock()

    def retire_if_idle(self, now: float, idle_threshold: float) -> bool:
        """
        Retire the active channel if it has been idle longer than
        `idle_threshold` seconds and nothing is pending on it.
        """
        with self._lock:
            channel = self._active
            if channel is None or not channel.is_active:
                return False
            if channel.idle_for(now) <= idle_threshold:
                return False
            if self._pending_count(channel.id) > 0:
                return False
            channel.state = ChannelState.RETIRED
            self._active = None
            self._open.pop(channel.id, None)
        logger.info(
            "Retired idle channel %s after %.1fs",
            channel.id, channel.idle_for(now),
            extra={"channel_id": channel.id},
        )
        return True

    def invalidate(self, channel: Channel) -> bool:
        """
        Discard a channel the collector rejected.

        Returns False if it was already invalidated (several in-flight
        requests can report the same rejection).
        """
        with self._lock:
            if channel.state == ChannelState.INVALIDATED:
                return False
            channel.state = ChannelState.INVALIDATED
            if self._active is channel:
                self._active = None
            self._open.pop(channel.id, None)
        logger.warning("Channel %s invalidated by collector", channel.id, extra={"channel_id": channel.id})
        return True

    def close_all(self) -> int:
        """Retire every known channel (shutdown). Returns how many were open."""
        with self._lock:
            channels = [c for c in self._open.values() if c.is_active]
            for channel in channels:
                channel.state = ChannelState.RETIRED
            self._active = None
            self._open.clear()
        return len(channels)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "active": self._active.to_dict() if self._active else None,
                "open_channels": len(self._open),
            }
