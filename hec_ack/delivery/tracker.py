"""
tracker.py — Acknowledgment Tracker: per-channel bookkeeping of ackIds.

Each channel owns a PendingSet (ackId → DeliveryHandle) behind its own
lock. Capacity is accounted in two places:

    per channel   len(handles) + reserved  ≤ MAX_PENDING_PER_CHANNEL
    aggregate     Σ over channels          ≤ MAX_PENDING_TOTAL

A slot is reserved *before* the HTTP send and converted into a handle on
registration, so concurrent sends cannot overshoot the ceiling between
"check" and "register". Replacing an EXPIRED handle on the same channel
swaps it out in one critical section and needs no new slot.

Locks are never held across an await; every method here is synchronous.
Lock order (when nested): registry → channel set → aggregate.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional

from hec_ack.core.errors import CapacityError, DuplicateHandleError
from hec_ack.delivery.models import DeliveryHandle, HandleState

logger = logging.getLogger(__name__)


@dataclass
class PendingSet:
    """Outstanding handles for one channel."""
    channel_id: str
    handles: Dict[int, DeliveryHandle] = field(default_factory=dict)
    reserved: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def occupancy(self) -> int:
        return len(self.handles) + self.reserved

    def pending_ids(self) -> List[int]:
        return sorted(
            hid for hid, h in self.handles.items() if h.state == HandleState.PENDING
        )


class AckTracker:
    """
    Owns every DeliveryHandle until it is acknowledged or replaced.

    Parameters
    ----------
    max_per_channel : int
    max_total : int
    on_release : callable() -> None, optional
        Called (outside any lock) whenever capacity is freed, so a
        waiting submitter can retry.
    """

    def __init__(
        self,
        max_per_channel: int,
        max_total: int,
        on_release: Optional[Callable[[], None]] = None,
    ):
        self.max_per_channel = max_per_channel
        self.max_total = max_total
        self.on_release = on_release
        self._sets: Dict[str, PendingSet] = {}
        self._sets_lock = threading.Lock()
        self._total = 0
        self._total_lock = threading.Lock()

    # ── internals ──

    def _set_for(self, channel_id: str, create: bool = True) -> Optional[PendingSet]:
        with self._sets_lock:
            pending = self._sets.get(channel_id)
            if pending is None and create:
                pending = PendingSet(channel_id=channel_id)
                self._sets[channel_id] = pending
            return pending

    def _adjust_total(self, delta: int) -> None:
        with self._total_lock:
            self._total += delta

    def _notify_release(self) -> None:
        if self.on_release is not None:
            self.on_release()

    # ── capacity ──

    def has_capacity(self, channel_id: str) -> bool:
        pending = self._set_for(channel_id, create=False)
        occupancy = pending.occupancy if pending else 0
        with self._total_lock:
            total = self._total
        return occupancy < self.max_per_channel and total < self.max_total

    def reserve(self, channel_id: str) -> None:
        """Claim one slot on `channel_id` or raise CapacityError."""
        pending = self._set_for(channel_id)
        with pending.lock:
            if pending.occupancy >= self.max_per_channel:
                raise CapacityError(
                    f"Channel {channel_id} has {pending.occupancy} outstanding handles",
                    channel_id=channel_id,
                    limit=self.max_per_channel,
                )
            with self._total_lock:
                if self._total >= self.max_total:
                    raise CapacityError(
                        f"{self._total} outstanding handles across all channels",
                        limit=self.max_total,
                    )
                self._total += 1
            pending.reserved += 1

    def cancel_reservation(self, channel_id: str) -> None:
        pending = self._set_for(channel_id, create=False)
        if pending is None:
            return
        with pending.lock:
            if pending.reserved <= 0:
                return
            pending.reserved -= 1
            self._adjust_total(-1)
        self._notify_release()

    # ── state transitions ──

    def register_pending(
        self,
        channel_id: str,
        handle: DeliveryHandle,
        replaces: Optional[DeliveryHandle] = None,
    ) -> None:
        """
        Track a freshly issued handle.

        Consumes one reservation, or swaps out `replaces` when it lives on
        the same channel. Raises DuplicateHandleError if the ackId is
        already live on this channel (the reservation is kept for the
        caller to cancel).
        """
        pending = self._set_for(channel_id)
        with pending.lock:
            existing = pending.handles.get(handle.handle_id)
            swapping = (
                replaces is not None
                and replaces.channel_id == channel_id
                and pending.handles.get(replaces.handle_id) is replaces
            )
            if existing is not None and not (swapping and existing is replaces):
                raise DuplicateHandleError(channel_id, handle.handle_id)
            if swapping:
                del pending.handles[replaces.handle_id]
            elif pending.reserved > 0:
                pending.reserved -= 1
            else:
                with self._total_lock:
                    if pending.occupancy >= self.max_per_channel or self._total >= self.max_total:
                        raise CapacityError(
                            f"No capacity to track ackId {handle.handle_id}",
                            channel_id=channel_id,
                        )
                    self._total += 1
            handle.state = HandleState.PENDING
            pending.handles[handle.handle_id] = handle
        logger.debug(
            "Tracking ackId %s (attempt %d)", handle.handle_id, handle.attempt,
            extra={"channel_id": channel_id, "handle_id": handle.handle_id, "attempt": handle.attempt},
        )

    def apply_ack_results(
        self, channel_id: str, results: Mapping[int, bool]
    ) -> List[DeliveryHandle]:
        """
        Confirm and evict every PENDING handle whose id maps to True.

        False and absent ids stay PENDING; ids of EXPIRED or unknown
        handles are ignored. Returns the confirmed handles.
        """
        pending = self._set_for(channel_id, create=False)
        if pending is None:
            return []
        confirmed: List[DeliveryHandle] = []
        with pending.lock:
            for handle_id, acked in results.items():
                if not acked:
                    continue
                handle = pending.handles.get(handle_id)
                if handle is None or handle.state != HandleState.PENDING:
                    continue
                handle.state = HandleState.ACKED
                del pending.handles[handle_id]
                confirmed.append(handle)
            if confirmed:
                self._adjust_total(-len(confirmed))
        if confirmed:
            self._notify_release()
        return confirmed

    def sweep_expired(self, now: float, per_handle_timeout: float) -> List[DeliveryHandle]:
        """
        Mark every PENDING handle older than `per_handle_timeout` EXPIRED.

        Expired handles stay in their PendingSet until a replacement is
        registered (`replaces=`) or they are released.
        """
        expired: List[DeliveryHandle] = []
        with self._sets_lock:
            sets = list(self._sets.values())
        for pending in sets:
            with pending.lock:
                for handle in pending.handles.values():
                    if handle.state == HandleState.PENDING and handle.age(now) > per_handle_timeout:
                        handle.state = HandleState.EXPIRED
                        expired.append(handle)
        for handle in expired:
            logger.info(
                "ackId %s expired after %.1fs without confirmation",
                handle.handle_id, handle.age(now),
                extra={"channel_id": handle.channel_id, "handle_id": handle.handle_id},
            )
        return expired

    def expire_channel(self, channel_id: str) -> List[DeliveryHandle]:
        """
        Channel invalidated: expire every PENDING handle and drop the set.

        Reservations on the channel are voided too; their senders will
        find the channel inactive and cancel harmlessly.
        """
        with self._sets_lock:
            pending = self._sets.pop(channel_id, None)
        if pending is None:
            return []
        with pending.lock:
            expired = [h for h in pending.handles.values() if h.state == HandleState.PENDING]
            for handle in expired:
                handle.state = HandleState.EXPIRED
            freed = len(pending.handles) + pending.reserved
            pending.handles.clear()
            pending.reserved = 0
            self._adjust_total(-freed)
        if freed:
            self._notify_release()
        return expired

    def release(self, handle: DeliveryHandle) -> bool:
        """Drop a handle that will not be replaced (terminal failure / shutdown)."""
        pending = self._set_for(handle.channel_id, create=False)
        if pending is None:
            return False
        with pending.lock:
            if pending.handles.get(handle.handle_id) is not handle:
                return False
            del pending.handles[handle.handle_id]
            self._adjust_total(-1)
        self._notify_release()
        return True

    def drop_channel(self, channel_id: str) -> None:
        """Forget an empty channel's PendingSet (after retirement)."""
        with self._sets_lock:
            pending = self._sets.get(channel_id)
            if pending is not None and pending.occupancy == 0:
                del self._sets[channel_id]

    # ── queries ──

    def pending_ids(self, channel_id: str) -> List[int]:
        pending = self._set_for(channel_id, create=False)
        if pending is None:
            return []
        with pending.lock:
            return pending.pending_ids()

    def get(self, channel_id: str, handle_id: int) -> Optional[DeliveryHandle]:
        pending = self._set_for(channel_id, create=False)
        if pending is None:
            return None
        with pending.lock:
            return pending.handles.get(handle_id)

    def occupancy(self, channel_id: str) -> int:
        """Handles plus in-flight reservations on one channel."""
        pending = self._set_for(channel_id, create=False)
        if pending is None:
            return 0
        with pending.lock:
            return pending.occupancy

    def pending_count(self, channel_id: Optional[str] = None) -> int:
        """Tracked handles on one channel, or across all channels."""
        if channel_id is not None:
            pending = self._set_for(channel_id, create=False)
            if pending is None:
                return 0
            with pending.lock:
                return len(pending.handles)
        with self._sets_lock:
            sets = list(self._sets.values())
        total = 0
        for pending in sets:
            with pending.lock:
                total += len(pending.handles)
        return total

    @property
    def total_occupancy(self) -> int:
        with self._total_lock:
            return self._total

    def channels_with_pending(self) -> List[str]:
        with self._sets_lock:
            sets = list(self._sets.values())
        result = []
        for pending in sets:
            with pending.lock:
                if pending.pending_ids():
                    result.append(pending.channel_id)
        return result

    def all_handles(self) -> List[DeliveryHandle]:
        with self._sets_lock:
            sets = list(self._sets.values())
        handles: List[DeliveryHandle] = []
        for pending in sets:
            with pending.lock:
                handles.extend(pending.handles.values())
        return handles

    def snapshot(self) -> Dict[str, object]:
        with self._sets_lock:
            sets = list(self._sets.values())
        channels = {}
        for pending in sets:
            with pending.lock:
                states = [h.state for h in pending.handles.values()]
                channels[pending.channel_id] = {
                    "pending": states.count(HandleState.PENDING),
                    "expired": states.count(HandleState.EXPIRED),
                    "reserved": pending.reserved,
                }
        return {
            "total_occupancy": self.total_occupancy,
            "max_per_channel": self.max_per_channel,
            "max_total": self.max_total,
            "channels": channels,
        }
