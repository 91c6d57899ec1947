"""
Shared fixtures: an in-process HTTP Event Collector on httpx.MockTransport.

FakeHEC models the parts of HEC the client depends on:
    • token check (403, code 4)
    • per-channel ackId counters starting at `start_ack_id`
    • /ack status: an ackId reads true once it has been queried
      `polls_to_index` times (or confirmed by hand), then is forgotten
    • scripted failures for the next N event / ack requests
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx
import pytest

from hec_ack.core.config import Settings

TEST_TOKEN = "test-token"
EVENT_PATH = "/services/collector/event"
ACK_PATH = "/services/collector/ack"


class FakeHEC:
    def __init__(self, token: str = TEST_TOKEN, start_ack_id: int = 0):
        self.token = token
        self.start_ack_id = start_ack_id
        self.auto_ack = True
        self.polls_to_index = 1
        self.invalid_channels: Set[str] = set()
        self.lost_acks: Set[int] = set()

        self.events: List[Dict[str, Any]] = []
        self.event_requests = 0
        self.ack_requests: List[Tuple[str, List[int]]] = []
        self.ack_responses: List[Dict[str, bool]] = []

        self._next_id: Dict[str, int] = {}
        self._outstanding: Dict[str, Set[int]] = defaultdict(set)
        self._confirmed: Dict[str, Set[int]] = defaultdict(set)
        self._query_counts: Dict[Tuple[str, int], int] = defaultdict(int)
        self._event_script: List[Any] = []
        self._ack_script: List[Any] = []

    # ── scripting ──

    def fail_events(self, status: int, body: Optional[dict] = None, times: int = 1) -> None:
        """Answer the next `times` event requests with `status`."""
        self._event_script.extend([(status, body or {})] * times)

    def raise_on_events(self, exc: Exception, times: int = 1) -> None:
        self._event_script.extend([exc] * times)

    def fail_acks(self, status: int, body: Optional[dict] = None, times: int = 1) -> None:
        self._ack_script.extend([(status, body or {})] * times)

    def confirm(self, channel_id: str, ack_id: int) -> None:
        self._confirmed[channel_id].add(ack_id)

    def issue(self, channel_id: str, ack_id: int) -> None:
        """Treat `ack_id` as issued on `channel_id` without an event request."""
        self._outstanding[channel_id].add(ack_id)

    def channels(self) -> List[str]:
        seen: List[str] = []
        for event in self.events:
            if event["channel"] not in seen:
                seen.append(event["channel"])
        return seen

    # ── transport ──

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.headers.get("Authorization") != f"Splunk {self.token}":
            return httpx.Response(403, json={"text": "Invalid token", "code": 4})
        if request.url.path == EVENT_PATH:
            return self._handle_event(request)
        if request.url.path == ACK_PATH:
            return self._handle_ack(request)
        return httpx.Response(404, json={"text": "The requested URL was not found", "code": 404})

    @staticmethod
    def _scripted(script: List[Any]) -> Optional[httpx.Response]:
        if not script:
            return None
        item = script.pop(0)
        if isinstance(item, Exception):
            raise item
        status, body = item
        return httpx.Response(status, json=body)

    def _handle_event(self, request: httpx.Request) -> httpx.Response:
        self.event_requests += 1
        channel = request.headers.get("X-Splunk-Request-Channel") or request.url.params.get("channel")
        if not channel:
            return httpx.Response(400, json={"text": "Data channel is missing", "code": 10})
        if channel in self.invalid_channels:
            return httpx.Response(400, json={"text": "Invalid data channel", "code": 11})
        scripted = self._scripted(self._event_script)
        if scripted is not None:
            return scripted

        ack_id = self._next_id.get(channel, self.start_ack_id)
        self._next_id[channel] = ack_id + 1
        self._outstanding[channel].add(ack_id)
        self.events.append({
            "channel": channel,
            "ack_id": ack_id,
            "body": json.loads(request.content),
            "params": dict(request.url.params),
        })
        return httpx.Response(200, json={"text": "Success", "code": 0, "ackId": ack_id})

    def _handle_ack(self, request: httpx.Request) -> httpx.Response:
        channel = request.url.params.get("channel")
        if not channel:
            return httpx.Response(400, json={"text": "Data channel is missing", "code": 10})
        if channel in self.invalid_channels:
            return httpx.Response(400, json={"text": "Invalid data channel", "code": 11})
        scripted = self._scripted(self._ack_script)
        if scripted is not None:
            return scripted

        ids = json.loads(request.content)["acks"]
        self.ack_requests.append((channel, list(ids)))
        statuses: Dict[str, bool] = {}
        for ack_id in ids:
            self._query_counts[(channel, ack_id)] += 1
            statuses[str(ack_id)] = self._is_indexed(channel, ack_id)
            if statuses[str(ack_id)]:
                self._outstanding[channel].discard(ack_id)
                self._confirmed[channel].discard(ack_id)
        self.ack_responses.append({int(k): v for k, v in statuses.items()})
        return httpx.Response(200, json={"acks": statuses})

    def _is_indexed(self, channel: str, ack_id: int) -> bool:
        if ack_id in self._confirmed[channel]:
            return True
        if ack_id not in self._outstanding[channel] or ack_id in self.lost_acks:
            return False
        return self.auto_ack and self._query_counts[(channel, ack_id)] >= self.polls_to_index


def make_settings(**overrides: Any) -> Settings:
    """Fast timings for tests; every value can be overridden."""
    values: Dict[str, Any] = {
        "HEC_URL": "https://hec.test",
        "HEC_TOKEN": TEST_TOKEN,
        "POLL_INTERVAL_SECONDS": 0.01,
        "SWEEP_INTERVAL_SECONDS": 0.01,
        "ACK_TIMEOUT_SECONDS": 5.0,
        "CHANNEL_IDLE_SECONDS": 300.0,
        "SEND_MAX_RETRIES": 1,
        "SEND_BACKOFF_BASE_SECONDS": 0.0,
        "BACKPRESSURE_TIMEOUT_SECONDS": 2.0,
        "SHUTDOWN_FLUSH": True,
    }
    values.update(overrides)
    return Settings(**values)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll `predicate` until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(interval)


@pytest.fixture
def fake_hec() -> FakeHEC:
    return FakeHEC()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture
def hec_factory():
    return FakeHEC
