"""
test_config_errors.py — Tests for settings validation, HEC response
classification, result errors and structured logging.

Run with:
    pytest tests/test_config_errors.py -v
"""

from __future__ import annotations

import json
import logging

import httpx
import pytest
from pydantic import ValidationError

from hec_ack.core.config import Settings
from hec_ack.core.errors import (
    AuthenticationError,
    ChannelInvalidError,
    ConfigurationError,
    DeliveryFailedError,
    EventRejectedError,
    TransportError,
    classify_response,
    relay_status,
)
from hec_ack.core.logging_config import (
    JSONFormatter,
    PrettyFormatter,
    bind_log_context,
    get_log_context,
    set_log_context,
)
from hec_ack.delivery.client import AckingClient
from hec_ack.delivery.models import DeliveryResult, DeliveryStatus


# ═══════════════════════════════════════════════════════════════════════════
# Settings
# ═══════════════════════════════════════════════════════════════════════════

class TestSettings:

    def test_validators_normalise_modes(self, settings_factory):
        settings = settings_factory(CHANNEL_TRANSPORT="QUERY", BACKPRESSURE_MODE="Reject")
        assert settings.CHANNEL_TRANSPORT == "query"
        assert settings.BACKPRESSURE_MODE == "reject"

    @pytest.mark.parametrize("overrides", [
        {"BACKPRESSURE_MODE": "drop"},
        {"CHANNEL_TRANSPORT": "cookie"},
        {"POLL_INTERVAL_SECONDS": 0},
        {"ACK_TIMEOUT_SECONDS": -1},
        {"MAX_PENDING_PER_CHANNEL": 0},
        {"MAX_ATTEMPTS": 0},
        {"SEND_MAX_RETRIES": -1},
    ])
    def test_invalid_values_rejected(self, settings_factory, overrides):
        with pytest.raises(ValidationError):
            settings_factory(**overrides)

    def test_base_url_strips_trailing_slash(self, settings_factory):
        assert settings_factory(HEC_URL="https://hec.example.com:8088/").base_url == "https://hec.example.com:8088"

    def test_missing_token(self, settings_factory):
        with pytest.raises(ConfigurationError) as info:
            settings_factory(HEC_TOKEN=None).validate_for_sending()
        assert info.value.details == {"setting": "HEC_TOKEN"}

    def test_bad_url(self, settings_factory):
        with pytest.raises(ConfigurationError):
            settings_factory(HEC_URL="hec.example.com:8088").validate_for_sending()

    def test_client_refuses_unusable_settings(self, settings_factory):
        with pytest.raises(ConfigurationError):
            AckingClient(settings_factory(HEC_TOKEN=None))

    def test_explicit_values_win(self):
        settings = Settings(HEC_TOKEN="abc", MAX_PENDING_TOTAL=7, _env_file=None)
        assert settings.HEC_TOKEN == "abc"
        assert settings.MAX_PENDING_TOTAL == 7
        assert settings.CHANNEL_HEADER == "X-Splunk-Request-Channel"


# ═══════════════════════════════════════════════════════════════════════════
# Response classification
# ═══════════════════════════════════════════════════════════════════════════

def _classify(status, body=None):
    response = httpx.Response(status, json=body if body is not None else {})
    return classify_response(response, endpoint="/services/collector/event", channel_id="ch-1")


class TestClassifyResponse:

    def test_success_is_not_an_error(self):
        assert _classify(200, {"text": "Success", "code": 0, "ackId": 1}) is None

    def test_token_failures(self):
        for status, code in ((401, 2), (403, 4), (403, 1)):
            error = _classify(status, {"text": "Invalid token", "code": code})
            assert isinstance(error, AuthenticationError)
            assert error.details["hec_code"] == code

    def test_channel_failures(self):
        for status, body in ((400, {"code": 10}), (400, {"code": 11}), (404, {})):
            error = _classify(status, body)
            assert isinstance(error, ChannelInvalidError)
            assert error.details["channel_id"] == "ch-1"

    def test_transient_failures(self):
        for status in (429, 500, 503):
            assert isinstance(_classify(status, {"text": "Server is busy", "code": 9}), TransportError)

    def test_event_rejections(self):
        for status, body in ((400, {"text": "Invalid data format", "code": 6}), (413, {})):
            assert isinstance(_classify(status, body), EventRejectedError)

    def test_non_json_error_body(self):
        error = classify_response(
            httpx.Response(502, text="<html>Bad Gateway</html>"), endpoint="/services/collector/ack"
        )
        assert isinstance(error, TransportError)
        assert error.details["endpoint"] == "/services/collector/ack"

    def test_relay_answers_upstream_token_failure_as_bad_gateway(self):
        assert relay_status(_classify(403, {"text": "Invalid token", "code": 4})) == (502, "UPSTREAM_AUTH_FAILED")

    def test_relay_keeps_status_of_other_errors(self):
        error = _classify(400, {"text": "Invalid data format", "code": 6})
        assert relay_status(error) == (error.status_code, error.error_code)


# ═══════════════════════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════════════════════

class TestDeliveryResult:

    def test_confirmed_result_passes(self):
        result = DeliveryResult("s1", DeliveryStatus.CONFIRMED, attempts=1, channel_id="c", handle_id=0)
        assert result.raise_for_status() is result

    def test_failed_result_raises(self):
        result = DeliveryResult("s1", DeliveryStatus.FAILED, attempts=3, error="timed out")
        with pytest.raises(DeliveryFailedError) as info:
            result.raise_for_status()
        assert info.value.details == {"submission_id": "s1", "status": "failed", "attempts": 3}
        assert "timed out" in info.value.message

    def test_to_dict(self):
        result = DeliveryResult("s1", DeliveryStatus.UNCONFIRMED, attempts=1)
        assert result.to_dict()["status"] == "unconfirmed"


# ═══════════════════════════════════════════════════════════════════════════
# Logging
# ═══════════════════════════════════════════════════════════════════════════

class TestLogging:

    def test_json_formatter_lifts_delivery_fields(self):
        record = logging.makeLogRecord({
            "name": "hec_ack.delivery.sender",
            "levelname": "INFO",
            "msg": "Event accepted with ackId %s",
            "args": (7,),
            "channel_id": "ch-1",
            "handle_id": 7,
        })
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Event accepted with ackId 7"
        assert entry["channel_id"] == "ch-1"
        assert entry["handle_id"] == 7
        assert "attempt" not in entry

    def test_context_is_included(self):
        set_log_context(request_id="abc123")
        try:
            bind_log_context(submission_id="s1")
            record = logging.makeLogRecord({"msg": "hello", "levelname": "INFO"})
            entry = json.loads(JSONFormatter().format(record))
            assert entry["context"] == {"request_id": "abc123", "submission_id": "s1"}
        finally:
            set_log_context()
        assert get_log_context() == {}

    def test_pretty_formatter_tags_channel_and_ackid(self):
        record = logging.makeLogRecord({
            "name": "hec_ack.delivery.poller",
            "levelname": "INFO",
            "msg": "Polled",
            "channel_id": "1b2c3d4e-0000",
            "handle_id": 7,
        })
        assert "[ch 1b2c3d4e #7]" in PrettyFormatter().format(record)

    def test_log_format_setting(self, settings_factory):
        assert settings_factory(LOG_FORMAT="JSON").LOG_FORMAT == "json"
        with pytest.raises(ValidationError):
            settings_factory(LOG_FORMAT="xml")
