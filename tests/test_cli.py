"""
test_cli.py — Tests for the hec-ack command line (smoke / send).

Run with:
    pytest tests/test_cli.py -v
"""

from __future__ import annotations

import logging
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from hec_ack.cli import EXIT_CONFIG, EXIT_OK, EXIT_UNCONFIRMED, main
from hec_ack.delivery.client import AckingClient

BASE_ARGS = ["--url", "https://hec.test", "--token", "test-token", "--poll-interval", "0.01"]


@pytest.fixture(autouse=True)
def restore_logging():
    """setup_logging() replaces root handlers with one bound to the runner's stdout."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _invoke(fake_hec, args, **kwargs):
    def build(config):
        return AckingClient(config, transport=fake_hec.transport())

    with patch("hec_ack.cli._build_client", build):
        return CliRunner().invoke(main, args, **kwargs)


class TestSmoke:

    def test_all_events_confirmed(self, fake_hec):
        result = _invoke(fake_hec, BASE_ARGS + ["smoke"])
        assert result.exit_code == EXIT_OK, result.output
        assert "Indexing status: 3/3 events confirmed" in result.output
        assert result.output.count("[SUCCESS]") == 3
        assert len(fake_hec.channels()) == 1

    def test_count_option(self, fake_hec):
        result = _invoke(fake_hec, BASE_ARGS + ["smoke", "--count", "5", "--index", "test"])
        assert result.exit_code == EXIT_OK, result.output
        assert {e["body"]["index"] for e in fake_hec.events} == {"test"}
        assert len(fake_hec.events) == 5

    def test_rejected_token_exits_with_config_code(self, hec_factory):
        result = _invoke(hec_factory(token="rotated"), BASE_ARGS + ["smoke"])
        assert result.exit_code == EXIT_CONFIG


class TestSend:

    def test_unconfirmed_event(self, fake_hec):
        fake_hec.auto_ack = False
        result = _invoke(fake_hec, BASE_ARGS + ["send", "hi", "--timeout", "0.2"])
        assert result.exit_code == EXIT_UNCONFIRMED
        assert "[PENDING]" in result.output
        assert "Indexing status: 0/1 events confirmed" in result.output

    def test_metadata_options(self, fake_hec):
        result = _invoke(
            fake_hec,
            BASE_ARGS + ["send", "deploy finished", "--sourcetype", "deploy", "--host", "web-01"],
        )
        assert result.exit_code == EXIT_OK, result.output
        body = fake_hec.events[0]["body"]
        assert body["event"] == "deploy finished"
        assert body["sourcetype"] == "deploy"
        assert body["host"] == "web-01"


class TestConfiguration:

    def test_missing_token(self, fake_hec):
        runner = CliRunner()
        with runner.isolated_filesystem():
            with patch(
                "hec_ack.cli._build_client",
                lambda config: AckingClient(config, transport=fake_hec.transport()),
            ):
                result = runner.invoke(
                    main, ["--url", "https://hec.test", "smoke"], env={"HEC_TOKEN": ""}
                )
        assert result.exit_code == EXIT_CONFIG
        assert fake_hec.event_requests == 0

    def test_invalid_setting(self, fake_hec):
        result = _invoke(fake_hec, ["--token", "t", "--poll-interval", "-1", "smoke"])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
