"""
Command-line entry points.

Usage:
    hec-ack smoke                       # 3 test events, wait for indexing
    hec-ack smoke --count 10 --timeout 120
    hec-ack send "deploy finished" --sourcetype deploy
    hec-ack serve --port 8000           # HTTP relay

Exit codes (smoke / send):
    0  every event confirmed by the indexer
    1  at least one event failed or was not confirmed in time
    2  configuration or authentication error
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import click

from hec_ack.core.config import Settings
from hec_ack.core.errors import AuthenticationError, ConfigurationError, HECClientError
from hec_ack.core.logging_config import setup_logging
from hec_ack.delivery.client import AckingClient
from hec_ack.delivery.models import DeliveryResult, DeliveryStatus

EXIT_OK = 0
EXIT_UNCONFIRMED = 1
EXIT_CONFIG = 2


def _load_settings(overrides: Dict[str, Any]) -> Settings:
    try:
        return Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValueError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}")


def _build_client(config: Settings) -> AckingClient:
    return AckingClient(config)


def _fail(message: str, code: int) -> None:
    click.secho(f"[ERROR] {message}", fg="red", err=True)
    raise SystemExit(code)


async def _send_events(
    config: Settings, events: List[Any], timeout: float, meta: Dict[str, Any]
) -> List[Optional[DeliveryResult]]:
    """Submit every event on one channel, then wait for all outcomes."""
    async with _build_client(config) as client:
        tickets = []
        for i, event in enumerate(events, start=1):
            ticket = await client.submit(event, **meta)
            click.echo(f"[INFO] Event {i}: submitted ({ticket.submission_id[:12]})")
            tickets.append(ticket)

        channel = client.registry.active
        if channel is not None:
            click.echo(f"[INFO] Channel: {channel.id}")
        click.echo(f"[INFO] Waiting up to {timeout:.0f}s for indexer acknowledgment...")

        done, _ = await asyncio.wait([t.future for t in tickets], timeout=timeout)
        return [t.result() if t.future in done else None for t in tickets]


def _report(results: List[Optional[DeliveryResult]]) -> int:
    confirmed = 0
    for i, result in enumerate(results, start=1):
        if result is None:
            click.secho(f"[PENDING] Event {i}: not confirmed before timeout", fg="yellow")
            continue
        if result.confirmed:
            confirmed += 1
            click.secho(
                f"[SUCCESS] Event {i}: ackId {result.handle_id} indexed "
                f"(attempt {result.attempts})",
                fg="green",
            )
        else:
            click.secho(
                f"[ERROR] Event {i}: {result.status.value} after {result.attempts} "
                f"attempt(s): {result.error or ''}",
                fg="red",
            )

    click.echo("")
    click.echo(f"Indexing status: {confirmed}/{len(results)} events confirmed")
    if any(r is not None and r.status == DeliveryStatus.FATAL_AUTH for r in results):
        return EXIT_CONFIG
    return EXIT_OK if confirmed == len(results) else EXIT_UNCONFIRMED


def _run(config: Settings, events: List[Any], timeout: float, meta: Dict[str, Any]) -> None:
    try:
        results = asyncio.run(_send_events(config, events, timeout, meta))
    except ConfigurationError as exc:
        _fail(exc.message, EXIT_CONFIG)
    except AuthenticationError as exc:
        _fail(exc.message, EXIT_CONFIG)
    except HECClientError as exc:
        _fail(exc.message, EXIT_UNCONFIRMED)
    raise SystemExit(_report(results))


# ═══════════════════════════════════════════════════════════════════════════
# Commands
# ═══════════════════════════════════════════════════════════════════════════

@click.group()
@click.option("--url", "hec_url", envvar="HEC_URL", default=None, help="HEC base URL.")
@click.option("--token", "hec_token", envvar="HEC_TOKEN", default=None, help="HEC token.")
@click.option("--insecure", is_flag=True, help="Skip TLS certificate verification.")
@click.option("--poll-interval", type=float, default=None, help="Seconds between ack polls.")
@click.option("--log-level", default=None, help="DEBUG | INFO | WARNING | ERROR.")
@click.pass_context
def main(
    ctx: click.Context,
    hec_url: Optional[str],
    hec_token: Optional[str],
    insecure: bool,
    poll_interval: Optional[float],
    log_level: Optional[str],
) -> None:
    """Reliable HEC ingestion with indexer acknowledgment."""
    config = _load_settings({
        "HEC_URL": hec_url,
        "HEC_TOKEN": hec_token,
        "VERIFY_TLS": False if insecure else None,
        "POLL_INTERVAL_SECONDS": poll_interval,
        "LOG_LEVEL": log_level,
    })
    setup_logging(config)
    ctx.obj = config


@main.command()
@click.option("--count", type=click.IntRange(min=1), default=3, show_default=True)
@click.option("--timeout", type=float, default=60.0, show_default=True,
              help="Seconds to wait for acknowledgment.")
@click.option("--index", default=None)
@click.option("--sourcetype", default=None)
@click.pass_obj
def smoke(config: Settings, count: int, timeout: float, index: Optional[str], sourcetype: Optional[str]) -> None:
    """Send COUNT test events and verify the indexer confirms each one."""
    click.echo(f"[INFO] Sending {count} test events to {config.base_url}")
    events = [f"Test event {i} from hec-ack smoke" for i in range(1, count + 1)]
    _run(config, events, timeout, {"index": index, "sourcetype": sourcetype})


@main.command()
@click.argument("message")
@click.option("--timeout", type=float, default=60.0, show_default=True)
@click.option("--index", default=None)
@click.option("--sourcetype", default=None)
@click.option("--source", default=None)
@click.option("--host", default=None)
@click.pass_obj
def send(
    config: Settings,
    message: str,
    timeout: float,
    index: Optional[str],
    sourcetype: Optional[str],
    source: Optional[str],
    host: Optional[str],
) -> None:
    """Send one MESSAGE and wait for indexer acknowledgment."""
    meta = {"index": index, "sourcetype": sourcetype, "source": source, "host": host}
    _run(config, [message], timeout, meta)


@main.command()
@click.option("--host", "bind_host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.pass_obj
def serve(config: Settings, bind_host: str, port: int) -> None:
    """Run the HTTP relay (FastAPI) under uvicorn."""
    import uvicorn

    from hec_ack.main import create_app

    uvicorn.run(create_app(config), host=bind_host, port=port, log_config=None)


if __name__ == "__main__":
    main()
