"""
hec_ack — Reliable HTTP Event Collector ingestion with indexer acknowledgment.

Sub-packages:
    core/       — Configuration, logging, errors, health, middleware
    delivery/   — Channels, sender, ack tracker, poller, resend policy, client
    api/        — FastAPI relay routes and schemas
"""

from .delivery.client import AckingClient, build_envelope
from .delivery.models import DeliveryResult, DeliveryStatus, DeliveryTicket, ShutdownReport

__version__ = "1.0.0"

__all__ = [
    "AckingClient",
    "build_envelope",
    "DeliveryResult",
    "DeliveryStatus",
    "DeliveryTicket",
    "ShutdownReport",
]
