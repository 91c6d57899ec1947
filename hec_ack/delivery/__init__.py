"""
delivery — Acknowledged event delivery to an HTTP Event Collector.

Sub-modules:
    channels    — Channel Registry: one active channel per sender, retire / replace
    sender      — Event Sender: POST an event, capture its ackId
    tracker     — Ack Tracker: pending ackIds per channel, capacity ceilings
    poller      — Ack Poller: batch status queries until confirmed
    resend      — Resend Policy: attempt accounting and idempotency marker
    client      — AckingClient: submit() / shutdown() orchestration
    models      — Data structures shared across the system
"""
