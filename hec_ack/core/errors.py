"""
Centralised error handling — exception hierarchy, HEC response
classification, and FastAPI handlers for the status service.

Provides:
    • Domain-specific exception classes (one per failure class)
    • classify_response() — maps an HEC HTTP response onto the hierarchy
    • Consistent JSON error envelope, with Retry-After on capacity / shutdown
    • Automatic logging of unhandled errors

Failure classes:

    Class                 Retried by              Caller sees
    ──────────────────    ────────────────────    ──────────────────────
    AuthenticationError   never                   FATAL_AUTH
    TransportError        sender backoff / poll   nothing (unless exhausted)
    ProtocolError         resend policy           nothing (unless exhausted)
    ChannelInvalidError   channel replacement     nothing (unless exhausted)
    CapacityError         caller                  rejection at submit()
    EventRejectedError    never                   FAILED

Usage:
    from hec_ack.core.errors import AuthenticationError, classify_response

    error = classify_response(response, endpoint="/services/collector/event")
    if error is not None:
        raise error
"""

from __future__ import annotations

import logging
import traceback
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

if TYPE_CHECKING:
    import httpx
    from fastapi import FastAPI, Request

    from hec_ack.core.config import Settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class HECClientError(Exception):
    """Base exception for all client errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class AuthenticationError(HECClientError):
    """Token missing, invalid or disabled (401/403). Never retried."""

    def __init__(self, message: str = "HEC rejected the token", *, status_code: int = 401, **details: Any):
        super().__init__(
            message=message,
            status_code=status_code,
            error_code="AUTHENTICATION_FAILED",
            details=details,
        )


class TransportError(HECClientError):
    """Network-level failure or transient 5xx from the collector (502)."""

    def __init__(self, endpoint: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Transport failure on '{endpoint}': {message}",
            status_code=502,
            error_code="TRANSPORT_ERROR",
            details={"endpoint": endpoint, **details},
        )


class ProtocolError(HECClientError):
    """Successful HTTP status but unusable body (502)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=message,
            status_code=502,
            error_code="PROTOCOL_ERROR",
            details=details,
        )


class DuplicateHandleError(ProtocolError):
    """The collector issued an ackId that is already live on the channel."""

    def __init__(self, channel_id: str, handle_id: int):
        super().__init__(
            f"ackId {handle_id} already pending on channel {channel_id}",
            channel_id=channel_id,
            handle_id=handle_id,
        )
        self.error_code = "DUPLICATE_HANDLE"


class ChannelInvalidError(HECClientError):
    """The collector does not recognise (or no longer recognises) the channel (409)."""

    def __init__(self, channel_id: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Channel {channel_id} rejected: {message or 'invalid data channel'}",
            status_code=409,
            error_code="CHANNEL_INVALID",
            details={"channel_id": channel_id, **details},
        )


class CapacityError(HECClientError):
    """Outstanding-handle ceiling reached (429)."""

    def __init__(self, message: str = "Pending acknowledgment limit reached", **details: Any):
        super().__init__(
            message=message,
            status_code=429,
            error_code="CAPACITY_EXCEEDED",
            details=details,
        )


class EventRejectedError(HECClientError):
    """The collector refused the event itself (400); resending cannot help."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=message,
            status_code=400,
            error_code="EVENT_REJECTED",
            details=details,
        )


class DeliveryFailedError(HECClientError):
    """A submission reached a terminal non-confirmed state (500)."""

    def __init__(self, submission_id: str, status: str, attempts: int, message: str = ""):
        super().__init__(
            message=(
                f"Submission {submission_id} {status} after {attempts} attempt(s)"
                + (f": {message}" if message else "")
            ),
            status_code=500,
            error_code="DELIVERY_FAILED",
            details={"submission_id": submission_id, "status": status, "attempts": attempts},
        )


class ClientClosedError(HECClientError):
    """submit() called after shutdown (503)."""

    def __init__(self, message: str = "Client has been shut down"):
        super().__init__(message=message, status_code=503, error_code="CLIENT_CLOSED")


class ConfigurationError(HECClientError):
    """Settings are missing or unusable (500)."""

    def __init__(self, message: str, *, setting: Optional[str] = None):
        super().__init__(
            message=message,
            status_code=500,
            error_code="CONFIGURATION_ERROR",
            details={"setting": setting} if setting else None,
        )


# ═══════════════════════════════════════════════════════════════════════════
# HEC Response Classification
# ═══════════════════════════════════════════════════════════════════════════

# HEC status codes carried in the JSON body as {"text": ..., "code": N}.
# Token codes (1-4) always arrive as 401/403; server busy (9) as 503.
HEC_CODE_CHANNEL_MISSING = 10
HEC_CODE_CHANNEL_INVALID = 11
HEC_CODE_ACK_DISABLED = 14

_CHANNEL_CODES = {HEC_CODE_CHANNEL_MISSING, HEC_CODE_CHANNEL_INVALID}


def _hec_body(response: "httpx.Response") -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def classify_response(
    response: "httpx.Response",
    *,
    endpoint: str,
    channel_id: Optional[str] = None,
) -> Optional[HECClientError]:
    """
    Map a non-2xx HEC response onto the exception hierarchy.

    Returns None for 2xx responses; body validation of successful
    responses is left to the caller.
    """
    status = response.status_code
    if 200 <= status < 300:
        return None

    body = _hec_body(response)
    hec_code = body.get("code")
    text = body.get("text") or response.reason_phrase or ""

    if status in (401, 403):
        return AuthenticationError(
            f"HEC authentication failed: {text}",
            status_code=status,
            hec_code=hec_code,
            endpoint=endpoint,
        )

    if status == 404 or (status == 400 and hec_code in _CHANNEL_CODES):
        return ChannelInvalidError(
            channel_id or "<none>", text, hec_code=hec_code, endpoint=endpoint
        )

    if status == 429 or status >= 500:
        return TransportError(endpoint, f"HTTP {status} {text}".strip(), status=status, hec_code=hec_code)

    if hec_code == HEC_CODE_ACK_DISABLED:
        text = f"{text} (indexer acknowledgment is disabled for this token)"
    return EventRejectedError(
        f"HEC rejected request with HTTP {status}: {text}",
        status=status,
        hec_code=hec_code,
        endpoint=endpoint,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Relay Error Responses
# ═══════════════════════════════════════════════════════════════════════════

# Seconds a relay caller should wait before retrying, by error code
RETRY_AFTER_SECONDS = {
    "CAPACITY_EXCEEDED": 5,
    "CLIENT_CLOSED": 30,
}


def error_body(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional["Request"] = None,
    *,
    include_request: bool = True,
) -> Dict[str, Any]:
    """The {"error": {...}} envelope shared by every relay error response."""
    error: Dict[str, Any] = {"code": error_code, "message": message, "status": status_code}
    if details:
        error["details"] = details
    if request is not None and include_request:
        error["path"] = str(request.url.path)
        error["method"] = request.method
    return {"error": error}


def relay_status(exc: HECClientError) -> Tuple[int, str]:
    """
    HTTP status and error code the relay answers with for `exc`.

    A rejected HEC token is the relay's own credential failing upstream,
    not the caller's, so it surfaces as 502 rather than 401/403.
    """
    if isinstance(exc, AuthenticationError):
        return 502, "UPSTREAM_AUTH_FAILED"
    return exc.status_code, exc.error_code


def register_error_handlers(app: "FastAPI", config: Optional["Settings"] = None) -> None:
    """Render HECClientError (and anything unexpected) as JSON envelopes."""
    from fastapi import Request
    from fastapi.responses import JSONResponse

    from hec_ack.core.config import settings as default_settings

    settings = config or default_settings

    @app.exception_handler(HECClientError)
    async def handle_client_error(request: Request, exc: HECClientError):
        status_code, error_code = relay_status(exc)
        level = logging.ERROR if status_code >= 500 else logging.WARNING
        logger.log(
            level, "Relay error [%s]: %s", error_code, exc.message,
            extra={"status_code": status_code},
        )
        headers = {}
        retry_after = RETRY_AFTER_SECONDS.get(error_code)
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
        return JSONResponse(
            status_code=status_code,
            content=error_body(
                status_code, error_code, exc.message, exc.details, request,
                include_request=not settings.is_production,
            ),
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical("Unhandled exception: %s\n%s", exc, traceback.format_exc())
        message = str(exc) if settings.is_development else "Internal server error"
        return JSONResponse(
            status_code=500,
            content=error_body(
                500, "INTERNAL_ERROR", message, request=request,
                include_request=not settings.is_production,
            ),
        )
