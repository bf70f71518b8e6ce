from __future__ import annotations

from typing import Any, Dict, Optional

import httpx


class ErrorCode:
    API_ERROR = "API_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    ABORTED = "ABORTED"
    TIMED_OUT = "TIMED_OUT"
    UNKNOWN_STATUS = "UNKNOWN_STATUS"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    INVALID_REQUEST = "INVALID_REQUEST"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"
    INITIALIZATION_ERROR = "INITIALIZATION_ERROR"
    SIGNING_ERROR = "SIGNING_ERROR"
    VERIFICATION_ERROR = "VERIFICATION_ERROR"


# 429 and 5xx are worth another poll; any other 4xx will not change on retry.
TRANSIENT_HTTP_STATUSES = frozenset({429})
TRANSIENT_TRANSPORT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


class TrustBrokerError(Exception):
    """Base exception for the Trust Broker SDK."""

    default_status = "TRUSTBROKER_ERROR"

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status or self.default_status

    def __str__(self) -> str:
        return f"[{self.status}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": {"status": self.status, "message": self.message}}


class InitializationError(TrustBrokerError):
    default_status = ErrorCode.INITIALIZATION_ERROR


class SigningError(TrustBrokerError):
    default_status = ErrorCode.SIGNING_ERROR


class VerificationError(TrustBrokerError):
    """The verification inputs are unusable (e.g. the public key cannot be parsed).

    A signature that simply does not match is reported as ``False`` by
    ``verify_signature`` and never raises this.
    """

    default_status = ErrorCode.VERIFICATION_ERROR


class RequestError(TrustBrokerError):
    def __init__(
        self,
        status: str,
        message: str,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        transient: bool = False,
    ):
        super().__init__(message, status)
        self.status_code = status_code
        self.request_id = request_id
        self.failure_reason = failure_reason
        self.details = details or {}
        self.transient = transient

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["error"].update(
            {
                "status_code": self.status_code,
                "request_id": self.request_id,
                "failure_reason": self.failure_reason,
                "details": self.details,
            }
        )
        return out


def is_transient_status_code(status_code: int) -> bool:
    return status_code >= 500 or status_code in TRANSIENT_HTTP_STATUSES


def _error_message(resp: httpx.Response) -> str:
    try:
        parsed = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(parsed, dict):
        inner = parsed.get("error")
        if isinstance(inner, dict):
            inner = inner.get("message") or inner.get("code")
        if inner:
            return str(inner)
        if parsed.get("message"):
            return str(parsed["message"])
    return resp.text or f"HTTP {resp.status_code}"


def error_from_response(resp: httpx.Response, context: str, status: str = ErrorCode.API_ERROR) -> RequestError:
    """Classify a non-2xx response from the broker or a provider."""
    details: Dict[str, Any] = {}
    request_id = None
    try:
        parsed = resp.json()
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        request_id = parsed.get("requestId") or parsed.get("request_id")
        if isinstance(parsed.get("details"), dict):
            details = parsed["details"]
    return RequestError(
        status,
        f"{context}: {_error_message(resp)}",
        status_code=resp.status_code,
        request_id=request_id,
        details=details,
        transient=is_transient_status_code(resp.status_code),
    )


def error_from_transport(exc: Exception, context: str, status: str = ErrorCode.API_ERROR) -> RequestError:
    """Classify a failure that produced no HTTP response at all.

    Timeouts, dropped connections and broken peers are ``NETWORK_ERROR`` and
    transient. Anything else (bad URL, unsupported scheme, redirect loops) will
    fail the same way on every attempt, so it surfaces as ``status`` and is fatal.
    """
    details = {"exception": type(exc).__name__}
    if isinstance(exc, TRANSIENT_TRANSPORT_ERRORS):
        return RequestError(ErrorCode.NETWORK_ERROR, f"{context}: {exc}", details=details, transient=True)
    return RequestError(status, f"{context}: {exc}", details=details)


def invalid_response(context: str, message: str, request_id: Optional[str] = None) -> RequestError:
    return RequestError(ErrorCode.INVALID_RESPONSE, f"{context}: {message}", request_id=request_id)
