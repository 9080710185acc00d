"""Error classification and retry policy for streamed completions.

Every transport or HTTP failure is mapped to an ``ErrorClass`` together with
its retry eligibility and linear backoff step:

  401               AUTH_INVALID        fatal
  429               RATE_LIMITED        attempt * 3000 ms
  524               TIMEOUT (upstream)  attempt * 2000 ms
  502 / 503 / 504   SERVER_UNAVAILABLE  attempt * 2000 ms
  local timeout     TIMEOUT             attempt * 1000 ms
  connection error  UNKNOWN             attempt * 1000 ms
  other non-2xx     PROTOCOL_ERROR      fatal
  empty stream      PROTOCOL_ERROR      fatal
"""

from __future__ import annotations

import json
import logging

import httpx

from sheetstream.types import (
    ClassifiedError,
    ErrorClass,
    FatalFailure,
    RetryableFailure,
)

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transport exceptions
# ---------------------------------------------------------------------------

class TransportError(Exception):
    """Base for failures raised by a completion transport."""


class HTTPStatusFailure(TransportError):
    """The API answered with a non-2xx status."""

    def __init__(self, status: int, body: str = "", reason: str = "") -> None:
        self.status = status
        self.body = body
        self.reason = reason
        super().__init__(f"HTTP {status}: {api_error_detail(body, reason)}")


def api_error_detail(body: str, reason: str = "") -> str:
    """Best-effort human message from an error response body."""
    if body:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            return body[:200]
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
            if isinstance(err, str) and err:
                return err
    return reason or "no details"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

# status -> (class, backoff step in ms); a step of 0 means not retryable
_STATUS_POLICY: dict[int, tuple[ErrorClass, int]] = {
    401: (ErrorClass.AUTH_INVALID, 0),
    429: (ErrorClass.RATE_LIMITED, 3000),
    524: (ErrorClass.TIMEOUT, 2000),
    502: (ErrorClass.SERVER_UNAVAILABLE, 2000),
    503: (ErrorClass.SERVER_UNAVAILABLE, 2000),
    504: (ErrorClass.SERVER_UNAVAILABLE, 2000),
}

LOCAL_TIMEOUT_BACKOFF_MS = 1000
CONNECTION_BACKOFF_MS = 1000


def classify_status(
    status: int, raw_message: str = "",
) -> RetryableFailure | FatalFailure:
    """Map an HTTP status to its attempt outcome."""
    error_class, backoff_ms = _STATUS_POLICY.get(
        status, (ErrorClass.PROTOCOL_ERROR, 0),
    )
    if backoff_ms:
        return RetryableFailure(error_class, raw_message, backoff_ms, status)
    return FatalFailure(error_class, raw_message, status)


def classify_local_timeout(raw_message: str = "timed out") -> RetryableFailure:
    """A locally timed-out or cancelled attempt that produced no result."""
    return RetryableFailure(
        ErrorClass.TIMEOUT, raw_message, LOCAL_TIMEOUT_BACKOFF_MS,
    )


def classify_exception(exc: BaseException) -> RetryableFailure | FatalFailure:
    """Map a transport exception to its attempt outcome."""
    if isinstance(exc, HTTPStatusFailure):
        return classify_status(exc.status, str(exc))
    if isinstance(exc, httpx.TimeoutException):
        return classify_local_timeout(str(exc) or type(exc).__name__)
    if isinstance(exc, (httpx.TransportError, TransportError, OSError)):
        return RetryableFailure(
            ErrorClass.UNKNOWN, str(exc) or type(exc).__name__,
            CONNECTION_BACKOFF_MS,
        )
    return FatalFailure(ErrorClass.UNKNOWN, str(exc) or type(exc).__name__)


# ---------------------------------------------------------------------------
# Caller-visible messages
# ---------------------------------------------------------------------------

_FINAL_MESSAGES: dict[ErrorClass, str] = {
    ErrorClass.AUTH_INVALID: "API key is invalid or expired, please check your settings",
    ErrorClass.RATE_LIMITED: "too many requests, please retry later",
    ErrorClass.TIMEOUT: "request repeatedly timed out, please retry later",
    ErrorClass.SERVER_UNAVAILABLE: "server repeatedly unavailable, please retry later",
    ErrorClass.PROTOCOL_ERROR: "API returned an invalid response",
    ErrorClass.UNKNOWN: "request failed, please retry later",
}

CANCELLED_MESSAGE = "request cancelled"
EMPTY_RESPONSE_MESSAGE = "API returned an empty response"
NOT_JSON_MESSAGE = "response was not JSON"
UNPARSEABLE_JSON_MESSAGE = "response JSON could not be parsed even after repair"


def final_message(outcome: RetryableFailure | FatalFailure) -> str:
    """Human-readable message naming the failure class.

    Only an unexpected HTTP status adds the status and the API's
    ``error.message``; every other class hides the raw transport error.
    """
    if outcome.raw_message == EMPTY_RESPONSE_MESSAGE:
        return EMPTY_RESPONSE_MESSAGE
    message = _FINAL_MESSAGES[outcome.error_class]
    if outcome.error_class is ErrorClass.PROTOCOL_ERROR and outcome.status:
        return f"{message} ({outcome.raw_message or f'HTTP {outcome.status}'})"
    return message


def to_classified(
    outcome: RetryableFailure | FatalFailure, attempts: int,
) -> ClassifiedError:
    return ClassifiedError(outcome.error_class, final_message(outcome), attempts)


def cancelled_error(attempts: int) -> ClassifiedError:
    return ClassifiedError(
        ErrorClass.TIMEOUT, CANCELLED_MESSAGE, attempts, cancelled=True,
    )
