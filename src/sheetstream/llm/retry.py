"""Retry coordinator: drives 1..N streamed attempts for one request.

States per call::

    Attempting(n) --full stream--> Succeeded
        |
        +--error/timeout--> Classifying --retryable, n < max--> Backoff(n) --> Attempting(n+1)
                                 |
                                 +--fatal / exhausted / cancelled--> Failed
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from sheetstream.types import (
    AttemptOutcome,
    CompletionResult,
    ErrorClass,
    FatalFailure,
    RequestSpec,
    Success,
)

from .cancellation import CancellationToken
from .errors import (
    EMPTY_RESPONSE_MESSAGE,
    cancelled_error,
    classify_exception,
    classify_local_timeout,
    to_classified,
)
from .sse import SSEDecoder
from .transport import CompletionTransport

_logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

SleepFn = Callable[[float], Awaitable[Any]]
DeltaFn = Callable[[str, str], None]


class RetryCoordinator:
    """Owns the attempt loop for a single ``complete()`` call."""

    def __init__(
        self,
        transport: CompletionTransport,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float | None = 60.0,
        sleep: SleepFn | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.transport = transport
        self.max_attempts = max_attempts
        self.timeout = timeout
        self._sleep = sleep or asyncio.sleep

    async def run(
        self,
        spec: RequestSpec,
        token: CancellationToken,
        on_delta: DeltaFn | None = None,
    ) -> CompletionResult:
        payload = spec.to_payload()
        start = time.monotonic()

        for attempt in range(1, self.max_attempts + 1):
            if token.cancelled:
                return CompletionResult(error=cancelled_error(attempt - 1), attempts=attempt - 1)

            _logger.debug("Attempt %d/%d: %s", attempt, self.max_attempts, spec.model)
            outcome = await self._attempt(payload, token, on_delta)

            if isinstance(outcome, Success):
                _logger.info(
                    "Completion succeeded on attempt %d/%d (%d chars, %.0f ms)",
                    attempt, self.max_attempts, len(outcome.full_text),
                    (time.monotonic() - start) * 1000,
                )
                return CompletionResult(text=outcome.full_text, attempts=attempt)

            if token.cancelled:
                _logger.info("Completion cancelled during attempt %d", attempt)
                return CompletionResult(error=cancelled_error(attempt), attempts=attempt)

            if isinstance(outcome, FatalFailure):
                _logger.warning(
                    "Attempt %d/%d failed (%s, not retryable): %s",
                    attempt, self.max_attempts, outcome.error_class.value,
                    outcome.raw_message,
                )
                return CompletionResult(error=to_classified(outcome, attempt), attempts=attempt)

            if attempt >= self.max_attempts:
                _logger.warning(
                    "Attempt %d/%d failed (%s), giving up: %s",
                    attempt, self.max_attempts, outcome.error_class.value,
                    outcome.raw_message,
                )
                return CompletionResult(error=to_classified(outcome, attempt), attempts=attempt)

            delay = outcome.delay(attempt)
            _logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.1fs: %s",
                attempt, self.max_attempts, outcome.error_class.value, delay,
                outcome.raw_message,
            )
            if not await self._backoff(delay, token):
                _logger.info("Completion cancelled during backoff after attempt %d", attempt)
                return CompletionResult(error=cancelled_error(attempt), attempts=attempt)

        # max_attempts >= 1 guarantees a return inside the loop
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    async def _attempt(
        self,
        payload: dict[str, Any],
        token: CancellationToken,
        on_delta: DeltaFn | None,
    ) -> AttemptOutcome:
        # Fresh decoder per attempt: partial output never leaks across retries
        decoder = SSEDecoder(on_chunk=on_delta)
        task = asyncio.ensure_future(self._read_stream(payload, decoder))
        token.attach(task, timeout=self.timeout)
        try:
            await task
        except asyncio.CancelledError:
            if not token.fired:
                raise
            if token.timed_out:
                return classify_local_timeout(f"no result within {self.timeout:g}s")
            return classify_local_timeout("request cancelled")
        except Exception as e:
            _logger.debug("Attempt raised %s", type(e).__name__, exc_info=True)
            return classify_exception(e)
        finally:
            token.detach()

        if not decoder.accumulated:
            return FatalFailure(ErrorClass.PROTOCOL_ERROR, EMPTY_RESPONSE_MESSAGE)
        return Success(decoder.accumulated)

    async def _read_stream(self, payload: dict[str, Any], decoder: SSEDecoder) -> None:
        async for chunk in self.transport.stream_chat(payload):
            decoder.feed(chunk)
        decoder.finish()

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    async def _backoff(self, delay: float, token: CancellationToken) -> bool:
        """Sleep *delay* seconds.  Returns False if cancelled meanwhile."""
        task = asyncio.ensure_future(self._sleep(delay))
        token.attach(task)
        try:
            await task
        except asyncio.CancelledError:
            if not token.fired:
                raise
            return False
        finally:
            token.detach()
        return not token.cancelled
