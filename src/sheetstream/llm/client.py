"""Streaming completion client for OpenAI-compatible chat APIs.

``CompletionClient`` composes the transport, SSE decoder, retry coordinator,
extractor and repair pipeline behind three entry points:

  * ``complete()``       callbacks + a single ``CompletionResult``
  * ``stream()``         async iterator of content deltas
  * ``complete_json()``  ``complete()`` followed by extraction and repair
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, AsyncIterator, Callable, Iterable, Sequence, Union

from sheetstream.config import ClientConfig, supports_json_mode
from sheetstream.types import (
    ClassifiedError,
    CompletionResult,
    ErrorClass,
    Failed,
    Message,
    NotFound,
    Role,
    RequestSpec,
    StreamCallbacks,
    StructuredResult,
)

from .cancellation import CancellationToken
from .errors import NOT_JSON_MESSAGE, UNPARSEABLE_JSON_MESSAGE
from .extractor import extract
from .repair import parse_with_repairs
from .retry import RetryCoordinator, SleepFn
from .transport import CompletionTransport, HttpTransport

_logger = logging.getLogger(__name__)

# Returns a list of problems; empty means the value is acceptable
Validator = Callable[[Any], Iterable[str]]

RequestLike = Union[RequestSpec, Sequence[Union[Message, dict[str, Any]]]]


# ---------------------------------------------------------------------------
# Structured decoding (pure)
# ---------------------------------------------------------------------------

def decode_structured(text: str, validate: Validator | None = None) -> StructuredResult:
    """Extract, repair and optionally validate the JSON object in *text*."""
    extraction = extract(text)
    if isinstance(extraction, NotFound):
        _logger.warning("Response was not JSON: %.200s", text)
        return StructuredResult(
            text=text,
            extraction=extraction,
            error=ClassifiedError(ErrorClass.PROTOCOL_ERROR, NOT_JSON_MESSAGE),
        )

    parsed = parse_with_repairs(extraction.json)
    if isinstance(parsed, Failed):
        return StructuredResult(
            text=text,
            extraction=extraction,
            parse=parsed,
            error=ClassifiedError(ErrorClass.PROTOCOL_ERROR, UNPARSEABLE_JSON_MESSAGE),
        )

    if validate is not None:
        problems = [p for p in validate(parsed.value) if p]
        if problems:
            _logger.warning("Response failed validation: %s", problems)
            return StructuredResult(
                text=text,
                extraction=extraction,
                parse=parsed,
                error=ClassifiedError(
                    ErrorClass.PROTOCOL_ERROR,
                    f"response did not match the expected format: {', '.join(problems)}",
                ),
            )

    return StructuredResult(
        value=parsed.value, text=text, extraction=extraction, parse=parsed,
    )


# ---------------------------------------------------------------------------
# Client facade
# ---------------------------------------------------------------------------

class CompletionClient:
    """Resilient streaming client.  One request in flight per instance."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: CompletionTransport | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self._owns_transport = transport is None
        self._transport: CompletionTransport = transport or HttpTransport(self.config)
        self._sleep = sleep
        self._token: CancellationToken | None = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        return self.config.is_available()

    def update_config(self, **changes: Any) -> None:
        """Apply partial settings (api_key, base_url, model, timeout, ...)."""
        self.config = self.config.updated(**changes)
        if isinstance(self._transport, HttpTransport):
            self._transport.configure(self.config)
        _logger.debug("Config updated: %s", sorted(k for k, v in changes.items() if v is not None))

    def build_request(
        self,
        messages: Sequence[Message | dict[str, Any]],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> RequestSpec:
        """Build a ``RequestSpec`` from config defaults plus overrides."""
        model = model or self.config.model
        response_format = None
        if json_mode and supports_json_mode(model):
            response_format = {"type": "json_object"}
        return RequestSpec(
            messages=tuple(messages),
            model=model,
            temperature=self.config.temperature if temperature is None else temperature,
            max_tokens=max_tokens or self.config.max_tokens,
            response_format=response_format,
        )

    def _as_spec(self, request: RequestLike) -> RequestSpec:
        if isinstance(request, RequestSpec):
            return request
        return self.build_request(request)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete(
        self,
        request: RequestLike,
        callbacks: StreamCallbacks | None = None,
    ) -> CompletionResult:
        """Stream one completion, retrying per the classified error policy.

        Exactly one of ``on_complete`` / ``on_error`` fires.
        """
        callbacks = callbacks or StreamCallbacks()
        result = await self._run(self._as_spec(request), callbacks)
        _finish(callbacks, result.text, result.error)
        return result

    async def complete_json(
        self,
        request: RequestLike,
        callbacks: StreamCallbacks | None = None,
        validate: Validator | None = None,
    ) -> StructuredResult:
        """``complete()`` then extract, repair and validate the JSON object."""
        callbacks = callbacks or StreamCallbacks()
        result = await self._run(self._as_spec(request), callbacks)
        if not result.ok:
            structured = StructuredResult(error=result.error, text=result.text)
        else:
            structured = decode_structured(result.text, validate)
        _finish(callbacks, structured.text, structured.error)
        return structured

    def stream(self, request: RequestLike) -> CompletionStream:
        """Async iterator over content deltas; see ``CompletionStream``."""
        return CompletionStream(self, self._as_spec(request))

    async def single_chat(
        self,
        system_prompt: str,
        user_prompt: str,
        callbacks: StreamCallbacks | None = None,
    ) -> CompletionResult:
        messages = [
            Message(Role.SYSTEM, system_prompt),
            Message(Role.USER, user_prompt),
        ]
        return await self.complete(messages, callbacks)

    async def multi_chat(
        self,
        system_prompt: str,
        history: Sequence[Message | dict[str, Any]],
        new_message: str,
        callbacks: StreamCallbacks | None = None,
    ) -> CompletionResult:
        messages: list[Message | dict[str, Any]] = [Message(Role.SYSTEM, system_prompt)]
        messages.extend(history)
        messages.append(Message(Role.USER, new_message))
        return await self.complete(messages, callbacks)

    def cancel(self) -> None:
        """Cancel the in-flight call, if any.  No further attempts are made."""
        if self._token is not None:
            _logger.info("Cancelling in-flight completion")
            self._token.cancel()

    @property
    def in_flight(self) -> bool:
        return self._token is not None

    async def _run(self, spec: RequestSpec, callbacks: StreamCallbacks) -> CompletionResult:
        # At most one request in flight: supersede any previous call first
        if self._token is not None:
            _logger.info("New completion supersedes the in-flight one")
            self._token.invalidate()
        token = CancellationToken()
        self._token = token

        coordinator = RetryCoordinator(
            self._transport,
            max_attempts=self.config.max_attempts,
            timeout=self.config.timeout,
            sleep=self._sleep,
        )
        if callbacks.on_start is not None:
            callbacks.on_start()
        try:
            return await coordinator.run(spec, token, on_delta=callbacks.on_chunk)
        finally:
            token.close()
            if self._token is token:
                self._token = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        self.cancel()
        if self._owns_transport and isinstance(self._transport, HttpTransport):
            await self._transport.close()

    async def __aenter__(self) -> CompletionClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()


def _finish(callbacks: StreamCallbacks, text: str, error: ClassifiedError | None) -> None:
    if error is None:
        if callbacks.on_complete is not None:
            callbacks.on_complete(text)
    elif callbacks.on_error is not None:
        callbacks.on_error(error)


# ---------------------------------------------------------------------------
# Async iterator form
# ---------------------------------------------------------------------------

_END = object()


class CompletionStream:
    """Finite, non-restartable async iterator of content deltas.

    Usage::

        stream = client.stream(messages)
        async for delta in stream:
            print(delta, end="")
        if not stream.result.ok:
            print(stream.result.error)

    After breaking out of the loop early, ``await stream.aclose()`` cancels
    the request and fills in ``result``.
    """

    def __init__(self, client: CompletionClient, spec: RequestSpec) -> None:
        self._client = client
        self._spec = spec
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[CompletionResult] | None = None
        self._gen: AsyncGenerator[str, None] | None = None
        self.result: CompletionResult | None = None

    def __aiter__(self) -> AsyncIterator[str]:
        if self._task is not None:
            raise RuntimeError("CompletionStream cannot be restarted")
        callbacks = StreamCallbacks(
            on_chunk=lambda delta, _accumulated: self._queue.put_nowait(delta),
        )
        self._task = asyncio.ensure_future(self._client.complete(self._spec, callbacks))
        self._task.add_done_callback(lambda _t: self._queue.put_nowait(_END))
        self._gen = self._iterate()
        return self._gen

    async def _iterate(self) -> AsyncGenerator[str, None]:
        assert self._task is not None
        try:
            while True:
                item = await self._queue.get()
                if item is _END:
                    break
                yield item
        finally:
            await self._settle()

    async def _settle(self) -> None:
        assert self._task is not None
        if not self._task.done():
            self._client.cancel()
        self.result = await self._task

    async def aclose(self) -> None:
        """Stop iterating; cancels the request if it is still running."""
        if self._gen is not None:
            await self._gen.aclose()
        if self._task is not None and self.result is None:
            await self._settle()

    def cancel(self) -> None:
        self._client.cancel()
