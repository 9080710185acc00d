"""Tests for the retry coordinator and its error policy."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from sheetstream.llm.cancellation import CancellationToken
from sheetstream.llm.errors import EMPTY_RESPONSE_MESSAGE, HTTPStatusFailure
from sheetstream.llm.retry import RetryCoordinator
from sheetstream.types import ErrorClass, Message, RequestSpec, Role


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

HANG = object()


def _frame(content: str) -> bytes:
    data = {"choices": [{"delta": {"content": content}}]}
    return f"data: {json.dumps(data)}\n\n".encode()


DONE = b"data: [DONE]\n\n"


class ScriptedTransport:
    """Plays one scripted step per attempt; the last step repeats.

    A step is either an exception to raise or a list of chunks, where
    ``HANG`` blocks forever.
    """

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls: list[dict] = []
        self.chunk_sent = asyncio.Event()

    async def stream_chat(self, payload):
        self.calls.append(payload)
        step = self.steps[min(len(self.calls), len(self.steps)) - 1]
        if isinstance(step, BaseException):
            raise step
        for chunk in step:
            if chunk is HANG:
                await asyncio.Event().wait()
            self.chunk_sent.set()
            yield chunk


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _spec() -> RequestSpec:
    return RequestSpec(messages=(Message(Role.USER, "weather?"),), model="gpt-4o")


def _coordinator(transport, sleep=None, **kwargs) -> RetryCoordinator:
    return RetryCoordinator(transport, sleep=sleep or RecordingSleep(), **kwargs)


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------

class TestSuccess:
    async def test_first_attempt_success(self):
        transport = ScriptedTransport([_frame("Sun"), _frame("ny"), DONE])
        sleep = RecordingSleep()
        token = CancellationToken()
        deltas = []

        result = await _coordinator(transport, sleep).run(
            _spec(), token, on_delta=lambda d, acc: deltas.append((d, acc)),
        )

        assert result.ok
        assert result.text == "Sunny"
        assert result.attempts == 1
        assert deltas == [("Sun", "Sun"), ("ny", "Sunny")]
        assert sleep.delays == []
        assert not token.has_timer

    async def test_payload_is_streaming_request(self):
        transport = ScriptedTransport([_frame("ok")])
        await _coordinator(transport).run(_spec(), CancellationToken())
        payload = transport.calls[0]
        assert payload["stream"] is True
        assert payload["model"] == "gpt-4o"
        assert payload["messages"] == [{"role": "user", "content": "weather?"}]

    async def test_retry_replays_identical_payload(self):
        transport = ScriptedTransport(HTTPStatusFailure(502), [_frame("ok")])
        await _coordinator(transport).run(_spec(), CancellationToken())
        assert len(transport.calls) == 2
        assert transport.calls[0] == transport.calls[1]


# ---------------------------------------------------------------------------
# Error policy
# ---------------------------------------------------------------------------

class TestErrorPolicy:
    async def test_524_exhausts_three_attempts(self):
        transport = ScriptedTransport(HTTPStatusFailure(524, "", "Origin timeout"))
        sleep = RecordingSleep()

        result = await _coordinator(transport, sleep).run(_spec(), CancellationToken())

        assert not result.ok
        assert result.error.error_class is ErrorClass.TIMEOUT
        assert result.error.message == "request repeatedly timed out, please retry later"
        assert result.attempts == 3
        assert len(transport.calls) == 3
        assert sleep.delays == [2.0, 4.0]

    async def test_401_is_fatal(self):
        body = '{"error": {"message": "Incorrect API key provided"}}'
        transport = ScriptedTransport(HTTPStatusFailure(401, body))
        sleep = RecordingSleep()

        result = await _coordinator(transport, sleep).run(_spec(), CancellationToken())

        assert result.error.error_class is ErrorClass.AUTH_INVALID
        assert "API key" in result.error.message
        assert "Incorrect" not in result.error.message
        assert result.attempts == 1
        assert sleep.delays == []

    async def test_429_backs_off_three_seconds_per_attempt(self):
        transport = ScriptedTransport(
            HTTPStatusFailure(429), HTTPStatusFailure(429), [_frame("finally")],
        )
        sleep = RecordingSleep()

        result = await _coordinator(transport, sleep).run(_spec(), CancellationToken())

        assert result.text == "finally"
        assert result.attempts == 3
        assert sleep.delays == [3.0, 6.0]

    async def test_server_unavailable_then_success(self):
        transport = ScriptedTransport(
            HTTPStatusFailure(503), [_frame("recovered"), DONE],
        )
        sleep = RecordingSleep()

        result = await _coordinator(transport, sleep).run(_spec(), CancellationToken())

        assert result.ok
        assert result.text == "recovered"
        assert sleep.delays == [2.0]

    @pytest.mark.parametrize("status", [502, 503, 504])
    async def test_gateway_errors_are_server_unavailable(self, status):
        transport = ScriptedTransport(HTTPStatusFailure(status))
        result = await _coordinator(transport, max_attempts=1).run(
            _spec(), CancellationToken(),
        )
        assert result.error.error_class is ErrorClass.SERVER_UNAVAILABLE

    async def test_other_status_is_fatal_protocol_error(self):
        transport = ScriptedTransport(HTTPStatusFailure(500, "boom"))
        sleep = RecordingSleep()

        result = await _coordinator(transport, sleep).run(_spec(), CancellationToken())

        assert result.error.error_class is ErrorClass.PROTOCOL_ERROR
        assert result.error.message == "API returned an invalid response (HTTP 500: boom)"
        assert result.attempts == 1
        assert sleep.delays == []

    async def test_empty_stream_is_protocol_error(self):
        transport = ScriptedTransport([b": ping\n\n", DONE])

        result = await _coordinator(transport).run(_spec(), CancellationToken())

        assert result.error.error_class is ErrorClass.PROTOCOL_ERROR
        assert result.error.message == EMPTY_RESPONSE_MESSAGE
        assert len(transport.calls) == 1

    async def test_connection_error_is_retried(self):
        transport = ScriptedTransport(
            httpx.ConnectError("connection refused"), [_frame("up")],
        )
        sleep = RecordingSleep()

        result = await _coordinator(transport, sleep).run(_spec(), CancellationToken())

        assert result.text == "up"
        assert sleep.delays == [1.0]

    async def test_httpx_timeout_is_local_timeout(self):
        transport = ScriptedTransport(httpx.ReadTimeout("read timed out"))
        sleep = RecordingSleep()

        result = await _coordinator(transport, sleep, max_attempts=2).run(
            _spec(), CancellationToken(),
        )

        assert result.error.error_class is ErrorClass.TIMEOUT
        assert sleep.delays == [1.0]

    async def test_per_attempt_timer_expiry_is_retried(self):
        transport = ScriptedTransport([_frame("partial"), HANG])
        sleep = RecordingSleep()
        token = CancellationToken()

        result = await _coordinator(transport, sleep, timeout=0.01, max_attempts=2).run(
            _spec(), token,
        )

        assert result.error.error_class is ErrorClass.TIMEOUT
        assert not result.error.cancelled
        assert len(transport.calls) == 2
        assert sleep.delays == [1.0]
        assert not token.has_timer

    async def test_api_error_message_included_for_unexpected_status(self):
        body = '{"error": {"message": "model \'gpt-9\' does not exist"}}'
        transport = ScriptedTransport(HTTPStatusFailure(404, body, "Not Found"))

        result = await _coordinator(transport).run(_spec(), CancellationToken())

        assert result.error.error_class is ErrorClass.PROTOCOL_ERROR
        assert result.error.message == (
            "API returned an invalid response (HTTP 404: model 'gpt-9' does not exist)"
        )

    async def test_unexpected_exception_is_fatal_unknown(self):
        transport = ScriptedTransport(httpx.StreamClosed())
        sleep = RecordingSleep()
        token = CancellationToken()

        result = await _coordinator(transport, sleep).run(_spec(), token)

        assert result.error.error_class is ErrorClass.UNKNOWN
        assert result.error.message == "request failed, please retry later"
        assert result.attempts == 1
        assert sleep.delays == []
        assert not token.has_timer

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryCoordinator(ScriptedTransport([DONE]), max_attempts=0)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    async def test_cancel_mid_stream_stops_retries(self):
        transport = ScriptedTransport([_frame("Sun"), HANG])
        sleep = RecordingSleep()
        token = CancellationToken()
        coordinator = _coordinator(transport, sleep)

        task = asyncio.create_task(coordinator.run(_spec(), token))
        await asyncio.wait_for(transport.chunk_sent.wait(), timeout=1)
        await asyncio.sleep(0.01)
        token.cancel()
        result = await asyncio.wait_for(task, timeout=1)

        assert result.error.cancelled
        assert result.error.error_class is ErrorClass.TIMEOUT
        assert result.attempts == 1
        assert len(transport.calls) == 1
        assert sleep.delays == []
        assert not token.has_timer

    async def test_cancel_during_backoff(self):
        entered = asyncio.Event()

        async def blocking_sleep(delay):
            entered.set()
            await asyncio.Event().wait()

        transport = ScriptedTransport(HTTPStatusFailure(524))
        token = CancellationToken()
        coordinator = RetryCoordinator(transport, sleep=blocking_sleep)

        task = asyncio.create_task(coordinator.run(_spec(), token))
        await asyncio.wait_for(entered.wait(), timeout=1)
        token.cancel()
        result = await asyncio.wait_for(task, timeout=1)

        assert result.error.cancelled
        assert len(transport.calls) == 1

    async def test_already_cancelled_token_makes_no_attempt(self):
        transport = ScriptedTransport([_frame("never")])
        token = CancellationToken()
        token.cancel()

        result = await _coordinator(transport).run(_spec(), token)

        assert result.error.cancelled
        assert result.attempts == 0
        assert transport.calls == []

    async def test_superseded_token_stops_call(self):
        transport = ScriptedTransport([_frame("a"), HANG])
        token = CancellationToken()

        task = asyncio.create_task(_coordinator(transport).run(_spec(), token))
        await asyncio.wait_for(transport.chunk_sent.wait(), timeout=1)
        token.invalidate()
        result = await asyncio.wait_for(task, timeout=1)

        assert token.superseded
        assert result.error.cancelled
        assert len(transport.calls) == 1

    async def test_outer_task_cancellation_propagates(self):
        transport = ScriptedTransport([HANG])
        token = CancellationToken()

        task = asyncio.create_task(_coordinator(transport).run(_spec(), token))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert not token.has_timer
