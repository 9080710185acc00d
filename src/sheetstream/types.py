"""Shared data types for SheetStream."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Union


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Author of a chat message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """A single chat message.  Order inside a request is meaningful."""

    role: Role
    content: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role(self.role))

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        return cls(role=Role(raw["role"]), content=raw.get("content", "") or "")

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class RequestSpec:
    """Everything needed for one streamed chat completion.

    Immutable: the same request is replayed unchanged on every retry attempt.
    """

    messages: tuple[Message, ...]
    model: str
    temperature: float = 0.7
    max_tokens: int = 8192
    stream: bool = True
    response_format: dict[str, str] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "messages", _as_messages(self.messages))
        if not self.stream:
            raise ValueError("RequestSpec.stream must be True for a streaming client")
        if not self.messages:
            raise ValueError("RequestSpec requires at least one message")

    def to_payload(self) -> dict[str, Any]:
        """JSON body for ``POST /chat/completions``."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if self.response_format:
            payload["response_format"] = dict(self.response_format)
        return payload


def _as_messages(raw: Iterable[Message | dict[str, Any]]) -> tuple[Message, ...]:
    return tuple(m if isinstance(m, Message) else Message.from_dict(m) for m in raw)


# ---------------------------------------------------------------------------
# Attempt outcomes
# ---------------------------------------------------------------------------

class ErrorClass(enum.Enum):
    """Classified failure kinds.  Each carries a fixed retry policy."""

    TIMEOUT = "timeout"
    AUTH_INVALID = "auth_invalid"
    RATE_LIMITED = "rate_limited"
    SERVER_UNAVAILABLE = "server_unavailable"
    PROTOCOL_ERROR = "protocol_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Success:
    full_text: str


@dataclass(frozen=True)
class RetryableFailure:
    """A failed attempt that may be retried after ``delay(attempt)`` seconds."""

    error_class: ErrorClass
    raw_message: str = ""
    backoff_ms: int = 0
    status: int | None = None

    def delay(self, attempt: int) -> float:
        return attempt * self.backoff_ms / 1000


@dataclass(frozen=True)
class FatalFailure:
    error_class: ErrorClass
    raw_message: str = ""
    status: int | None = None


AttemptOutcome = Union[Success, RetryableFailure, FatalFailure]


@dataclass
class StreamState:
    """Per-attempt decoding state.  Never shared across attempts."""

    decode_buffer: str = ""
    accumulated_text: str = ""


# ---------------------------------------------------------------------------
# Extraction / parsing
# ---------------------------------------------------------------------------

class ExtractionMethod(str, enum.Enum):
    FENCED = "fenced"
    BALANCED = "balanced"
    REGEX = "regex"


@dataclass(frozen=True)
class Found:
    json: str
    method: ExtractionMethod


@dataclass(frozen=True)
class NotFound:
    pass


ExtractionResult = Union[Found, NotFound]


@dataclass(frozen=True)
class Parsed:
    value: Any
    passes: tuple[str, ...] = ()


@dataclass(frozen=True)
class Failed:
    after_passes: tuple[str, ...] = ()


ParseResult = Union[Parsed, Failed]


# ---------------------------------------------------------------------------
# Caller-facing results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClassifiedError:
    """The single human-readable terminal error of a ``complete()`` call."""

    error_class: ErrorClass
    message: str
    attempts: int = 0
    cancelled: bool = False

    def __str__(self) -> str:
        return self.message


@dataclass
class CompletionResult:
    """Outcome of ``CompletionClient.complete()``."""

    text: str = ""
    error: ClassifiedError | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class StructuredResult:
    """Outcome of ``CompletionClient.complete_json()``."""

    value: Any = None
    error: ClassifiedError | None = None
    text: str = ""
    extraction: ExtractionResult | None = None
    parse: ParseResult | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class StreamCallbacks:
    """Optional hooks fired during ``complete()``.

    Exactly one of ``on_complete`` / ``on_error`` fires per call.
    """

    on_start: Callable[[], None] | None = None
    on_chunk: Callable[[str, str], None] | None = None
    on_complete: Callable[[str], None] | None = None
    on_error: Callable[[ClassifiedError], None] | None = None
