"""Streaming completion client, retry policy and JSON extraction."""

from sheetstream.llm.cancellation import CancellationToken
from sheetstream.llm.client import CompletionClient, CompletionStream, decode_structured
from sheetstream.llm.errors import HTTPStatusFailure, TransportError
from sheetstream.llm.extractor import extract, extract_balanced_json
from sheetstream.llm.models import ModelCatalog, ModelOption, format_model_label
from sheetstream.llm.repair import parse_with_repairs
from sheetstream.llm.retry import RetryCoordinator
from sheetstream.llm.sse import SSEDecoder
from sheetstream.llm.transport import CompletionTransport, HttpTransport

__all__ = [
    "CancellationToken",
    "CompletionClient",
    "CompletionStream",
    "CompletionTransport",
    "HTTPStatusFailure",
    "HttpTransport",
    "ModelCatalog",
    "ModelOption",
    "RetryCoordinator",
    "SSEDecoder",
    "TransportError",
    "decode_structured",
    "extract",
    "extract_balanced_json",
    "format_model_label",
    "parse_with_repairs",
]
