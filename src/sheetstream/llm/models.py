"""Model catalogue: lists models exposed by an OpenAI-compatible ``/models``."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

import httpx

from sheetstream.config import ClientConfig

from .errors import HTTPStatusFailure

_logger = logging.getLogger(__name__)

CACHE_TTL = 24 * 60 * 60  # seconds
REQUEST_TIMEOUT = 10.0  # seconds


@dataclass(frozen=True)
class ModelOption:
    value: str
    label: str


@dataclass
class CatalogResult:
    models: list[ModelOption] = field(default_factory=list)
    from_cache: bool = False
    error: str | None = None


DEFAULT_MODELS: tuple[ModelOption, ...] = (
    ModelOption("gpt-4", "GPT-4"),
    ModelOption("gpt-4-turbo", "GPT-4 Turbo"),
    ModelOption("gpt-4o", "GPT-4o"),
    ModelOption("gpt-4o-mini", "GPT-4o Mini"),
    ModelOption("gpt-3.5-turbo", "GPT-3.5 Turbo"),
    ModelOption("claude-3-opus", "Claude 3 Opus"),
    ModelOption("claude-3-sonnet", "Claude 3 Sonnet"),
    ModelOption("claude-3-haiku", "Claude 3 Haiku"),
)

# Longest keys first so "gpt-4o-mini" wins over "gpt-4" in prefix matching
_LABELS: dict[str, str] = dict(sorted({
    "gpt-4": "GPT-4",
    "gpt-4-turbo": "GPT-4 Turbo",
    "gpt-4-turbo-preview": "GPT-4 Turbo Preview",
    "gpt-4o": "GPT-4o",
    "gpt-4o-mini": "GPT-4o Mini",
    "gpt-3.5-turbo": "GPT-3.5 Turbo",
    "gpt-3.5-turbo-16k": "GPT-3.5 Turbo 16K",
    "claude-3-opus": "Claude 3 Opus",
    "claude-3-sonnet": "Claude 3 Sonnet",
    "claude-3-haiku": "Claude 3 Haiku",
    "claude-3-5-sonnet": "Claude 3.5 Sonnet",
    "claude-3-5-haiku": "Claude 3.5 Haiku",
}.items(), key=lambda kv: -len(kv[0])))


def format_model_label(model_id: str) -> str:
    """Friendly display name for a model id."""
    if model_id in _LABELS:
        return _LABELS[model_id]
    for key, label in _LABELS.items():
        if model_id.startswith(key):
            suffix = model_id[len(key):].lstrip("-")
            return f"{label} {suffix}" if suffix else label
    return " ".join(w[:1].upper() + w[1:] for w in model_id.split("-"))


@dataclass
class _CacheEntry:
    models: list[ModelOption]
    timestamp: float
    base_url: str


class ModelCatalog:
    """Fetches and caches the model list for the configured endpoint."""

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._transport = transport
        self._clock = clock
        self._cache: _CacheEntry | None = None

    def configure(self, config: ClientConfig) -> None:
        self.config = config

    def cached_models(self) -> list[ModelOption] | None:
        """Fresh cached models for the current base url, if any."""
        entry = self._cache
        if entry is None:
            return None
        if entry.base_url != self.config.base_url:
            _logger.debug("Model cache is for a different base url")
            return None
        if self._clock() - entry.timestamp > CACHE_TTL:
            _logger.debug("Model cache expired")
            return None
        return list(entry.models)

    def clear_cache(self) -> None:
        self._cache = None

    @staticmethod
    def default_models() -> list[ModelOption]:
        return list(DEFAULT_MODELS)

    async def fetch_models(self, force: bool = False) -> CatalogResult:
        """Return the model list, preferring cache, falling back to defaults."""
        if force:
            self.clear_cache()
        cached = self.cached_models()
        if cached:
            return CatalogResult(cached, from_cache=True)

        if not self.config.is_available():
            _logger.info("API not configured, using default model list")
            return CatalogResult(self.default_models(), error="API not configured")

        try:
            models = await self._request_models()
        except (HTTPStatusFailure, httpx.HTTPError, ValueError) as e:
            _logger.warning("Fetching model list failed: %s", e)
            if self._cache is not None and self._cache.models:
                return CatalogResult(list(self._cache.models), from_cache=True, error=str(e))
            return CatalogResult(self.default_models(), error=str(e))

        if models:
            self._cache = _CacheEntry(models, self._clock(), self.config.base_url)
        _logger.info("Fetched %d models", len(models))
        return CatalogResult(models)

    async def _request_models(self) -> list[ModelOption]:
        async with httpx.AsyncClient(
            transport=self._transport, timeout=REQUEST_TIMEOUT,
        ) as client:
            resp = await client.get(
                f"{self.config.base_url}/models",
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            )
            if not resp.is_success:
                raise HTTPStatusFailure(resp.status_code, resp.text, resp.reason_phrase)
            data = resp.json()

        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise ValueError("API returned an invalid model list")
        models = [
            ModelOption(str(m["id"]), format_model_label(str(m["id"])))
            for m in entries
            if isinstance(m, dict) and m.get("id")
        ]
        return sorted(models, key=lambda m: m.label)
