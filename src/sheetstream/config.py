"""Configuration management for SheetStream."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

_logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Configuration is present but invalid."""


# Model ids behind proxies sometimes carry a decorative prefix ("假流式/gpt-4o")
_MODEL_PREFIX_RE = re.compile(r"^[^a-zA-Z0-9]+/")

# Models known to accept ``response_format: {"type": "json_object"}``
_JSON_MODE_MODELS = ("gpt-4", "gpt-4-turbo", "gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo")


def clean_model_name(model: str) -> str:
    """Strip a non-alphanumeric provider prefix from a model id."""
    if not model:
        return model
    cleaned = _MODEL_PREFIX_RE.sub("", model)
    if cleaned != model:
        _logger.debug("Model name cleaned: %s -> %s", model, cleaned)
    return cleaned


def supports_json_mode(model: str) -> bool:
    lower = model.lower()
    return any(m in lower for m in _JSON_MODE_MODELS)


class ClientConfig(BaseModel):
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-3.5-turbo"
    timeout: float = Field(default=60.0, gt=0)  # seconds, per attempt
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=8192, gt=0)
    max_attempts: int = Field(default=3, ge=1)

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("model")
    @classmethod
    def _clean_model(cls, v: str) -> str:
        return clean_model_name(v.strip())

    def is_available(self) -> bool:
        """True when enough is configured to issue a request."""
        return bool(self.api_key and self.base_url)

    def updated(self, **changes: Any) -> ClientConfig:
        """Return a validated copy with *changes* applied.

        ``None`` values are ignored so partial updates from a settings form
        can be passed through unchanged.
        """
        unknown = set(changes) - set(type(self).model_fields)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        merged = self.model_dump()
        merged.update({k: v for k, v in changes.items() if v is not None})
        try:
            return ClientConfig.model_validate(merged)
        except ValidationError as e:
            raise ConfigError(str(e)) from e


CONFIG_FILENAME = "sheetstream.yaml"

# Environment overrides, applied after the file
_ENV_VARS = {
    "SHEETSTREAM_API_KEY": "api_key",
    "SHEETSTREAM_BASE_URL": "base_url",
    "SHEETSTREAM_MODEL": "model",
}


def _search_paths() -> list[Path]:
    return [
        Path.cwd() / CONFIG_FILENAME,
        Path.home() / ".sheetstream" / CONFIG_FILENAME,
    ]


def load_config(
    config_path: str | Path | None = None,
    *,
    environ: dict[str, str] | None = None,
) -> tuple[ClientConfig, Path | None]:
    """Load configuration from YAML plus environment overrides.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. Current working directory: ``./sheetstream.yaml``
      3. User config dir: ``~/.sheetstream/sheetstream.yaml``
    """
    env = os.environ if environ is None else environ

    resolved: Path | None = None
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        for candidate in _search_paths():
            if candidate.exists():
                resolved = candidate
                break

    raw: dict[str, Any] = {}
    if resolved is not None:
        _logger.info("Loading config from %s", resolved)
        with open(resolved) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file must contain a mapping: {resolved}")
        raw.update(loaded)

    for var, key in _ENV_VARS.items():
        if env.get(var):
            raw[key] = env[var]

    try:
        config = ClientConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
    return config, resolved.resolve() if resolved is not None else None
