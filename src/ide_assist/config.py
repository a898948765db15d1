"""Configuration for ide-assist.

Config discovery (first match wins):
  1. explicit path (``--config``)
  2. ``./ide_assist.yaml``
  3. ``~/.config/ide-assist/config.yaml``
  4. built-in defaults

The loaded ``EngineConfig`` is a plain value handed to every call; the
engine keeps no "current model" or "current endpoint" of its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from ide_assist.core.context import CHAT_CAPS, GENERATION_CAPS, ContextCaps
from ide_assist.errors import PreconditionFailed
from ide_assist.llm.adapters import Endpoint, Provider, adapter_for
from ide_assist.llm.response_parser import ToolCallExtractor
from ide_assist.llm.retry import PRESETS, RetryPolicy

_logger = logging.getLogger(__name__)

DEFAULT_URLS: dict[Provider, str] = {
    Provider.OLLAMA: "http://localhost:11434",
    Provider.OPENAI: "http://localhost:1234",
}


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackendSpec:
    """Which backend to talk to and how to sample from it.

    An empty ``model`` is allowed here; requests made with it fail with
    ``PreconditionFailed`` before touching the network.
    """

    provider: Provider = Provider.OLLAMA
    url: str = ""
    model: str = ""
    temperature: float = 0.3
    top_p: float = 0.9
    max_tokens: int = 2048

    def __post_init__(self) -> None:
        try:
            provider = Provider(self.provider)
        except ValueError:
            raise PreconditionFailed(
                f"Unknown provider: {self.provider!r} (expected one of: "
                f"{', '.join(p.value for p in Provider)})"
            ) from None
        object.__setattr__(self, "provider", provider)
        if not self.url:
            object.__setattr__(self, "url", DEFAULT_URLS[self.provider])

    def endpoint(self, extractor: ToolCallExtractor | None = None) -> Endpoint:
        """Select the adapter for this backend (done once per call)."""
        base_url = self.url.rstrip("/").removesuffix("/v1")
        return Endpoint(adapter_for(self.provider, extractor), base_url)


@dataclass(frozen=True)
class EngineConfig:
    """Top-level config value."""

    backend: BackendSpec = field(default_factory=BackendSpec)
    # Per call-site retry policies, overriding ``ide_assist.llm.retry.PRESETS``
    retry: dict[str, RetryPolicy] = field(default_factory=dict)
    chat_context: ContextCaps = CHAT_CAPS
    generation_context: ContextCaps = GENERATION_CAPS

    def policy(self, operation: str) -> RetryPolicy:
        """Retry policy for *operation* (e.g. ``"chat"``)."""
        if operation in self.retry:
            return self.retry[operation]
        return PRESETS.get(operation, RetryPolicy())

    def with_backend(self, **changes: Any) -> EngineConfig:
        """Copy with backend fields replaced (e.g. ``model=...``)."""
        if "provider" in changes and "url" not in changes:
            changes["url"] = ""
        return replace(self, backend=replace(self.backend, **changes))


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./ide_assist.yaml"),
    Path.home() / ".config" / "ide-assist" / "config.yaml",
]


def _parse_backend(raw: dict[str, Any] | None) -> BackendSpec:
    if not raw:
        return BackendSpec()
    known = BackendSpec.__dataclass_fields__
    values = {k: v for k, v in raw.items() if k in known and v is not None}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        _logger.warning("Ignoring unknown backend keys: %s", ", ".join(unknown))
    return BackendSpec(**values)


def _parse_retry(raw: dict[str, Any] | None) -> dict[str, RetryPolicy]:
    policies: dict[str, RetryPolicy] = {}
    for name, overrides in (raw or {}).items():
        base = PRESETS.get(name, RetryPolicy())
        fields = {
            k: v for k, v in (overrides or {}).items()
            if k in RetryPolicy.__dataclass_fields__
        }
        policies[name] = base.with_overrides(**fields)
    return policies


def _parse_caps(raw: dict[str, Any] | None, base: ContextCaps) -> ContextCaps:
    if not raw:
        return base
    fields = {k: v for k, v in raw.items() if k in ContextCaps.__dataclass_fields__}
    return replace(base, **fields)


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s (using defaults)", path)
            return EngineConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return EngineConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    context = raw.get("context") or {}
    return EngineConfig(
        backend=_parse_backend(raw.get("backend")),
        retry=_parse_retry(raw.get("retry")),
        chat_context=_parse_caps(context.get("chat"), CHAT_CAPS),
        generation_context=_parse_caps(context.get("generation"), GENERATION_CAPS),
    )
