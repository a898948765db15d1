"""LLM wire layer: adapters, transport, retry and stream decoding."""

from ide_assist.llm.adapters import Endpoint, NdjsonAdapter, Provider, SseAdapter, adapter_for
from ide_assist.llm.client import AsyncLLMClient, ConnectionStatus
from ide_assist.llm.retry import PRESETS, RetryCoordinator, RetryPolicy
from ide_assist.llm.stream import StreamDecoder
from ide_assist.llm.transport import Transport

__all__ = [
    "AsyncLLMClient",
    "ConnectionStatus",
    "Endpoint",
    "NdjsonAdapter",
    "PRESETS",
    "Provider",
    "RetryCoordinator",
    "RetryPolicy",
    "SseAdapter",
    "StreamDecoder",
    "Transport",
    "adapter_for",
]
