"""Model Invoker contract.

The execution engine only ever talks to a BaseModelInvoker. Concrete
adapters translate ChatMessages + GenerationParams into a provider's
protocol and raise ModelInvokerError with a structured kind on failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence

from promptforge.gateway.types import ChatMessage, GenerationParams


class BaseModelInvoker(ABC):
    """Base class for all model invokers."""

    name: str = "base"

    def __init__(self, api_key: str = ""):
        self.api_key = api_key

    def has_credential(self) -> bool:
        """Whether an API credential is available for this invoker."""
        return bool(self.api_key and self.api_key.strip())

    @abstractmethod
    async def invoke(self, messages: Sequence[ChatMessage], params: GenerationParams) -> str:
        """Send messages and return the full completion text."""
        ...

    async def stream(self, messages: Sequence[ChatMessage], params: GenerationParams) -> AsyncIterator[str]:
        """Yield completion chunks as they arrive.

        Default implementation yields the non-streaming result as one chunk.
        """
        yield await self.invoke(messages, params)
