"""Chat-completion seam used by ``SynthesisProvider``.

Adapters translate one SDK into ``LLMClient.complete`` and raise
``LLMAPIError`` for anything the SDK reports as a failed call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass
class LLMResponse:
    """Raw completion text plus token usage, if the backend reports it."""

    content: str
    total_tokens: Optional[int] = None


class LLMAPIError(Exception):
    """A completion request failed at the backend.

    ``SynthesisProvider`` turns this into a ``ProviderError`` so the
    executor can fall through to the next provider in the waterfall.

    Attributes:
        status_code: HTTP status reported by the backend, if any.
        is_rate_limit: The backend throttled the request.
    """

    def __init__(self, message: str, *, status_code: int | None = None, is_rate_limit: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.is_rate_limit = is_rate_limit


@runtime_checkable
class LLMClient(Protocol):
    """Anything that can answer a list of chat messages with one completion."""

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int,
        response_format: dict[str, Any] | None = None,
    ) -> LLMResponse: ...
