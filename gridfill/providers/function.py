"""FunctionProvider — wraps any sync or async callable as a provider."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from .base import BaseProvider, ProviderContext, ProviderInput


class FunctionProvider(BaseProvider):
    """Wraps a user-supplied callable as a provider adapter.

    The callable receives ``(input, context)`` and returns a dict of
    field values; keys outside ``supported_fields`` or not requested in
    ``input.fields`` are dropped.

    Sync functions are executed via ``run_in_executor`` so they
    never block the event loop.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[..., Any],
        fields: list[str],
        cost_multiplier: float = 1.0,
        required_inputs: list[str] | None = None,
        validator: Callable[[ProviderInput], bool] | None = None,
    ):
        """Configure a function-based provider.

        Args:
            name: Unique provider name, used as the value source.
            fn: Sync or async callable ``(ProviderInput, ProviderContext) -> dict``.
            fields: Fields this provider can fill.
            cost_multiplier: Relative cost of one call.
            required_inputs: Input names that must be available
                (see ``ProviderInput.available_inputs``).
            validator: Extra predicate run after the required-input check.
        """
        self.name = name
        self.fn = fn
        self.supported_fields = list(fields)
        self.cost_multiplier = cost_multiplier
        self.required_inputs = list(required_inputs or [])
        self.validator = validator
        self._is_async = asyncio.iscoroutinefunction(fn)

    def validate(self, input: ProviderInput) -> bool:
        if not super().validate(input):
            return False
        return self.validator(input) if self.validator is not None else True

    async def execute(self, input: ProviderInput, context: ProviderContext) -> dict[str, Any]:
        if self._is_async:
            raw = await self.fn(input, context)
        else:
            loop = asyncio.get_running_loop()
            raw = await loop.run_in_executor(None, self.fn, input, context)

        if not raw:
            return {}
        wanted = set(input.fields) & set(self.supported_fields)
        return {k: v for k, v in raw.items() if k in wanted}
