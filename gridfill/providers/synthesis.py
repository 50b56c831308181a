"""SynthesisProvider — last-resort LLM inference of missing fields."""

from __future__ import annotations

import json
from typing import Any

from ..core.exceptions import ProviderError
from ..schemas.field_value import FieldValue, is_filled, trust_weight
from ..utils.logger import get_logger
from .base import BaseProvider, ProviderContext, ProviderInput
from .llm.base import LLMAPIError, LLMClient

logger = get_logger(__name__)

UNKNOWN_MARKERS = frozenset({"unable to determine", "unknown", "n/a"})

DEFAULT_SYSTEM_PROMPT = """\
You infer missing attributes of a company or person from the data already known about it.
Return ONLY a single JSON object whose keys are exactly the requested fields.
Use null for any field you cannot infer with reasonable confidence. Never invent
contact details such as email addresses or phone numbers.
"""


class SynthesisProvider(BaseProvider):
    """Asks an ``LLMClient`` for a JSON object of the requested fields.

    Values are labelled ``generated`` and carry the ``llm_synthesis``
    trust weight as confidence, so a real provider's value wins any
    consensus merge.

    Args:
        client: LLM adapter, e.g. ``OpenAIClient()``.
        fields: Fields it may fill.
        model: Model name passed to the client.
        cost_multiplier: Relative cost of one call.
        name: Provider name and value source.
        max_parse_retries: Re-asks after an unparseable response.
    """

    def __init__(
        self,
        client: LLMClient,
        fields: list[str],
        model: str = "gpt-4.1-mini",
        cost_multiplier: float = 2.0,
        name: str = "llm_synthesis",
        temperature: float = 0.2,
        max_tokens: int = 1000,
        max_parse_retries: int = 1,
    ):
        self.client = client
        self.name = name
        self.supported_fields = list(fields)
        self.cost_multiplier = cost_multiplier
        self.required_inputs = ["identifier"]
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_parse_retries = max_parse_retries

    def _build_messages(self, input: ProviderInput, fields: list[str]) -> list[dict[str, str]]:
        known = {k: v for k, v in input.existing.items() if is_filled(v)}
        user = (
            f"Entity type: {input.entity_type.value}\n"
            f"Identifier: {input.identifier}\n"
            f"Known data: {json.dumps(known, default=str)}\n"
            f"Requested fields: {json.dumps(fields)}"
        )
        return [
            {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": user},
        ]

    async def execute(self, input: ProviderInput, context: ProviderContext) -> dict[str, Any]:
        fields = [f for f in input.fields if self.can_enrich(f)]
        if not fields:
            return {}

        messages = self._build_messages(input, fields)
        last_error: Exception | None = None
        for attempt in range(self.max_parse_retries + 1):
            try:
                response = await self.client.complete(
                    messages=messages,
                    model=self.model,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    response_format={"type": "json_object"},
                )
            except LLMAPIError as exc:
                raise ProviderError(f"LLM call failed: {exc}", provider=self.name) from exc

            try:
                parsed = json.loads(response.content)
                if not isinstance(parsed, dict):
                    raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
            except ValueError as exc:
                last_error = exc
                logger.warning("%s parse attempt %d failed: %s", self.name, attempt + 1, exc)
                messages = messages + [
                    {"role": "assistant", "content": response.content},
                    {"role": "user", "content": f"Your response was invalid: {exc}. Return a valid JSON object."},
                ]
                continue

            return self._to_values(parsed, fields, response.content)

        raise ProviderError(f"Unparseable LLM response: {last_error}", provider=self.name)

    def _to_values(self, parsed: dict[str, Any], fields: list[str], raw: str) -> dict[str, FieldValue]:
        values: dict[str, FieldValue] = {}
        for field in fields:
            value = parsed.get(field)
            if not is_filled(value):
                continue
            if isinstance(value, str) and value.strip().lower() in UNKNOWN_MARKERS:
                continue
            values[field] = FieldValue.create(
                value,
                trust_weight("llm_synthesis"),
                [self.name],
                field=field,
                label="generated",
                raw=raw,
            )
        return values
