"""ProviderRegistry — explicit, injectable index of provider adapters."""

from __future__ import annotations

import math
from typing import Iterable, Iterator, Optional

from ..core.exceptions import ConfigurationError
from ..utils.logger import get_logger
from .base import Provider

logger = get_logger(__name__)


class ProviderRegistry:
    """Holds provider adapters and orders them by cost per field.

    Built once and passed to the ``JobCoordinator``; there is no global
    registry.  Ties in ``cost_multiplier`` keep registration order.

    Args:
        providers: Providers to register up front.
        unit_cost_cents: Cents charged for one call at multiplier 1.0.
    """

    def __init__(self, providers: Iterable[Provider] | None = None, unit_cost_cents: int = 1) -> None:
        self.unit_cost_cents = unit_cost_cents
        self._providers: dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        """Add *provider*.

        Raises:
            ConfigurationError: If it does not satisfy ``Provider``, its
                name is taken, or its cost is negative.
        """
        if not isinstance(provider, Provider):
            raise ConfigurationError(f"{provider!r} does not implement the Provider protocol")
        if provider.name in self._providers:
            raise ConfigurationError(f"Provider '{provider.name}' is already registered")
        if provider.cost_multiplier < 0:
            raise ConfigurationError(
                f"Provider '{provider.name}' has negative cost_multiplier {provider.cost_multiplier}"
            )
        self._providers[provider.name] = provider
        logger.debug(
            "Registered provider %s (cost=%s, fields=%s)",
            provider.name,
            provider.cost_multiplier,
            provider.supported_fields,
        )

    def unregister(self, name: str) -> None:
        self._providers.pop(name, None)

    def get(self, name: str) -> Optional[Provider]:
        return self._providers.get(name)

    def candidates(self, field: str) -> list[Provider]:
        """Providers that can fill *field*, cheapest first."""
        able = [p for p in self._providers.values() if p.can_enrich(field)]
        return sorted(able, key=lambda p: p.cost_multiplier)

    def cost_cents(self, provider: Provider | str) -> int:
        """Cost of one call: ``ceil(cost_multiplier * unit_cost_cents)``."""
        if isinstance(provider, str):
            found = self.get(provider)
            if found is None:
                raise KeyError(f"unknown provider: {provider}")
            provider = found
        return math.ceil(provider.cost_multiplier * self.unit_cost_cents)

    @property
    def fields(self) -> set[str]:
        """Every field at least one provider can fill."""
        return {f for p in self._providers.values() for f in p.supported_fields}

    @property
    def names(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[Provider]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)
