"""Provider adapters and the registry that orders them."""

from .base import BaseProvider, Provider, ProviderContext, ProviderInput, wrap_value
from .function import FunctionProvider
from .mock import MockProvider, default_mock_providers
from .registry import ProviderRegistry
from .synthesis import SynthesisProvider

__all__ = [
    "BaseProvider",
    "FunctionProvider",
    "MockProvider",
    "Provider",
    "ProviderContext",
    "ProviderInput",
    "ProviderRegistry",
    "SynthesisProvider",
    "default_mock_providers",
    "wrap_value",
]
