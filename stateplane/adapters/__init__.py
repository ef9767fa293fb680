"""Adapters — provider bindings for resource types.

Public re-exports for convenient access.
"""

from stateplane.adapters.base import Provider, ProviderContext
from stateplane.adapters.mock import MockProvider, ProviderCall
from stateplane.adapters.registry import ProviderRegistry

__all__ = [
    "MockProvider",
    "Provider",
    "ProviderCall",
    "ProviderContext",
    "ProviderRegistry",
]
