"""Domain port definitions for adapters."""

from __future__ import annotations

from .provider import Attributes, ProviderAdapter, ProviderRegistry
from .state_store import StateStore, check_write

__all__ = [
    "Attributes",
    "ProviderAdapter",
    "ProviderRegistry",
    "StateStore",
    "check_write",
]
