"""
ChangeFlow Storage

EntityStore contract plus the in-memory and retrying adapters.
"""

from .base import EntityStore
from .memory import InMemoryEntityStore
from .retrying import RetryingEntityStore

__all__ = ["EntityStore", "InMemoryEntityStore", "RetryingEntityStore"]
