"""
Content store seam for the sync bridge.
"""

from .base import ContentStore, LifecycleHooks
from .memory import InMemoryContentStore

__all__ = [
    'ContentStore',
    'LifecycleHooks',
    'InMemoryContentStore',
]
