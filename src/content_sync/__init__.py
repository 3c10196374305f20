"""
Content Sync - bidirectional sync bridge between a content store and a
message broker.

This package provides:
- An outbound change notifier with cascade and echo suppression
- An inbound command processor with correlated responses
- A broker transport with lazy reconnect and bounded backoff
"""

__version__ = "0.1.0"

__all__ = [
    '__version__',
]
