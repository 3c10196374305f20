"""
Sync core: change notification, operation tracking and command processing.
"""

from .models import (
    ChangeEvent,
    EntityKind,
    MutationEvent,
    OperationType,
    SyncCommand,
    SyncResponse,
)
from .tracker import OperationTracker
from .notifier import ChangeNotifier
from .idempotency import IdempotencyCache
from .processor import CommandProcessor

__all__ = [
    'ChangeEvent',
    'EntityKind',
    'MutationEvent',
    'OperationType',
    'SyncCommand',
    'SyncResponse',
    'OperationTracker',
    'ChangeNotifier',
    'IdempotencyCache',
    'CommandProcessor',
]
