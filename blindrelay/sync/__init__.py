"""
Sync channel: typed events pushed by the relay, their validation, handlers
and dispatcher.
"""

from .context import SyncContext
from .events import EVENT_MODELS, SYNC_EVENT_TYPES
from .validation import ValidationRejected, UnknownEventType, validate_sync_event
from .handlers import (
    SyncHandler,
    MessageSyncHandler,
    BlockListSyncHandler,
    ContactsSyncHandler,
    TransportKeySyncHandler,
    SettingsSyncHandler,
    PrivacySettingsSyncHandler,
    SessionSyncHandler,
    PasskeySyncHandler
)
from .dispatcher import SyncManager

__all__ = [
    'SyncContext',
    'EVENT_MODELS',
    'SYNC_EVENT_TYPES',
    'ValidationRejected',
    'UnknownEventType',
    'validate_sync_event',
    'SyncHandler',
    'MessageSyncHandler',
    'BlockListSyncHandler',
    'ContactsSyncHandler',
    'TransportKeySyncHandler',
    'SettingsSyncHandler',
    'PrivacySettingsSyncHandler',
    'SessionSyncHandler',
    'PasskeySyncHandler',
    'SyncManager'
]
