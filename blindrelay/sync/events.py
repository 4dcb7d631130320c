"""
Sync event models.

One strict pydantic model per event tag pushed by the relay. Strict mode
means no coercion: a string where an integer belongs is a rejection, not a
conversion. Fields the relay adds beyond these are ignored.
"""

from typing import Dict, Literal, Optional, Type, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator


class SyncEvent(BaseModel):
    """Base for every sync event"""
    model_config = ConfigDict(strict=True, extra='ignore', populate_by_name=True, frozen=True)

    type: str
    timestamp: Optional[str] = None
    origin_session_id: Optional[str] = Field(default=None, alias='originSessionId')


# ---- Messages ----

class IncomingMessage(SyncEvent):
    type: Literal['INCOMING_MESSAGE']
    id: str
    message_id: Optional[str] = None
    recipient_id: str
    sender_handle: str
    encrypted_blob: str
    created_at: str


class OutgoingMessageSynced(SyncEvent):
    type: Literal['OUTGOING_MESSAGE_SYNCED']
    message_id: str
    owner_id: str
    original_sender_handle: str
    encrypted_blob: str
    iv: str
    sender_signature_verified: bool
    created_at: str


class IncomingMessageSynced(SyncEvent):
    type: Literal['INCOMING_MESSAGE_SYNCED']
    id: str
    owner_id: str
    original_sender_handle: str
    encrypted_blob: str
    iv: str
    sender_signature_verified: bool
    created_at: str


class VaultMessageUpdated(SyncEvent):
    type: Literal['VAULT_MESSAGE_UPDATED']
    id: str
    encrypted_blob: str
    iv: str
    version: int
    # Required but nullable: null means "not deleted"
    deleted_at: Optional[str]
    updated_at: str


# ---- Master-key encrypted documents ----

class BlockListUpdated(SyncEvent):
    type: Literal['BLOCK_LIST_UPDATED']
    ciphertext: str
    iv: str


class ContactsUpdated(SyncEvent):
    type: Literal['CONTACTS_UPDATED']
    ciphertext: str
    iv: str


class PrivacySettingsUpdated(SyncEvent):
    type: Literal['PRIVACY_SETTINGS_UPDATED']
    ciphertext: str
    iv: str


# ---- Keys ----

class TransportKeyRotated(SyncEvent):
    type: Literal['TRANSPORT_KEY_ROTATED']
    public_transport_key: str
    encrypted_transport_key: str
    encrypted_transport_iv: str
    rotated_at: Optional[int] = None


# ---- Settings ----

class SettingsUpdated(SyncEvent):
    type: Literal['SETTINGS_UPDATED']
    show_typing_indicator: Optional[bool] = Field(default=None, alias='showTypingIndicator')
    send_read_receipts: Optional[bool] = Field(default=None, alias='sendReadReceipts')
    display_name: Optional[str] = Field(default=None, alias='displayName')
    display_name_visibility: Optional[Literal['public', 'hidden']] = Field(
        default=None, alias='displayNameVisibility'
    )

    @model_validator(mode='after')
    def _require_a_setting(self):
        if not self.updates():
            raise ValueError("SETTINGS_UPDATED carries no settings")
        return self

    def updates(self) -> Dict[str, object]:
        """Only the settings present in the payload, keyed by attribute name"""
        names = ('show_typing_indicator', 'send_read_receipts', 'display_name', 'display_name_visibility')
        updates = {name: getattr(self, name) for name in names if name in self.model_fields_set}
        # booleans and visibility cannot be cleared; explicit nulls are dropped
        for name in ('show_typing_indicator', 'send_read_receipts', 'display_name_visibility'):
            if updates.get(name, True) is None:
                del updates[name]
        return updates


# ---- Sessions ----

class SessionInvalidated(SyncEvent):
    type: Literal['SESSION_INVALIDATED']
    session_id: Optional[str] = Field(default=None, alias='sessionId')
    reason: Optional[Literal['deleted', 'expired', 'logout']] = None


class SessionDeleted(SyncEvent):
    type: Literal['SESSION_DELETED']
    session_id: str = Field(alias='sessionId')
    deleted_at: str = Field(alias='deletedAt')


# ---- Passkeys ----

class PasskeyAdded(SyncEvent):
    type: Literal['PASSKEY_ADDED']
    id: str
    credential_id: str = Field(alias='credentialId')
    name: Optional[str]
    created_at: str = Field(alias='createdAt')


class PasskeyRemoved(SyncEvent):
    type: Literal['PASSKEY_REMOVED']
    credential_id: str = Field(alias='credentialId')


AnySyncEvent = Union[
    IncomingMessage,
    OutgoingMessageSynced,
    IncomingMessageSynced,
    VaultMessageUpdated,
    BlockListUpdated,
    ContactsUpdated,
    TransportKeyRotated,
    SettingsUpdated,
    PrivacySettingsUpdated,
    SessionInvalidated,
    SessionDeleted,
    PasskeyAdded,
    PasskeyRemoved,
]

EVENT_MODELS: Dict[str, Type[SyncEvent]] = {
    'INCOMING_MESSAGE': IncomingMessage,
    'OUTGOING_MESSAGE_SYNCED': OutgoingMessageSynced,
    'INCOMING_MESSAGE_SYNCED': IncomingMessageSynced,
    'VAULT_MESSAGE_UPDATED': VaultMessageUpdated,
    'BLOCK_LIST_UPDATED': BlockListUpdated,
    'CONTACTS_UPDATED': ContactsUpdated,
    'TRANSPORT_KEY_ROTATED': TransportKeyRotated,
    'SETTINGS_UPDATED': SettingsUpdated,
    'PRIVACY_SETTINGS_UPDATED': PrivacySettingsUpdated,
    'SESSION_INVALIDATED': SessionInvalidated,
    'SESSION_DELETED': SessionDeleted,
    'PASSKEY_ADDED': PasskeyAdded,
    'PASSKEY_REMOVED': PasskeyRemoved,
}

SYNC_EVENT_TYPES = tuple(EVENT_MODELS)
